"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Test database support
- Table definitions for users, tiers, the transaction ledger and billing ops
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Numeric,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    TypeDecorator,
    text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
import logging
import os

from tierpay.core.config import settings


logger = logging.getLogger("tierpay.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def utc_now() -> datetime:
    """Timezone-aware UTC now for column defaults."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and returns aware UTC values.

    SQLite drops tzinfo on storage; values are normalised to UTC on the way
    in and re-tagged on the way out so comparisons are backend independent.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        engine_kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, **engine_kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-reads configuration."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Everything executed inside the block is one transaction: it commits on
    normal exit and rolls back if the block raises.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """
    Join the caller's session if given, otherwise open a new transaction.

    Lets stores take part in a larger unit of work (fact update + ledger
    append) without committing on their own.
    """
    if session is not None:
        yield session
        return
    with get_db_session() as own_session:
        yield own_session


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Users with the embedded subscription fact (one row per user)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('username', String(200), nullable=False),
    Column('email', String(320), nullable=False),
    Column('first_name', String(200), nullable=True),
    Column('plan', String(50), nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='inactive'),
    Column('transaction_id', String(120), nullable=False, server_default=''),
    Column('subscription_code', String(120), nullable=False, server_default=''),
    Column('expires_at', UTCDateTime(), nullable=True),
    Column('created_at', UTCDateTime(), default=utc_now, nullable=False),
    Column('updated_at', UTCDateTime(), default=utc_now, onupdate=utc_now, nullable=False),
    Index('idx_app_users_subscription_status', 'subscription_status'),
)

# Tier catalog: one row per (tier, billing cycle)
tier_prices = Table(
    'tier_prices',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tier_name', String(50), nullable=False),
    Column('billing_cycle', String(20), nullable=False),  # monthly | yearly
    Column('price', Numeric(12, 2), nullable=False),
    Column('duration_in_days', Integer, nullable=False),
    Column('plan_code', String(120), nullable=False),
    Column('description', Text, nullable=True),
    Column('created_at', UTCDateTime(), default=utc_now, nullable=False),
    UniqueConstraint('tier_name', 'billing_cycle', name='uq_tier_prices_tier_cycle'),
    Index('idx_tier_prices_tier_name', 'tier_name'),
)

# Append-only payment ledger
transactions = Table(
    'transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('user_name', String(200), nullable=False),
    Column('email', String(320), nullable=False),
    Column('plan', String(50), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('amount', Numeric(14, 2), nullable=False),
    Column('transaction_type', String(40), nullable=False),  # subscription | upgrade/downgrade
    # Idempotency key for confirmed payments; NULL for plan-change rows
    Column('transaction_id', String(120), nullable=True),
    Column('reference_id', String(120), nullable=True),
    # Provider-side checkout/charge reference
    Column('payment_reference', String(120), nullable=True),
    # Plan-change rows: the confirmed payment the change superseded
    Column('replaced_transaction_id', String(120), nullable=True),
    Column('payment_provider', String(30), nullable=False),  # paystack | stripe | manual
    Column('payment_method', String(60), nullable=True),
    Column('status', String(20), nullable=False),  # success | failed | pending
    Column('subscription_code', String(120), nullable=True),
    Column('paid_at', UTCDateTime(), nullable=True),
    Column('expires_at', UTCDateTime(), nullable=True),
    Column('created_at', UTCDateTime(), default=utc_now, nullable=False),
    UniqueConstraint('transaction_id', name='uq_transactions_transaction_id'),
    Index('idx_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_transactions_provider_status', 'payment_provider', 'status'),
    Index('idx_transactions_created_at', 'created_at'),
    Index('idx_transactions_reference_id', 'reference_id'),
    Index('idx_transactions_payment_reference', 'payment_reference'),
)

# Operator-facing alerts (e.g. remote subscription could not be disabled)
billing_alerts = Table(
    'billing_alerts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('kind', String(60), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('provider', String(30), nullable=True),
    Column('subscription_code', String(120), nullable=True),
    Column('detail', Text, nullable=True),
    Column('resolved', Boolean, nullable=False, default=False),
    Column('created_at', UTCDateTime(), default=utc_now, nullable=False),
    Index('idx_billing_alerts_resolved', 'resolved'),
)

# Reconciliation job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', UTCDateTime(), nullable=False),
    Column('finished_at', UTCDateTime(), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_billing_job_runs_job_started', 'job_name', 'started_at'),
)
