"""
Payment ledger store.

Append-only access to the transactions table:
- create (insert one row; never updated afterwards)
- find_by_transaction_id (idempotency lookup)
- find (conjunctive filter, newest first)
- latest_for_user
- aggregate helpers for analytics
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, desc, func, insert, select
from sqlalchemy.orm import Session

from tierpay.core.database import session_scope, transactions
from tierpay.models.billing import (
    PaymentProviderName,
    TransactionFilter,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)


def _row_to_record(row) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        user_id=row.user_id,
        user_name=row.user_name,
        email=row.email,
        plan=row.plan,
        billing_cycle=row.billing_cycle,
        amount=Decimal(row.amount),
        transaction_type=TransactionType(row.transaction_type),
        transaction_id=row.transaction_id,
        reference_id=row.reference_id,
        payment_reference=row.payment_reference,
        replaced_transaction_id=row.replaced_transaction_id,
        payment_provider=PaymentProviderName(row.payment_provider),
        payment_method=row.payment_method,
        status=TransactionStatus(row.status),
        subscription_code=row.subscription_code,
        paid_at=row.paid_at,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def create(record: TransactionRecord, session: Optional[Session] = None) -> TransactionRecord:
    """
    Append a row.

    Raises sqlalchemy IntegrityError when transaction_id is already present;
    callers running inside a unit of work let it roll the whole unit back.
    """
    values = record.model_dump(exclude={"id", "created_at"}, mode="python")
    values["transaction_type"] = record.transaction_type.value
    values["payment_provider"] = record.payment_provider.value
    values["status"] = record.status.value
    if record.created_at is not None:
        values["created_at"] = record.created_at

    with session_scope(session) as s:
        result = s.execute(insert(transactions).values(**values))
        new_id = result.inserted_primary_key[0]
        row = s.execute(select(transactions).where(transactions.c.id == new_id)).first()
        return _row_to_record(row)


def find_by_transaction_id(transaction_id: str, session: Optional[Session] = None) -> Optional[TransactionRecord]:
    with session_scope(session) as s:
        row = s.execute(
            select(transactions).where(transactions.c.transaction_id == transaction_id)
        ).first()
        return _row_to_record(row) if row else None


def latest_for_user(user_id: str, session: Optional[Session] = None) -> Optional[TransactionRecord]:
    with session_scope(session) as s:
        row = s.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(desc(transactions.c.created_at), desc(transactions.c.id))
            .limit(1)
        ).first()
        return _row_to_record(row) if row else None


def _filter_conditions(flt: TransactionFilter) -> list:
    conditions = []
    equality = {
        "user_id": flt.user_id,
        "plan": flt.plan,
        "billing_cycle": flt.billing_cycle,
        "payment_method": flt.payment_method,
        "transaction_id": flt.transaction_id,
        "reference_id": flt.reference_id,
        "payment_reference": flt.payment_reference,
        "payment_provider": flt.provider.value if flt.provider else None,
        "status": flt.status.value if flt.status else None,
        "transaction_type": flt.transaction_type.value if flt.transaction_type else None,
    }
    for column, value in equality.items():
        if value is not None:
            conditions.append(transactions.c[column] == value)
    if flt.start_date is not None:
        conditions.append(transactions.c.created_at >= flt.start_date)
    if flt.end_date is not None:
        conditions.append(transactions.c.created_at <= flt.end_date)
    return conditions


def find(flt: TransactionFilter, session: Optional[Session] = None) -> List[TransactionRecord]:
    """Rows matching every set field, newest created_at first (ties by id)."""
    query = select(transactions)
    conditions = _filter_conditions(flt)
    if conditions:
        query = query.where(and_(*conditions))
    query = query.order_by(desc(transactions.c.created_at), desc(transactions.c.id))
    if flt.offset:
        query = query.offset(flt.offset)
    if flt.limit is not None:
        query = query.limit(flt.limit)

    with session_scope(session) as s:
        return [_row_to_record(row) for row in s.execute(query).fetchall()]


def count_and_revenue_by(column_name: str, session: Optional[Session] = None) -> Dict[str, Tuple[int, Decimal]]:
    """
    Per-value row count and successful revenue for one column.

    Revenue only sums rows with status success; count includes all rows.
    """
    column = transactions.c[column_name]
    success_amount = func.sum(
        case((transactions.c.status == TransactionStatus.SUCCESS.value, transactions.c.amount), else_=0)
    )
    with session_scope(session) as s:
        rows = s.execute(
            select(column, func.count(transactions.c.id), success_amount).group_by(column)
        ).fetchall()
    return {str(key): (int(count), Decimal(str(revenue or 0))) for key, count, revenue in rows}


def count_by(column_name: str, session: Optional[Session] = None) -> Dict[str, int]:
    column = transactions.c[column_name]
    with session_scope(session) as s:
        rows = s.execute(select(column, func.count(transactions.c.id)).group_by(column)).fetchall()
    return {str(key): int(count) for key, count in rows}


def successful_payments(session: Optional[Session] = None) -> Iterable[Tuple[Decimal, Optional[object]]]:
    """(amount, paid_at) for every successful row; used for per-month revenue."""
    with session_scope(session) as s:
        rows = s.execute(
            select(transactions.c.amount, transactions.c.paid_at).where(
                transactions.c.status == TransactionStatus.SUCCESS.value
            )
        ).fetchall()
    return [(Decimal(str(amount)), paid_at) for amount, paid_at in rows]
