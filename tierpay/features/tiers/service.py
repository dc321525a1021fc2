"""
tierpay/features/tiers/service.py

Tier catalogue lookup (collaborator).

Handles:
- find_by_name (read path used by the orchestrator)
- upsert_tier / seed_tiers (bootstrap only; catalogue editing lives elsewhere)
"""

from decimal import Decimal
from typing import Dict, Optional
from sqlalchemy import select, insert, update

from tierpay.core.database import get_db_session, tier_prices
from tierpay.models.billing import BillingCycle
from tierpay.models.tier import TierDefinition, TierPrice


# Development catalogue; production tiers come from the admin service
DEFAULT_TIERS = {
    "basic": {
        "description": "Basic plan",
        "monthly": {"price": Decimal("2500"), "duration_in_days": 30, "plan_code": "PLN_basic_monthly"},
        "yearly": {"price": Decimal("25000"), "duration_in_days": 365, "plan_code": "PLN_basic_yearly"},
    },
    "pro": {
        "description": "Pro plan",
        "monthly": {"price": Decimal("5000"), "duration_in_days": 30, "plan_code": "PLN_pro_monthly"},
        "yearly": {"price": Decimal("50000"), "duration_in_days": 365, "plan_code": "PLN_pro_yearly"},
    },
}


def find_by_name(name: str) -> Optional[TierDefinition]:
    """Look up a tier by (case-insensitive) name. None if unknown."""
    tier_name = name.strip().lower()
    with get_db_session() as session:
        rows = session.execute(
            select(tier_prices).where(tier_prices.c.tier_name == tier_name)
        ).fetchall()

    if not rows:
        return None

    cycles: Dict[BillingCycle, TierPrice] = {}
    description = None
    for row in rows:
        try:
            cycle = BillingCycle(row.billing_cycle)
        except ValueError:
            continue
        cycles[cycle] = TierPrice(
            price=Decimal(row.price),
            duration_in_days=row.duration_in_days,
            plan_code=row.plan_code,
        )
        description = description or row.description

    return TierDefinition(name=tier_name, billing_cycles=cycles, description=description)


def upsert_tier(
    name: str,
    billing_cycle: BillingCycle,
    price: Decimal,
    duration_in_days: int,
    plan_code: str,
    description: Optional[str] = None,
) -> None:
    tier_name = name.strip().lower()
    cycle = BillingCycle(billing_cycle).value
    with get_db_session() as session:
        existing = session.execute(
            select(tier_prices.c.id).where(
                tier_prices.c.tier_name == tier_name,
                tier_prices.c.billing_cycle == cycle,
            )
        ).fetchone()

        values = {
            "price": Decimal(price),
            "duration_in_days": duration_in_days,
            "plan_code": plan_code,
            "description": description,
        }
        if existing:
            session.execute(
                update(tier_prices).where(tier_prices.c.id == existing[0]).values(**values)
            )
        else:
            session.execute(
                insert(tier_prices).values(tier_name=tier_name, billing_cycle=cycle, **values)
            )


def seed_tiers(tiers: Optional[dict] = None) -> None:
    """Idempotently load a catalogue (defaults to DEFAULT_TIERS)."""
    for name, config in (tiers or DEFAULT_TIERS).items():
        for cycle in BillingCycle:
            if cycle.value not in config:
                continue
            entry = config[cycle.value]
            upsert_tier(
                name,
                cycle,
                price=entry["price"],
                duration_in_days=entry["duration_in_days"],
                plan_code=entry["plan_code"],
                description=config.get("description"),
            )
