"""
Transaction query service.

Read-only views over the payment ledger for operators:
- list_transactions(filter)
- get_analytics()
"""
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from tierpay.core.database import get_db_session
from tierpay.features.billing import ledger
from tierpay.models.billing import (
    BucketTotals,
    TransactionAnalytics,
    TransactionFilter,
    TransactionRecord,
    TransactionStatus,
)


def list_transactions(flt: Optional[TransactionFilter] = None) -> List[TransactionRecord]:
    """Ledger rows matching every field set on the filter, newest first."""
    return ledger.find(flt or TransactionFilter())


def _buckets(raw: Dict[str, tuple]) -> Dict[str, BucketTotals]:
    return {key: BucketTotals(count=count, revenue=revenue) for key, (count, revenue) in raw.items()}


def get_analytics(now: Optional[datetime] = None) -> TransactionAnalytics:
    """
    Aggregate the full ledger.

    Counts include every row; revenue only counts successful payments.
    revenue_by_month is keyed YYYY-MM on paid_at.
    """
    with get_db_session() as session:
        by_status = ledger.count_by("status", session=session)
        by_type = ledger.count_by("transaction_type", session=session)
        by_provider = ledger.count_and_revenue_by("payment_provider", session=session)
        by_plan = ledger.count_and_revenue_by("plan", session=session)
        by_cycle = ledger.count_and_revenue_by("billing_cycle", session=session)
        payments = ledger.successful_payments(session=session)

    revenue_by_month: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    total_revenue = Decimal("0")
    for amount, paid_at in payments:
        total_revenue += amount
        if paid_at is not None:
            revenue_by_month[paid_at.strftime("%Y-%m")] += amount

    return TransactionAnalytics(
        total_transactions=sum(by_status.values()),
        successful_transactions=by_status.get(TransactionStatus.SUCCESS.value, 0),
        total_revenue=total_revenue,
        by_provider=_buckets(by_provider),
        by_plan=_buckets(by_plan),
        by_billing_cycle=_buckets(by_cycle),
        by_status=by_status,
        by_transaction_type=by_type,
        revenue_by_month=dict(sorted(revenue_by_month.items())),
        computed_at=now or datetime.now(timezone.utc),
    )
