"""
Transaction query routes (admin only).

- GET /api/payments/transactions: filtered ledger listing, newest first
- GET /api/payments/analytics: ledger aggregates
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tierpay.core.auth import AdminActor, require_admin
from tierpay.features.billing.transactions import get_analytics, list_transactions
from tierpay.models.billing import (
    PaymentProviderName,
    TransactionAnalytics,
    TransactionFilter,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)

router = APIRouter(prefix="/payments", tags=["transactions"])


class TransactionListResponse(BaseModel):
    count: int
    transactions: List[TransactionRecord]


@router.get("/transactions", response_model=TransactionListResponse)
def get_transactions(
    provider: Optional[PaymentProviderName] = Query(None),
    status: Optional[TransactionStatus] = Query(None),
    user_id: Optional[str] = Query(None),
    plan: Optional[str] = Query(None),
    billing_cycle: Optional[str] = Query(None),
    payment_method: Optional[str] = Query(None),
    transaction_id: Optional[str] = Query(None),
    reference_id: Optional[str] = Query(None),
    payment_reference: Optional[str] = Query(None),
    transaction_type: Optional[TransactionType] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    flt = TransactionFilter(
        provider=provider,
        status=status,
        user_id=user_id,
        plan=plan,
        billing_cycle=billing_cycle,
        payment_method=payment_method,
        transaction_id=transaction_id,
        reference_id=reference_id,
        payment_reference=payment_reference,
        transaction_type=transaction_type,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    records = list_transactions(flt)
    return TransactionListResponse(count=len(records), transactions=records)


@router.get("/analytics", response_model=TransactionAnalytics)
def get_transaction_analytics(actor: AdminActor = Depends(require_admin)):
    return get_analytics()
