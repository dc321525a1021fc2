"""
Billing models for tierpay.

Subscription fact (per user), ledger records, typed provider metadata,
query filters and analytics results. All models frozen (immutable);
state changes produce new instances via model_copy(update=...).
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    PLAN_CHANGE = "upgrade/downgrade"


class PaymentProviderName(str, Enum):
    PAYSTACK = "paystack"  # hosted gateway
    STRIPE = "stripe"  # card processor
    MANUAL = "manual"  # offline settlement


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionFact(BaseModel):
    """A user's current tier and expiry. Mutated only by the orchestrator."""
    model_config = ConfigDict(frozen=True)

    plan: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    transaction_id: str = ""
    subscription_code: str = ""
    expires_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Active and not yet expired."""
        if self.status != SubscriptionStatus.ACTIVE or self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now < self.expires_at


class PaymentMetadata(BaseModel):
    """
    Metadata sent to a provider on initialize and echoed back on confirmation.

    Providers hand this back as loosely typed JSON (string numbers, extra
    keys); parsing through this model rejects anything missing a field the
    orchestrator depends on.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    user_id: str
    plan: str
    billing_cycle: BillingCycle
    duration_in_days: int = Field(..., gt=0)
    transaction_type: TransactionType = TransactionType.SUBSCRIPTION

    @field_validator("plan")
    @classmethod
    def _normalize_plan(cls, v: str) -> str:
        return v.strip().lower()

    def as_provider_dict(self) -> Dict[str, str]:
        """Flat string map (Stripe metadata only accepts strings)."""
        return {
            "user_id": self.user_id,
            "plan": self.plan,
            "billing_cycle": self.billing_cycle.value,
            "duration_in_days": str(self.duration_in_days),
            "transaction_type": self.transaction_type.value,
        }


class TransactionRecord(BaseModel):
    """One row of the append-only payment ledger."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    user_id: str
    user_name: str
    email: str
    plan: str
    billing_cycle: str
    amount: Decimal
    transaction_type: TransactionType
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    payment_reference: Optional[str] = None
    replaced_transaction_id: Optional[str] = None
    payment_provider: PaymentProviderName
    payment_method: Optional[str] = None
    status: TransactionStatus
    subscription_code: Optional[str] = None
    paid_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ConfirmOutcome(BaseModel):
    """Result of applying a confirmation; duplicates are not errors."""
    model_config = ConfigDict(frozen=True)

    status: str  # activated | already_processed
    transaction_id: str
    user_id: str
    plan: str
    expires_at: Optional[datetime] = None
    message: str

    @property
    def already_processed(self) -> bool:
        return self.status == "already_processed"


class TransactionFilter(BaseModel):
    """Conjunctive ledger filter; None fields are unconstrained."""
    provider: Optional[PaymentProviderName] = None
    status: Optional[TransactionStatus] = None
    user_id: Optional[str] = None
    plan: Optional[str] = None
    billing_cycle: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    payment_reference: Optional[str] = None
    transaction_type: Optional[TransactionType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = Field(None, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class BucketTotals(BaseModel):
    count: int = 0
    revenue: Decimal = Decimal("0")


class TransactionAnalytics(BaseModel):
    """Aggregates over the full ledger. Revenue counts successful rows only."""
    total_transactions: int
    successful_transactions: int
    total_revenue: Decimal
    by_provider: Dict[str, BucketTotals]
    by_plan: Dict[str, BucketTotals]
    by_billing_cycle: Dict[str, BucketTotals]
    by_status: Dict[str, int]
    by_transaction_type: Dict[str, int]
    revenue_by_month: Dict[str, Decimal]
    computed_at: datetime
