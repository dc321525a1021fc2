"""
Manual settlement provider.

Offline payments (cash, bank transfer) recorded by an operator. No remote
calls: the transaction id is generated locally and the payment counts as
settled the moment it is recorded. The ledger is the only record of issued
ids, so verify reads it back from there.
"""
from decimal import Decimal
from typing import Dict, Optional

from tierpay.core.errors import ProviderRejectedError
from tierpay.features.billing import ledger
from tierpay.features.billing.ids import generate_transaction_id
from tierpay.features.billing.provider import PaymentReference, ProviderConfirmation
from tierpay.models.billing import BillingCycle, PaymentMetadata, PaymentProviderName


class ManualProvider:
    name = PaymentProviderName.MANUAL.value

    def initialize(
        self,
        user_email: str,
        price_minor_units: int,
        provider_plan_code: str,
        metadata: PaymentMetadata,
    ) -> PaymentReference:
        transaction_id = generate_transaction_id(metadata.transaction_type.value, self.name)
        return PaymentReference(provider=self.name, reference=transaction_id, status="success")

    def verify(self, reference: str) -> ProviderConfirmation:
        record = ledger.find_by_transaction_id(reference)
        if record is None or record.payment_provider != PaymentProviderName.MANUAL:
            raise ProviderRejectedError(f"Unknown manual reference {reference}", provider=self.name)

        duration = (record.expires_at - record.paid_at).days if record.expires_at and record.paid_at else 0
        return ProviderConfirmation(
            provider=self.name,
            transaction_id=reference,
            amount=Decimal(record.amount),
            channel=record.payment_method,
            paid_at=record.paid_at or record.created_at,
            metadata=PaymentMetadata(
                user_id=record.user_id,
                plan=record.plan,
                billing_cycle=BillingCycle(record.billing_cycle),
                duration_in_days=max(duration, 1),
                transaction_type=record.transaction_type,
            ),
            reference=record.reference_id,
        )

    def disable_recurring(self, subscription_code: str) -> None:
        return None

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[ProviderConfirmation]:
        return None
