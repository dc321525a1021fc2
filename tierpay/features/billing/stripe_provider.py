"""
Stripe (card processor) implementation of the PaymentProvider protocol.

Uses hosted Checkout sessions in subscription mode. The API key is passed per
request rather than set on the module, so several instances with different
keys can coexist. SDK calls run under call_with_timeout.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from pydantic import ValidationError as PydanticValidationError

from tierpay.core.errors import (
    ProviderRejectedError,
    ProviderUnavailableError,
    ValidationError,
    WebhookSignatureError,
)
from tierpay.features.billing.provider import (
    PaymentReference,
    ProviderConfirmation,
    call_with_timeout,
)
from tierpay.models.billing import PaymentMetadata, PaymentProviderName

logger = logging.getLogger("tierpay.billing.stripe")

SUCCESS_EVENT = "checkout.session.completed"


def _from_timestamp(value) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _invoice_paid_at(session: Any) -> Optional[datetime]:
    """paid_at of the session's first invoice, when the invoice is expanded."""
    invoice = session.get("invoice")
    if not invoice or isinstance(invoice, str):
        return None
    transitions = invoice.get("status_transitions") or {}
    return _from_timestamp(transitions.get("paid_at"))


class StripeProvider:
    """Stripe implementation of PaymentProvider."""

    name = PaymentProviderName.STRIPE.value

    def __init__(
        self,
        secret_key: str,
        *,
        webhook_secret: Optional[str] = None,
        success_url: str = "http://localhost:3000/payment-success",
        cancel_url: str = "http://localhost:3000/payment-cancelled",
        timeout: float = 10.0,
    ):
        if not secret_key:
            raise ValueError("STRIPE_SECRET_KEY not configured")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._timeout = timeout

    def _call(self, fn, *args, **kwargs):
        try:
            return call_with_timeout(fn, self._timeout, *args, provider=self.name, api_key=self._secret_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise ProviderUnavailableError(f"Stripe unreachable: {exc}", provider=self.name) from exc
        except stripe.APIError as exc:
            raise ProviderUnavailableError(f"Stripe API error: {exc}", provider=self.name) from exc
        except stripe.StripeError as exc:
            raise ProviderRejectedError(f"Stripe rejected request: {exc}", provider=self.name) from exc

    def initialize(
        self,
        user_email: str,
        price_minor_units: int,
        provider_plan_code: str,
        metadata: PaymentMetadata,
    ) -> PaymentReference:
        provider_metadata = metadata.as_provider_dict()
        session = self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer_email=user_email,
            line_items=[{"price": provider_plan_code, "quantity": 1}],
            success_url=self._success_url,
            cancel_url=self._cancel_url,
            metadata=provider_metadata,
            subscription_data={"metadata": provider_metadata},
        )
        return PaymentReference(
            provider=self.name,
            reference=session["id"],
            authorization_url=session.get("url"),
        )

    def verify(self, reference: str) -> ProviderConfirmation:
        session = self._call(stripe.checkout.Session.retrieve, reference, expand=["invoice"])
        if session.get("payment_status") != "paid":
            raise ProviderRejectedError(
                f"Stripe session {reference} is {session.get('payment_status') or 'unknown'}",
                provider=self.name,
            )
        return self._confirmation_from_session(session, paid_at=_invoice_paid_at(session))

    def disable_recurring(self, subscription_code: str) -> None:
        self._call(stripe.Subscription.cancel, subscription_code)

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[ProviderConfirmation]:
        if not self._webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET not configured")

        lowered = {k.lower(): v for k, v in headers.items()}
        sig_header = lowered.get("stripe-signature")
        if not sig_header:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self._webhook_secret)
        except ValueError as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(f"Invalid signature: {exc}") from exc

        if event["type"] != SUCCESS_EVENT:
            logger.info("stripe.webhook.ignored", extra={"event_type": event["type"], "provider": self.name})
            return None

        session = event["data"]["object"]
        if session.get("payment_status") != "paid":
            logger.info(
                "stripe.webhook.unpaid_session",
                extra={"event_type": event["type"], "provider": self.name, "status": session.get("payment_status")},
            )
            return None
        # The webhook carries the invoice id only; the event time is when checkout completed
        paid_at = _invoice_paid_at(session) or _from_timestamp(event.get("created"))
        return self._confirmation_from_session(session, paid_at=paid_at)

    def _confirmation_from_session(self, session: Any, *, paid_at: Optional[datetime]) -> ProviderConfirmation:
        raw_metadata = session.get("metadata") or {}
        try:
            metadata = PaymentMetadata.model_validate(dict(raw_metadata))
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed payment metadata: {exc.errors()[0]['loc']}") from exc

        paid_at = paid_at or datetime.now(timezone.utc)
        method_types = session.get("payment_method_types") or ["card"]

        return ProviderConfirmation(
            provider=self.name,
            transaction_id=session["id"],
            amount=Decimal(session.get("amount_total") or 0) / Decimal(100),
            channel=method_types[0],
            paid_at=paid_at,
            metadata=metadata,
            subscription_code=session.get("subscription"),
            reference=session["id"],
        )
