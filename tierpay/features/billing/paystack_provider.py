"""
Paystack (hosted gateway) implementation of the PaymentProvider protocol.

Talks to the Paystack REST API over httpx. Credentials are bound to the
instance; every request carries the instance's timeout.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from tierpay.core.errors import (
    ProviderRejectedError,
    ProviderUnavailableError,
    ValidationError,
    WebhookSignatureError,
)
from tierpay.features.billing.provider import PaymentReference, ProviderConfirmation
from tierpay.models.billing import PaymentMetadata, PaymentProviderName

logger = logging.getLogger("tierpay.billing.paystack")

SIGNATURE_HEADER = "x-paystack-signature"
SUCCESS_EVENT = "charge.success"


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sign_payload(secret_key: str, body: bytes) -> str:
    """HMAC-SHA512 hex digest Paystack sends in x-paystack-signature."""
    return hmac.new(secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()


class PaystackProvider:
    name = PaymentProviderName.PAYSTACK.value

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = "https://api.paystack.co",
        callback_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY not configured")
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._secret_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(f"Paystack timed out: {path}", provider=self.name) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Paystack unreachable: {exc}", provider=self.name) from exc

        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Paystack error {response.status_code} on {path}", provider=self.name
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise ProviderRejectedError(f"Paystack rejected request: {message}", provider=self.name)

        return body.get("data") or {}

    def initialize(
        self,
        user_email: str,
        price_minor_units: int,
        provider_plan_code: str,
        metadata: PaymentMetadata,
    ) -> PaymentReference:
        payload: Dict[str, Any] = {
            "email": user_email,
            "amount": price_minor_units,
            "metadata": metadata.as_provider_dict(),
        }
        if provider_plan_code:
            payload["plan"] = provider_plan_code
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        data = self._request("POST", "/transaction/initialize", payload)
        reference = data.get("reference")
        if not reference:
            raise ProviderRejectedError("Paystack returned no reference", provider=self.name)

        return PaymentReference(
            provider=self.name,
            reference=reference,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    def verify(self, reference: str) -> ProviderConfirmation:
        data = self._request("GET", f"/transaction/verify/{reference}")
        if data.get("status") != "success":
            raise ProviderRejectedError(
                f"Paystack transaction {reference} is {data.get('status') or 'unknown'}",
                provider=self.name,
            )
        return self._confirmation_from_charge(data)

    def disable_recurring(self, subscription_code: str) -> None:
        # Disabling needs the subscription's email token, which only a fetch returns
        subscription = self._request("GET", f"/subscription/{subscription_code}")
        token = subscription.get("email_token")
        if not token:
            raise ProviderRejectedError(
                f"Paystack subscription {subscription_code} has no email token",
                provider=self.name,
            )
        self._request("POST", "/subscription/disable", {"code": subscription_code, "token": token})

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[ProviderConfirmation]:
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER)
        if not signature:
            raise WebhookSignatureError("Missing x-paystack-signature header")

        expected = sign_payload(self._secret_key, body)
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}") from exc

        event_type = event.get("event")
        if event_type != SUCCESS_EVENT:
            logger.info("paystack.webhook.ignored", extra={"event_type": event_type, "provider": self.name})
            return None

        return self._confirmation_from_charge(event.get("data") or {})

    def _confirmation_from_charge(self, data: Dict[str, Any]) -> ProviderConfirmation:
        metadata = data.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None
        if not isinstance(metadata, dict):
            raise ValidationError("Payment metadata missing from Paystack charge")
        try:
            parsed = PaymentMetadata.model_validate(metadata)
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed payment metadata: {exc.errors()[0]['loc']}") from exc

        if data.get("id") is None:
            raise ValidationError("Paystack charge has no transaction id")

        subscription = data.get("subscription")
        subscription_code = None
        if isinstance(subscription, dict):
            subscription_code = subscription.get("subscription_code") or subscription.get("code")
        elif isinstance(subscription, str):
            subscription_code = subscription

        amount = Decimal(str(data.get("amount") or 0)) / Decimal(100)

        return ProviderConfirmation(
            provider=self.name,
            transaction_id=str(data["id"]),
            amount=amount,
            channel=data.get("channel"),
            paid_at=_parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            metadata=parsed,
            subscription_code=subscription_code,
            reference=data.get("reference"),
            raw=data,
        )
