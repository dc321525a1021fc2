"""
Payment provider protocol.

Defines the capability interface every payment provider implements
(hosted gateway, card processor, manual settlement). The orchestrator only
talks to this interface, so providers can be swapped without touching the
subscription state machine.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

from tierpay.core.errors import ProviderUnavailableError
from tierpay.models.billing import PaymentMetadata

T = TypeVar("T")


@dataclass(frozen=True)
class PaymentReference:
    """Handle returned by initialize; the caller redirects or polls with it."""
    provider: str
    reference: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    status: str = "pending"  # pending for remote providers, success for manual


@dataclass(frozen=True)
class ProviderConfirmation:
    """A provider's statement that a payment succeeded."""
    provider: str
    transaction_id: str
    amount: Decimal  # major currency units
    channel: Optional[str]
    paid_at: datetime
    metadata: PaymentMetadata
    subscription_code: Optional[str] = None
    reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must:
    - bound every remote call by their configured timeout
    - raise ProviderUnavailableError on transport failure or timeout
    - raise ProviderRejectedError when the provider refuses the request
    """

    name: str

    def initialize(
        self,
        user_email: str,
        price_minor_units: int,
        provider_plan_code: str,
        metadata: PaymentMetadata,
    ) -> PaymentReference:
        """
        Start a payment.

        Args:
            user_email: Payer email
            price_minor_units: Amount in minor units (kobo, cents)
            provider_plan_code: Provider-side plan / price identifier
            metadata: Echoed back on confirmation

        Returns:
            PaymentReference
        """
        ...

    def verify(self, reference: str) -> ProviderConfirmation:
        """Look up a payment by reference; raises ProviderRejectedError unless it succeeded."""
        ...

    def disable_recurring(self, subscription_code: str) -> None:
        """Stop future charges for a recurring subscription."""
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> Optional[ProviderConfirmation]:
        """
        Verify the webhook signature and parse the event.

        Returns:
            A confirmation for payment-success events, None for events that
            are acknowledged but ignored.

        Raises:
            WebhookSignatureError: If the signature is missing or invalid
        """
        ...


_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider-call")


def call_with_timeout(fn: Callable[..., T], timeout: float, *args, provider: str, **kwargs) -> T:
    """
    Run a blocking SDK call with a hard deadline.

    Used for SDKs whose own timeout handling does not cover every code path.
    A call that overruns is abandoned (left to finish in the background) and
    reported as ProviderUnavailableError.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise ProviderUnavailableError(
            f"{provider} call timed out after {timeout}s", provider=provider
        )
