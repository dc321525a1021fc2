"""
Subscription orchestrator.

Coordinates:
- Payment initialization against the chosen provider
- Confirmation (webhook, verify poll, manual record) into exactly one
  subscription transition plus exactly one ledger row
- Cancellation and plan changes, with best-effort remote disable

All provider-specific code lives in the *_provider.py adapters.

Concurrency model:
- Mutating operations for one user are serialised by a per-user lock.
- Remote calls run outside the lock; state is re-read and re-validated once
  the lock is re-taken.
- Subscription fact update and ledger append share one DB transaction.
- UNIQUE(transaction_id) on the ledger catches duplicates across processes.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from tierpay.core.config import Settings, settings as default_settings
from tierpay.core.database import get_db_session
from tierpay.core.errors import (
    LedgerInconsistencyError,
    PlanNotFoundError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
    SubscriptionChangedError,
    SubscriptionNotActiveError,
    UserNotFoundError,
    ValidationError,
)
from tierpay.core.logging import log_event
from tierpay.core.metrics import (
    confirmations_total,
    provider_errors_total,
    remote_disable_failures_total,
    subscription_transitions_total,
)
from tierpay.features.billing import alerts, ledger
from tierpay.features.billing.ids import generate_transaction_id
from tierpay.features.billing.locks import KeyedLock
from tierpay.features.billing.manual_provider import ManualProvider
from tierpay.features.billing.paystack_provider import PaystackProvider
from tierpay.features.billing.provider import PaymentProvider, PaymentReference, ProviderConfirmation
from tierpay.features.billing.stripe_provider import StripeProvider
from tierpay.features.notifications.service import LoggingNotifier, MailTemplates, Notifier
from tierpay.features.tiers import service as tiers_service
from tierpay.features.users import service as users_service
from tierpay.models.billing import (
    BillingCycle,
    ConfirmOutcome,
    PaymentMetadata,
    PaymentProviderName,
    SubscriptionFact,
    SubscriptionStatus,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from tierpay.models.tier import TierPrice
from tierpay.models.user import User

ACTIVATED = "activated"
ALREADY_PROCESSED = "already_processed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionOrchestrator:
    def __init__(
        self,
        providers: Dict[str, PaymentProvider],
        notifier: Optional[Notifier] = None,
        *,
        default_provider: str = PaymentProviderName.PAYSTACK.value,
        manual_subscription_days: int = 30,
        max_clock_skew_seconds: int = 300,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.providers = dict(providers)
        self.providers.setdefault(PaymentProviderName.MANUAL.value, ManualProvider())
        self.notifier = notifier or LoggingNotifier()
        self.default_provider = default_provider
        self.manual_subscription_days = manual_subscription_days
        self.max_clock_skew = timedelta(seconds=max_clock_skew_seconds)
        self.clock = clock
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # lookups

    def _provider(self, name: Optional[str], *, allow_manual: bool = False) -> PaymentProvider:
        provider_name = (name or self.default_provider).strip().lower()
        if provider_name == PaymentProviderName.MANUAL.value and not allow_manual:
            raise ValidationError("Manual payments are recorded by an operator")
        adapter = self.providers.get(provider_name)
        if adapter is None:
            raise ValidationError(f"Payment provider not available: {provider_name}")
        return adapter

    def _user(self, user_id: str, session=None) -> User:
        user = users_service.find_by_id(user_id, session=session)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _price(self, plan: str, billing_cycle: str) -> Tuple[str, BillingCycle, TierPrice]:
        if not plan or not plan.strip():
            raise ValidationError("plan is required")
        try:
            cycle = BillingCycle(billing_cycle)
        except ValueError:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}")
        tier = tiers_service.find_by_name(plan)
        if tier is None:
            raise PlanNotFoundError(plan)
        price = tier.price_for(cycle)
        if price is None:
            raise PlanNotFoundError(plan, cycle.value)
        return tier.name, cycle, price

    def _provider_for_fact(self, fact: SubscriptionFact) -> Optional[PaymentProvider]:
        """Adapter that owns the fact's recurring handle, per the ledger row that created it."""
        if not fact.subscription_code:
            return None
        record = ledger.find_by_transaction_id(fact.transaction_id) if fact.transaction_id else None
        name = record.payment_provider.value if record else self.default_provider
        return self.providers.get(name)

    # ------------------------------------------------------------------
    # operations

    def initialize_payment(
        self,
        user_id: str,
        plan: str,
        billing_cycle: str,
        provider: Optional[str] = None,
        *,
        transaction_type: TransactionType = TransactionType.SUBSCRIPTION,
    ) -> PaymentReference:
        """
        Ask a provider to start a payment for (plan, billing_cycle).

        Touches neither the subscription fact nor the ledger; the payment only
        counts once a confirmation for it arrives.
        """
        user = self._user(user_id)
        tier_name, cycle, price = self._price(plan, billing_cycle)
        adapter = self._provider(provider)

        metadata = PaymentMetadata(
            user_id=user.user_id,
            plan=tier_name,
            billing_cycle=cycle,
            duration_in_days=price.duration_in_days,
            transaction_type=transaction_type,
        )
        try:
            reference = adapter.initialize(user.email, price.price_minor_units, price.plan_code, metadata)
        except ProviderError as exc:
            self._count_provider_error(adapter.name, exc)
            log_event(
                "warning",
                "billing.initialize.failed",
                user_id=user_id,
                provider=adapter.name,
                error_code=exc.code,
                extra={"plan": tier_name, "error": exc.message},
            )
            raise

        log_event(
            "info",
            "billing.initialize.started",
            user_id=user_id,
            provider=adapter.name,
            extra={"plan": tier_name, "billing_cycle": cycle.value, "reference": reference.reference},
        )
        return reference

    def confirm_payment(self, confirmation: ProviderConfirmation) -> ConfirmOutcome:
        """
        Apply a provider's payment confirmation.

        A transaction id already in the ledger yields an already_processed
        outcome without touching state. Otherwise the fact becomes active and
        one success row is appended, atomically.
        """
        transaction_id = (confirmation.transaction_id or "").strip()
        if not transaction_id:
            raise ValidationError("Confirmation has no transaction id")

        metadata = confirmation.metadata
        user_id = metadata.user_id

        with self._locks.hold(user_id):
            existing = ledger.find_by_transaction_id(transaction_id)
            if existing is not None:
                return self._duplicate(existing, confirmation.provider)

            user = self._user(user_id)
            received_at = self.clock()
            paid_at = self._effective_paid_at(confirmation.paid_at, received_at, user_id, transaction_id)
            expires_at = paid_at + timedelta(days=metadata.duration_in_days)

            fact = SubscriptionFact(
                plan=metadata.plan,
                status=SubscriptionStatus.ACTIVE,
                transaction_id=transaction_id,
                subscription_code=confirmation.subscription_code or "",
                expires_at=expires_at,
            )
            record = TransactionRecord(
                user_id=user.user_id,
                user_name=user.username,
                email=user.email,
                plan=metadata.plan,
                billing_cycle=metadata.billing_cycle.value,
                amount=confirmation.amount,
                transaction_type=metadata.transaction_type,
                transaction_id=transaction_id,
                reference_id=generate_transaction_id(metadata.transaction_type.value, confirmation.provider),
                payment_reference=confirmation.reference,
                payment_provider=PaymentProviderName(confirmation.provider),
                payment_method=confirmation.channel,
                status=TransactionStatus.SUCCESS,
                subscription_code=confirmation.subscription_code,
                paid_at=paid_at,
                expires_at=expires_at,
            )

            try:
                self._write_unit(user, fact, record)
            except IntegrityError:
                # Another process recorded the same transaction between lookup and insert
                existing = ledger.find_by_transaction_id(transaction_id)
                if existing is not None:
                    return self._duplicate(existing, confirmation.provider)
                self._raise_if_split(user_id, transaction_id)
                raise
            except Exception:
                self._raise_if_split(user_id, transaction_id)
                raise

        confirmations_total.inc({"provider": confirmation.provider, "outcome": ACTIVATED})
        subscription_transitions_total.inc({"operation": "confirm"})
        log_event(
            "info",
            "billing.confirm.activated",
            user_id=user_id,
            transaction_id=transaction_id,
            provider=confirmation.provider,
            extra={"plan": metadata.plan, "expires_at": expires_at.isoformat()},
        )
        self._notify_confirmation(user, metadata.plan, expires_at)

        return ConfirmOutcome(
            status=ACTIVATED,
            transaction_id=transaction_id,
            user_id=user_id,
            plan=metadata.plan,
            expires_at=expires_at,
            message="Subscription activated",
        )

    def cancel_subscription(self, user_id: str) -> Dict[str, str]:
        with self._locks.hold(user_id):
            user = self._user(user_id)
            if user.subscription.status != SubscriptionStatus.ACTIVE:
                raise SubscriptionNotActiveError(user_id)
            snapshot = user.subscription

        self._disable_remote_best_effort(user_id, snapshot)

        with self._locks.hold(user_id):
            user = self._user(user_id)
            if user.subscription.status != SubscriptionStatus.ACTIVE:
                raise SubscriptionNotActiveError(user_id)
            self._ensure_unchanged(user_id, snapshot, user.subscription, operation="cancel")
            cancelled = user.model_copy(
                update={"subscription": user.subscription.model_copy(update={"status": SubscriptionStatus.INACTIVE})}
            )
            users_service.save(cancelled)

        subscription_transitions_total.inc({"operation": "cancel"})
        log_event(
            "info",
            "billing.subscription.cancelled",
            user_id=user_id,
            transaction_id=snapshot.transaction_id or None,
            extra={"plan": snapshot.plan},
        )
        self._notify(
            user,
            subject="Subscription Canceled",
            template=MailTemplates.SUBSCRIPTION_CANCELLED,
            data={"name": user.display_name, "plan": cancelled.subscription.plan},
        )
        return {"message": "Subscription canceled successfully"}

    def change_plan(
        self,
        user_id: str,
        new_plan: str,
        new_billing_cycle: str,
        provider: Optional[str] = None,
    ) -> PaymentReference:
        """
        Move a user to a different plan.

        The old recurring subscription is disabled (best effort), a payment
        for the new plan is initialized, and the fact is parked inactive on
        the new plan with a pending ledger row until that payment confirms.
        """
        with self._locks.hold(user_id):
            user = self._user(user_id)
            tier_name, cycle, price = self._price(new_plan, new_billing_cycle)
            adapter = self._provider(provider)
            snapshot = user.subscription

        # A cancelled fact keeps its code; its remote subscription is already off
        disabled = False
        if snapshot.status == SubscriptionStatus.ACTIVE:
            disabled = self._disable_remote_best_effort(user_id, snapshot)

        try:
            reference = self.initialize_payment(
                user_id,
                tier_name,
                cycle.value,
                adapter.name,
                transaction_type=TransactionType.PLAN_CHANGE,
            )
        except ProviderError as exc:
            if disabled:
                alerts.record_alert(
                    alerts.REMOTE_DISABLED_WITHOUT_REPLACEMENT,
                    user_id,
                    provider=adapter.name,
                    subscription_code=snapshot.subscription_code,
                    detail=f"new plan {tier_name}/{cycle.value}: {exc.message}",
                )
                log_event(
                    "error",
                    "billing.change_plan.no_replacement",
                    user_id=user_id,
                    provider=adapter.name,
                    error_code=exc.code,
                    extra={"subscription_code": snapshot.subscription_code},
                )
            raise

        with self._locks.hold(user_id):
            user = self._user(user_id)
            self._ensure_unchanged(user_id, snapshot, user.subscription, operation="change_plan")
            now = self.clock()
            expires_at = now + timedelta(days=price.duration_in_days)
            fact = SubscriptionFact(
                plan=tier_name,
                status=SubscriptionStatus.INACTIVE,
                transaction_id="",
                subscription_code="",
                expires_at=expires_at,
            )
            record = TransactionRecord(
                user_id=user.user_id,
                user_name=user.username,
                email=user.email,
                plan=tier_name,
                billing_cycle=cycle.value,
                amount=price.price,
                transaction_type=TransactionType.PLAN_CHANGE,
                transaction_id=None,
                reference_id=generate_transaction_id(TransactionType.PLAN_CHANGE.value, adapter.name),
                payment_reference=reference.reference,
                replaced_transaction_id=snapshot.transaction_id or None,
                payment_provider=PaymentProviderName(adapter.name),
                status=TransactionStatus.PENDING,
                expires_at=expires_at,
            )
            self._write_unit(user, fact, record)

        subscription_transitions_total.inc({"operation": "change_plan"})
        log_event(
            "info",
            "billing.change_plan.pending",
            user_id=user_id,
            provider=adapter.name,
            extra={"plan": tier_name, "billing_cycle": cycle.value, "reference": reference.reference},
        )
        return reference

    def record_manual_payment(
        self,
        user_id: str,
        amount,
        plan: str,
        billing_cycle: str,
        payment_method: str,
    ) -> Dict[str, str]:
        """Record an offline payment; activates immediately for MANUAL_SUBSCRIPTION_DAYS."""
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {amount}")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if not plan or not plan.strip():
            raise ValidationError("plan is required")
        try:
            cycle = BillingCycle(billing_cycle)
        except ValueError:
            raise ValidationError(f"Invalid billing cycle: {billing_cycle}")

        manual = self._provider(PaymentProviderName.MANUAL.value, allow_manual=True)

        with self._locks.hold(user_id):
            user = self._user(user_id)
            metadata = PaymentMetadata(
                user_id=user_id,
                plan=plan,
                billing_cycle=cycle,
                duration_in_days=self.manual_subscription_days,
            )
            reference = manual.initialize(user.email, int(amount * 100), "", metadata)
            transaction_id = reference.reference

            now = self.clock()
            expires_at = now + timedelta(days=self.manual_subscription_days)
            fact = SubscriptionFact(
                plan=metadata.plan,
                status=SubscriptionStatus.ACTIVE,
                transaction_id=transaction_id,
                subscription_code="",
                expires_at=expires_at,
            )
            record = TransactionRecord(
                user_id=user.user_id,
                user_name=user.username,
                email=user.email,
                plan=metadata.plan,
                billing_cycle=cycle.value,
                amount=amount,
                transaction_type=TransactionType.SUBSCRIPTION,
                transaction_id=transaction_id,
                reference_id=transaction_id,
                payment_provider=PaymentProviderName.MANUAL,
                payment_method=payment_method,
                status=TransactionStatus.SUCCESS,
                paid_at=now,
                expires_at=expires_at,
            )
            try:
                self._write_unit(user, fact, record)
            except Exception:
                self._raise_if_split(user_id, transaction_id)
                raise

        confirmations_total.inc({"provider": manual.name, "outcome": ACTIVATED})
        subscription_transitions_total.inc({"operation": "manual"})
        log_event(
            "info",
            "billing.manual.recorded",
            user_id=user_id,
            transaction_id=transaction_id,
            provider=manual.name,
            extra={"plan": metadata.plan, "amount": str(amount), "payment_method": payment_method},
        )
        self._notify_confirmation(user, metadata.plan, expires_at)
        return {"transaction_id": transaction_id, "message": "Manual payment recorded successfully"}

    def verify_payment(self, provider: str, reference: str) -> ConfirmOutcome:
        """Poll the provider for a reference and apply the confirmation if paid."""
        adapter = self._provider(provider, allow_manual=True)
        try:
            confirmation = adapter.verify(reference)
        except ProviderError as exc:
            self._count_provider_error(adapter.name, exc)
            raise
        return self.confirm_payment(confirmation)

    def handle_webhook(self, provider: str, headers: Dict[str, str], body: bytes) -> Optional[ConfirmOutcome]:
        """Verify and apply a provider webhook. Returns None for ignored event types."""
        adapter = self._provider(provider)
        confirmation = adapter.parse_webhook(headers, body)
        if confirmation is None:
            return None
        return self.confirm_payment(confirmation)

    # ------------------------------------------------------------------
    # internals

    def _write_unit(self, user: User, fact: SubscriptionFact, record: TransactionRecord) -> None:
        with get_db_session() as session:
            users_service.save(user.model_copy(update={"subscription": fact}), session=session)
            ledger.create(record, session=session)

    def _raise_if_split(self, user_id: str, transaction_id: str) -> None:
        """After a failed write unit, check both sides agree; raise if they do not."""
        ledger_present = ledger.find_by_transaction_id(transaction_id) is not None
        user = users_service.find_by_id(user_id)
        fact_linked = bool(user and user.subscription.transaction_id == transaction_id)
        if ledger_present == fact_linked:
            return
        log_event(
            "error",
            "billing.ledger_inconsistency",
            user_id=user_id,
            transaction_id=transaction_id,
            error_code=LedgerInconsistencyError.code,
            extra={"ledger_present": ledger_present, "fact_linked": fact_linked},
        )
        raise LedgerInconsistencyError(
            "Ledger and subscription state disagree",
            user_id=user_id,
            transaction_id=transaction_id,
            ledger_present=ledger_present,
            fact_linked=fact_linked,
        )

    def _ensure_unchanged(self, user_id: str, snapshot: SubscriptionFact, current: SubscriptionFact, *, operation: str) -> None:
        """Abort when a confirmation landed while the lock was released for a remote call."""
        if (current.transaction_id, current.subscription_code) == (snapshot.transaction_id, snapshot.subscription_code):
            return
        log_event(
            "warning",
            f"billing.{operation}.superseded",
            user_id=user_id,
            transaction_id=current.transaction_id or None,
            extra={
                "snapshot_transaction_id": snapshot.transaction_id,
                "snapshot_subscription_code": snapshot.subscription_code,
                "subscription_code": current.subscription_code,
            },
        )
        raise SubscriptionChangedError(user_id)

    def _duplicate(self, existing: TransactionRecord, provider: str) -> ConfirmOutcome:
        confirmations_total.inc({"provider": provider, "outcome": ALREADY_PROCESSED})
        log_event(
            "info",
            "billing.confirm.duplicate",
            user_id=existing.user_id,
            transaction_id=existing.transaction_id,
            provider=provider,
        )
        return ConfirmOutcome(
            status=ALREADY_PROCESSED,
            transaction_id=existing.transaction_id or "",
            user_id=existing.user_id,
            plan=existing.plan,
            expires_at=existing.expires_at,
            message="Transaction already processed",
        )

    def _effective_paid_at(self, paid_at: datetime, received_at: datetime, user_id: str, transaction_id: str) -> datetime:
        if paid_at.tzinfo is None:
            paid_at = paid_at.replace(tzinfo=timezone.utc)
        if paid_at - received_at > self.max_clock_skew:
            log_event(
                "warning",
                "billing.confirm.paid_at_in_future",
                user_id=user_id,
                transaction_id=transaction_id,
                extra={"paid_at": paid_at.isoformat(), "received_at": received_at.isoformat()},
            )
            return received_at
        return paid_at

    def _disable_remote_best_effort(self, user_id: str, fact: SubscriptionFact) -> bool:
        """Disable the fact's recurring subscription. Failures become alerts, never errors."""
        adapter = self._provider_for_fact(fact)
        if adapter is None:
            return False
        try:
            adapter.disable_recurring(fact.subscription_code)
        except ProviderError as exc:
            remote_disable_failures_total.inc({"provider": adapter.name})
            self._count_provider_error(adapter.name, exc)
            log_event(
                "error",
                "billing.remote_disable_failed",
                user_id=user_id,
                transaction_id=fact.transaction_id or None,
                provider=adapter.name,
                error_code=exc.code,
                extra={"subscription_code": fact.subscription_code, "error": exc.message},
            )
            alerts.record_alert(
                alerts.REMOTE_DISABLE_FAILED,
                user_id,
                provider=adapter.name,
                subscription_code=fact.subscription_code,
                detail=exc.message,
            )
            return False
        return True

    def _count_provider_error(self, provider: str, exc: ProviderError) -> None:
        if isinstance(exc, ProviderUnavailableError):
            kind = "unavailable"
        elif isinstance(exc, ProviderRejectedError):
            kind = "rejected"
        else:
            kind = "error"
        provider_errors_total.inc({"provider": provider, "kind": kind})

    def _notify_confirmation(self, user: User, plan: str, expires_at: datetime) -> None:
        self._notify(
            user,
            subject="Subscription Successful",
            template=MailTemplates.SUBSCRIPTION_CONFIRMATION,
            data={"name": user.display_name, "plan": plan, "expires_at": expires_at.isoformat()},
        )

    def _notify(self, user: User, *, subject: str, template: str, data: Dict) -> None:
        try:
            self.notifier.send(user.email, subject, template, "Subscription", data)
        except Exception as exc:
            log_event(
                "warning",
                "billing.notify.failed",
                user_id=user.user_id,
                event_type=template,
                extra={"error": repr(exc)},
            )


def build_providers(cfg: Settings) -> Dict[str, PaymentProvider]:
    """Instantiate every provider whose credentials are configured."""
    providers: Dict[str, PaymentProvider] = {PaymentProviderName.MANUAL.value: ManualProvider()}
    frontend = cfg.FRONTEND_BASE_URL.rstrip("/")
    if cfg.PAYSTACK_SECRET_KEY:
        providers[PaymentProviderName.PAYSTACK.value] = PaystackProvider(
            cfg.PAYSTACK_SECRET_KEY,
            base_url=cfg.PAYSTACK_BASE_URL,
            callback_url=f"{frontend}/payment-success",
            timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        )
    if cfg.STRIPE_SECRET_KEY:
        providers[PaymentProviderName.STRIPE.value] = StripeProvider(
            cfg.STRIPE_SECRET_KEY,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            success_url=f"{frontend}/payment-success",
            cancel_url=f"{frontend}/payment-cancelled",
            timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        )
    return providers


_orchestrator: Optional[SubscriptionOrchestrator] = None


def get_orchestrator() -> SubscriptionOrchestrator:
    """Process-wide orchestrator built from settings (FastAPI dependency)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SubscriptionOrchestrator(
            build_providers(default_settings),
            default_provider=default_settings.DEFAULT_PROVIDER,
            manual_subscription_days=default_settings.MANUAL_SUBSCRIPTION_DAYS,
            max_clock_skew_seconds=default_settings.EXPIRY_MAX_CLOCK_SKEW_SECONDS,
        )
    return _orchestrator
