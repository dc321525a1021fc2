"""
Payment confirmation tests.

Covers idempotency on transaction_id (sequential and concurrent), expiry
derivation from paid_at, and notification side effects.
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select

from tierpay.core.database import get_db_session, transactions
from tierpay.core.errors import UserNotFoundError, ValidationError
from tierpay.core.metrics import confirmations_total
from tierpay.features.billing import ledger
from tierpay.features.users.service import find_by_id
from tierpay.models.billing import SubscriptionStatus, TransactionStatus, TransactionType
from tierpay.tests.mocks import make_confirmation


def _ledger_count(transaction_id=None):
    query = select(func.count()).select_from(transactions)
    if transaction_id is not None:
        query = query.where(transactions.c.transaction_id == transaction_id)
    with get_db_session() as session:
        return session.execute(query).scalar()


def test_confirm_activates_subscription_and_writes_one_row(orchestrator):
    paid_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    outcome = orchestrator.confirm_payment(make_confirmation("TX1", paid_at=paid_at))

    assert outcome.status == "activated"
    assert outcome.message == "Subscription activated"
    assert not outcome.already_processed

    user = find_by_id("user_alice")
    assert user.subscription.status == SubscriptionStatus.ACTIVE
    assert user.subscription.plan == "pro"
    assert user.subscription.transaction_id == "TX1"
    assert user.subscription.subscription_code == "SUB_abc"

    record = ledger.find_by_transaction_id("TX1")
    assert record.status == TransactionStatus.SUCCESS
    assert record.transaction_type == TransactionType.SUBSCRIPTION
    assert record.user_name == "alice"
    assert record.email == "alice@example.com"
    assert record.payment_method == "card"
    assert record.payment_reference == "ref_TX1"
    assert record.reference_id.startswith("subscription_paystack_")
    assert record.reference_id != record.transaction_id
    assert _ledger_count() == 1


def test_expiry_is_paid_at_plus_duration(orchestrator):
    paid_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    orchestrator.confirm_payment(make_confirmation("TX1", paid_at=paid_at, duration_in_days=30))

    expected = paid_at + timedelta(days=30)
    assert find_by_id("user_alice").subscription.expires_at == expected
    assert ledger.find_by_transaction_id("TX1").expires_at == expected


def test_paid_at_far_in_future_falls_back_to_receipt_time(orchestrator):
    received = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    orchestrator.clock = lambda: received
    skewed = received + timedelta(hours=2)

    orchestrator.confirm_payment(make_confirmation("TX1", paid_at=skewed, duration_in_days=30))

    assert find_by_id("user_alice").subscription.expires_at == received + timedelta(days=30)


def test_small_clock_skew_keeps_provider_paid_at(orchestrator):
    received = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    orchestrator.clock = lambda: received
    paid_at = received + timedelta(seconds=30)

    orchestrator.confirm_payment(make_confirmation("TX1", paid_at=paid_at, duration_in_days=30))

    assert find_by_id("user_alice").subscription.expires_at == paid_at + timedelta(days=30)


def test_duplicate_confirmation_is_not_reprocessed(orchestrator, notifier):
    first = orchestrator.confirm_payment(make_confirmation("TX1"))
    fact_after_first = find_by_id("user_alice").subscription

    second = orchestrator.confirm_payment(make_confirmation("TX1", paid_at=datetime.now(timezone.utc) + timedelta(days=3)))

    assert second.already_processed
    assert second.message == "Transaction already processed"
    assert second.expires_at == first.expires_at
    assert find_by_id("user_alice").subscription == fact_after_first
    assert _ledger_count("TX1") == 1
    assert len(notifier.sent) == 1
    assert confirmations_total.value({"provider": "paystack", "outcome": "already_processed"}) == 1


def test_concurrent_confirmations_write_exactly_one_row(orchestrator):
    results = []
    errors = []
    barrier = threading.Barrier(2)

    def worker():
        try:
            barrier.wait()
            results.append(orchestrator.confirm_payment(make_confirmation("TX1")))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(r.status for r in results) == ["activated", "already_processed"]
    assert _ledger_count("TX1") == 1


def test_unique_violation_from_another_process_reads_as_duplicate(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1"))

    # Lookup misses (row written by a different process after our check); insert then hits the constraint
    real_lookup = ledger.find_by_transaction_id
    calls = {"n": 0}

    def racing_lookup(transaction_id, session=None):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_lookup(transaction_id, session=session)

    with patch("tierpay.features.billing.service.ledger.find_by_transaction_id", side_effect=racing_lookup):
        outcome = orchestrator.confirm_payment(make_confirmation("TX1"))

    assert outcome.already_processed
    assert _ledger_count("TX1") == 1


def test_failed_write_unit_leaves_no_partial_state(orchestrator):
    with patch("tierpay.features.billing.service.ledger.create", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            orchestrator.confirm_payment(make_confirmation("TX1"))

    # Fact update rolled back with the failed ledger insert
    assert find_by_id("user_alice").subscription.status == SubscriptionStatus.INACTIVE
    assert _ledger_count() == 0


def test_confirm_unknown_user_raises(orchestrator):
    with pytest.raises(UserNotFoundError):
        orchestrator.confirm_payment(make_confirmation("TX1", user_id="ghost"))
    assert _ledger_count() == 0


def test_confirm_requires_transaction_id(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.confirm_payment(make_confirmation(""))


def test_confirmation_sends_notification_with_real_expiry(orchestrator, notifier):
    paid_at = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    orchestrator.confirm_payment(make_confirmation("TX1", paid_at=paid_at))

    assert len(notifier.sent) == 1
    msg = notifier.sent[0]
    assert msg.recipient == "alice@example.com"
    assert msg.subject == "Subscription Successful"
    assert msg.template == "subscription_confirmation"
    assert msg.category == "Subscription"
    assert msg.data == {
        "name": "Alice",
        "plan": "pro",
        "expires_at": (paid_at + timedelta(days=30)).isoformat(),
    }


def test_notifier_failure_does_not_fail_confirmation(orchestrator):
    orchestrator.notifier = Mock()
    orchestrator.notifier.send.side_effect = RuntimeError("smtp down")

    outcome = orchestrator.confirm_payment(make_confirmation("TX1"))

    assert outcome.status == "activated"
    assert _ledger_count("TX1") == 1


def test_plan_change_confirmation_keeps_metadata_transaction_type(orchestrator):
    orchestrator.confirm_payment(
        make_confirmation("TX2", transaction_type=TransactionType.PLAN_CHANGE)
    )
    assert ledger.find_by_transaction_id("TX2").transaction_type == TransactionType.PLAN_CHANGE


def test_verify_payment_applies_provider_confirmation(orchestrator, paystack):
    paystack.verify_result = make_confirmation("TX9")

    outcome = orchestrator.verify_payment("paystack", "ref_TX9")

    assert outcome.status == "activated"
    assert find_by_id("user_alice").subscription.transaction_id == "TX9"


def test_webhook_ignored_event_returns_none(orchestrator, paystack):
    paystack.webhook_result = None
    assert orchestrator.handle_webhook("paystack", {}, b"{}") is None
    assert _ledger_count() == 0
