"""
Manual settlement and transaction query tests.
"""
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tierpay.core.errors import ProviderRejectedError, UserNotFoundError, ValidationError
from tierpay.features.billing import ledger
from tierpay.features.billing.ids import generate_transaction_id
from tierpay.features.billing.manual_provider import ManualProvider
from tierpay.features.billing.transactions import get_analytics, list_transactions
from tierpay.features.users.service import find_by_id
from tierpay.models.billing import (
    PaymentProviderName,
    SubscriptionStatus,
    TransactionFilter,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
)
from tierpay.tests.mocks import make_confirmation

MANUAL_ID = re.compile(r"^subscription_manual_\d{14}_[0-9a-f]{8}$")


def _row(transaction_id, *, provider="manual", status="success", created_at, plan="pro", amount="100", paid_at=None, billing_cycle="monthly"):
    return ledger.create(
        TransactionRecord(
            user_id="user_alice",
            user_name="alice",
            email="alice@example.com",
            plan=plan,
            billing_cycle=billing_cycle,
            amount=Decimal(amount),
            transaction_type=TransactionType.SUBSCRIPTION,
            transaction_id=transaction_id,
            reference_id=transaction_id,
            payment_provider=PaymentProviderName(provider),
            status=TransactionStatus(status),
            paid_at=paid_at,
            created_at=created_at,
        )
    )


def test_generate_transaction_id_format():
    now = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)
    tid = generate_transaction_id("subscription", "manual", now)
    assert tid.startswith("subscription_manual_20261018120000_")
    assert MANUAL_ID.match(tid)


def test_manual_payment_scenario(orchestrator, notifier):
    before = datetime.now(timezone.utc)
    result = orchestrator.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")
    after = datetime.now(timezone.utc)

    assert result["message"] == "Manual payment recorded successfully"
    tid = result["transaction_id"]
    assert MANUAL_ID.match(tid)

    fact = find_by_id("user_alice").subscription
    assert fact.status == SubscriptionStatus.ACTIVE
    assert fact.plan == "pro"
    assert fact.transaction_id == tid
    assert fact.subscription_code == ""
    assert before + timedelta(days=30) <= fact.expires_at <= after + timedelta(days=30)

    rows = ledger.find(TransactionFilter(user_id="user_alice"))
    assert len(rows) == 1
    row = rows[0]
    assert row.payment_provider == PaymentProviderName.MANUAL
    assert row.status == TransactionStatus.SUCCESS
    assert row.amount == Decimal("5000")
    assert row.payment_method == "cash"
    assert row.reference_id == tid
    assert row.transaction_id == tid

    assert notifier.sent[-1].subject == "Subscription Successful"


def test_manual_verify_reads_back_the_ledger_row(orchestrator):
    tid = orchestrator.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")["transaction_id"]

    confirmation = ManualProvider().verify(tid)
    assert confirmation.amount == Decimal("5000")
    assert confirmation.channel == "cash"
    assert confirmation.metadata.duration_in_days == 30

    outcome = orchestrator.verify_payment("manual", tid)
    assert outcome.already_processed
    assert len(ledger.find(TransactionFilter(user_id="user_alice"))) == 1


def test_manual_verify_unknown_reference_is_rejected(reset_db):
    with pytest.raises(ProviderRejectedError):
        ManualProvider().verify("subscription_manual_20261018120000_deadbeef")


def test_manual_provider_keeps_no_per_payment_state(orchestrator):
    manual = orchestrator.providers["manual"]
    for _ in range(3):
        orchestrator.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")
    assert vars(manual) == {}


def test_manual_payment_unknown_user(orchestrator):
    with pytest.raises(UserNotFoundError):
        orchestrator.record_manual_payment("ghost", 5000, "pro", "monthly", "cash")


@pytest.mark.parametrize("amount", [0, -10, "abc"])
def test_manual_payment_rejects_bad_amount(orchestrator, amount):
    with pytest.raises(ValidationError):
        orchestrator.record_manual_payment("user_alice", amount, "pro", "monthly", "cash")


def test_filter_manual_success_newest_first(make_user):
    make_user()
    base = datetime(2026, 9, 1, tzinfo=timezone.utc)
    _row("m1", created_at=base)
    _row("m2", created_at=base + timedelta(days=2))
    _row("p1", provider="paystack", created_at=base + timedelta(days=1))
    _row("m3", status="failed", created_at=base + timedelta(days=3))

    rows = list_transactions(
        TransactionFilter(provider=PaymentProviderName.MANUAL, status=TransactionStatus.SUCCESS)
    )

    assert [r.transaction_id for r in rows] == ["m2", "m1"]
    assert all(r.payment_provider == PaymentProviderName.MANUAL for r in rows)
    assert all(r.status == TransactionStatus.SUCCESS for r in rows)


def test_empty_filter_returns_everything_and_pages(make_user):
    make_user()
    base = datetime(2026, 9, 1, tzinfo=timezone.utc)
    for i in range(5):
        _row(f"t{i}", created_at=base + timedelta(hours=i))

    assert len(list_transactions()) == 5
    page = list_transactions(TransactionFilter(limit=2, offset=1))
    assert [r.transaction_id for r in page] == ["t3", "t2"]


def test_date_range_is_inclusive(make_user):
    make_user()
    base = datetime(2026, 9, 1, tzinfo=timezone.utc)
    _row("a", created_at=base)
    _row("b", created_at=base + timedelta(days=1))
    _row("c", created_at=base + timedelta(days=2))

    rows = list_transactions(TransactionFilter(start_date=base, end_date=base + timedelta(days=1)))
    assert [r.transaction_id for r in rows] == ["b", "a"]


def test_analytics_counts_all_rows_but_revenue_only_successes(make_user):
    make_user()
    base = datetime(2026, 9, 1, tzinfo=timezone.utc)
    _row("s1", amount="100", created_at=base, paid_at=datetime(2026, 9, 5, tzinfo=timezone.utc))
    _row("s2", provider="paystack", plan="basic", amount="250", created_at=base, paid_at=datetime(2026, 10, 1, tzinfo=timezone.utc))
    _row("f1", status="failed", amount="999", created_at=base)

    analytics = get_analytics()

    assert analytics.total_transactions == 3
    assert analytics.successful_transactions == 2
    assert analytics.total_revenue == Decimal("350")
    assert analytics.by_status == {"success": 2, "failed": 1}
    assert analytics.by_provider["manual"].count == 2
    assert analytics.by_provider["manual"].revenue == Decimal("100")
    assert analytics.by_provider["paystack"].revenue == Decimal("250")
    assert analytics.by_plan["basic"].count == 1
    assert analytics.by_billing_cycle["monthly"].count == 3
    assert analytics.by_transaction_type == {"subscription": 3}
    assert analytics.revenue_by_month == {"2026-09": Decimal("100"), "2026-10": Decimal("250")}


def test_analytics_on_empty_ledger(reset_db):
    analytics = get_analytics()
    assert analytics.total_transactions == 0
    assert analytics.total_revenue == Decimal("0")
    assert analytics.by_provider == {}


def test_confirmed_and_manual_rows_share_one_ledger(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1"))
    orchestrator.record_manual_payment("user_alice", 5000, "pro", "monthly", "bank_transfer")

    providers = {r.payment_provider for r in list_transactions()}
    assert providers == {PaymentProviderName.PAYSTACK, PaymentProviderName.MANUAL}
