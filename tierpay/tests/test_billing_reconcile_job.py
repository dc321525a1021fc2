"""
Tests for the ledger reconciliation job.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import select, update

from tierpay.core.database import billing_alerts, billing_job_runs, get_db_session, users
from tierpay.features.billing import ledger
from tierpay.features.billing.alerts import REMOTE_DISABLE_FAILED, record_alert
from tierpay.features.billing.reconcile_job import run_reconcile_job
from tierpay.models.billing import PaymentProviderName, TransactionRecord, TransactionStatus, TransactionType
from tierpay.tests.mocks import make_confirmation


def _set_fact(user_id, **values):
    with get_db_session() as session:
        session.execute(update(users).where(users.c.user_id == user_id).values(**values))


def test_reconcile_job_records_job_run(reset_db):
    now = datetime.now(timezone.utc)

    result = run_reconcile_job(now=now, fix=False)
    assert result["issues_found"] == 0
    assert result["alerts_resolved"] == 0

    with get_db_session() as session:
        runs = session.execute(select(billing_job_runs)).fetchall()
    assert len(runs) == 1
    assert runs[0].job_name == "billing.reconcile"
    assert runs[0].status == "success"
    assert json.loads(runs[0].stats_json) == {"issues_found": 0, "alerts_resolved": 0}


def test_consistent_state_has_no_issues(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1"))
    orchestrator.record_manual_payment("user_alice", 5000, "pro", "monthly", "cash")

    assert run_reconcile_job()["issues_found"] == 0


def test_detects_active_fact_missing_from_ledger(make_user):
    make_user()
    _set_fact("user_alice", subscription_status="active", transaction_id="TX_ghost", plan="pro")

    result = run_reconcile_job()

    assert result["issues_found"] == 1
    issue = result["issues"][0]
    assert issue["type"] == "missing_ledger_entry"
    assert issue["user_id"] == "user_alice"
    assert issue["transaction_id"] == "TX_ghost"


def test_detects_fact_not_pointing_at_newest_payment(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1"))
    orchestrator.confirm_payment(make_confirmation("TX2"))
    _set_fact("user_alice", transaction_id="TX1")

    result = run_reconcile_job()

    assert [i["type"] for i in result["issues"]] == ["stale_subscription_fact"]
    assert result["issues"][0]["transaction_id"] == "TX2"


def test_cancelled_subscription_is_not_an_issue(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1", subscription_code=None))
    orchestrator.cancel_subscription("user_alice")

    assert run_reconcile_job()["issues_found"] == 0


def test_open_alerts_are_reported_and_fix_resolves_them(reset_db):
    record_alert(REMOTE_DISABLE_FAILED, "user_alice", provider="paystack", subscription_code="SUB_1", detail="timeout")

    detect = run_reconcile_job(fix=False)
    assert detect["issues"][0]["type"] == "billing_alert"
    assert detect["issues"][0]["kind"] == REMOTE_DISABLE_FAILED
    assert detect["alerts_resolved"] == 0

    fixed = run_reconcile_job(fix=True)
    assert fixed["alerts_resolved"] == 1

    with get_db_session() as session:
        alert = session.execute(select(billing_alerts)).first()
    assert alert.resolved is True
    assert run_reconcile_job()["issues_found"] == 0


def test_fix_never_touches_subscription_state(make_user):
    make_user()
    _set_fact("user_alice", subscription_status="active", transaction_id="TX_ghost", plan="pro")

    run_reconcile_job(fix=True)

    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == "user_alice")).first()
    assert row.subscription_status == "active"
    assert row.transaction_id == "TX_ghost"


def test_plan_change_superseding_the_payment_is_consistent(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1"))
    orchestrator.change_plan("user_alice", "basic", "monthly")

    assert run_reconcile_job()["issues_found"] == 0


def test_detects_confirmed_payment_overwritten_by_later_plan_change(orchestrator):
    orchestrator.confirm_payment(make_confirmation("TX1", subscription_code="SUB_old"))
    orchestrator.confirm_payment(make_confirmation("TX_paid", subscription_code="SUB_paid"))
    # plan change that only knew about TX1 wipes the fact
    ledger.create(
        TransactionRecord(
            user_id="user_alice",
            user_name="alice",
            email="alice@example.com",
            plan="basic",
            billing_cycle="monthly",
            amount=2500,
            transaction_type=TransactionType.PLAN_CHANGE,
            replaced_transaction_id="TX1",
            payment_provider=PaymentProviderName.PAYSTACK,
            status=TransactionStatus.PENDING,
        )
    )
    _set_fact("user_alice", subscription_status="inactive", transaction_id="", subscription_code="", plan="basic")

    result = run_reconcile_job()

    assert [i["type"] for i in result["issues"]] == ["stale_subscription_fact"]
    assert result["issues"][0]["transaction_id"] == "TX_paid"
