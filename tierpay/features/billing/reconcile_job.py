"""
Ledger/subscription reconciliation job.

Detects (never repairs) money-relevant drift:
- missing_ledger_entry: active fact whose transaction id has no ledger row
- stale_subscription_fact: the user's newest successful payment is not the
  one the fact points at, and no plan change recorded superseding it
- open billing alerts (e.g. remote disable failed)

fix=True only marks open alerts resolved after operator review. Every run
writes a billing_job_runs row.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, insert, select

from tierpay.core.database import billing_job_runs, get_db_session, transactions, users
from tierpay.core.logging import log_event
from tierpay.features.billing import alerts
from tierpay.models.billing import SubscriptionStatus, TransactionStatus, TransactionType

JOB_NAME = "billing.reconcile"


def _superseded_by_plan_change(session, user_id: str, transaction_id: str) -> bool:
    row = session.execute(
        select(transactions.c.id)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.transaction_type == TransactionType.PLAN_CHANGE.value,
            transactions.c.replaced_transaction_id == transaction_id,
        )
        .limit(1)
    ).first()
    return row is not None


def _find_issues(session) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    ledger_ids = {
        row[0]
        for row in session.execute(
            select(transactions.c.transaction_id).where(transactions.c.transaction_id.is_not(None))
        ).fetchall()
    }

    for u in session.execute(select(users)).fetchall():
        if u.subscription_status == SubscriptionStatus.ACTIVE.value and u.transaction_id:
            if u.transaction_id not in ledger_ids:
                issues.append({
                    "type": "missing_ledger_entry",
                    "user_id": u.user_id,
                    "transaction_id": u.transaction_id,
                })

        newest = session.execute(
            select(transactions.c.transaction_id)
            .where(
                transactions.c.user_id == u.user_id,
                transactions.c.status == TransactionStatus.SUCCESS.value,
                transactions.c.transaction_id.is_not(None),
            )
            .order_by(desc(transactions.c.created_at), desc(transactions.c.id))
            .limit(1)
        ).first()
        if (
            newest is not None
            and newest.transaction_id != u.transaction_id
            and not _superseded_by_plan_change(session, u.user_id, newest.transaction_id)
        ):
            issues.append({
                "type": "stale_subscription_fact",
                "user_id": u.user_id,
                "transaction_id": newest.transaction_id,
                "fact_transaction_id": u.transaction_id,
            })
    return issues


def run_reconcile_job(now: Optional[datetime] = None, fix: bool = False, limit: int = 100) -> Dict[str, Any]:
    started_at = now or datetime.now(timezone.utc)

    with get_db_session() as session:
        issues = _find_issues(session)

        open_alerts = alerts.open_alerts(session=session)
        for alert in open_alerts:
            issues.append({
                "type": "billing_alert",
                "alert_id": alert["id"],
                "kind": alert["kind"],
                "user_id": alert["user_id"],
                "subscription_code": alert["subscription_code"],
            })

        resolved = 0
        if fix:
            resolved = alerts.resolve_alerts([a["id"] for a in open_alerts[:limit]], session=session)

        stats = {
            "issues_found": len(issues),
            "alerts_resolved": resolved,
        }
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status="success",
                stats_json=json.dumps(stats),
            )
        )

    log_event(
        "warning" if issues else "info",
        "billing.reconcile.complete",
        extra={"issues_found": len(issues), "alerts_resolved": resolved, "fix": fix},
    )

    return {
        "issues_found": len(issues),
        "alerts_resolved": resolved,
        "issues": issues,
        "timestamp": started_at.isoformat(),
    }
