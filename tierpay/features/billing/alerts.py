"""
Operator-facing billing alerts.

Raised when the remote side of a subscription could not be brought in line
with local state (remote disable failed, old subscription disabled but the
replacement never started). Reconciliation lists open alerts; an operator
resolves them.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from tierpay.core.database import billing_alerts, session_scope

REMOTE_DISABLE_FAILED = "remote_disable_failed"
REMOTE_DISABLED_WITHOUT_REPLACEMENT = "remote_disabled_without_replacement"


def record_alert(
    kind: str,
    user_id: str,
    *,
    provider: Optional[str] = None,
    subscription_code: Optional[str] = None,
    detail: Optional[str] = None,
    session: Optional[Session] = None,
) -> int:
    with session_scope(session) as s:
        result = s.execute(
            insert(billing_alerts).values(
                kind=kind,
                user_id=user_id,
                provider=provider,
                subscription_code=subscription_code,
                detail=(detail or "")[:2000],
                resolved=False,
            )
        )
        return result.inserted_primary_key[0]


def open_alerts(limit: Optional[int] = None, session: Optional[Session] = None) -> List[Dict[str, Any]]:
    query = select(billing_alerts).where(billing_alerts.c.resolved.is_(False)).order_by(billing_alerts.c.id)
    if limit is not None:
        query = query.limit(limit)
    with session_scope(session) as s:
        return [dict(row._mapping) for row in s.execute(query).fetchall()]


def resolve_alerts(alert_ids: List[int], session: Optional[Session] = None) -> int:
    if not alert_ids:
        return 0
    with session_scope(session) as s:
        result = s.execute(
            update(billing_alerts).where(billing_alerts.c.id.in_(alert_ids)).values(resolved=True)
        )
        return result.rowcount
