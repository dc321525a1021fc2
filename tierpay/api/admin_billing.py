"""
Admin-only billing operations router.
Requires X-Admin-Key header for all endpoints.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tierpay.core.auth import AdminActor, require_admin
from tierpay.features.billing.reconcile_job import run_reconcile_job

logger = logging.getLogger("tierpay.admin_billing")

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


class ReconciliationResult(BaseModel):
    issues_found: int
    alerts_resolved: int
    issues: List[Dict[str, Any]]
    timestamp: datetime


@router.post("/reconcile", response_model=ReconciliationResult)
def reconcile_billing(
    fix: bool = Query(False, description="Mark open billing alerts resolved"),
    limit: int = Query(100, ge=1, le=1000),
    actor: AdminActor = Depends(require_admin),
):
    """Compare subscription facts against the ledger and list open alerts."""
    logger.info("admin.reconcile.start", extra={"status": "fix" if fix else "detect"})
    result = run_reconcile_job(datetime.now(timezone.utc), fix=fix, limit=limit)
    return ReconciliationResult(
        issues_found=result["issues_found"],
        alerts_resolved=result["alerts_resolved"],
        issues=result["issues"],
        timestamp=datetime.fromisoformat(result["timestamp"]),
    )
