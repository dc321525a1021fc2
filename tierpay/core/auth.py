"""
Caller identity for the billing API.

Authentication itself is owned by the identity service in front of this one.
By the time a request reaches us the authenticated user id is either on
request.state (set by upstream middleware) or forwarded in X-User-Id.

Admin-only routes (transaction listing, analytics, manual payments,
reconciliation) require X-Admin-Key to match ADMIN_KEY.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from tierpay.core.config import settings

logger = logging.getLogger("tierpay.auth")


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash prefix>"
    auth_mechanism: str = "x_admin_key"


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Authenticated user id forwarded by the gateway"),
) -> str:
    """FastAPI dependency returning the calling user's id (401 if absent)."""
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/payments/transactions")
        def list_transactions(actor: AdminActor = Depends(require_admin)):
            ...
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        logger.warning("admin.unauthorized", extra={"path": request.url.path})
        raise HTTPException(
            status_code=401,
            detail={
                "error": "Unauthorized: invalid or missing admin credentials",
                "code": "admin_unauthorized",
            },
        )

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")
