"""Local transaction id generation."""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_transaction_id(transaction_type: str, provider: str, now: Optional[datetime] = None) -> str:
    """
    Build an id of the form {type}_{provider}_{yyyymmddHHMMSS}_{8 hex}.

    e.g. subscription_manual_20261018120000_1a2b3c4d
    """
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    kind = transaction_type.replace("/", "-")
    return f"{kind}_{provider}_{stamp}_{uuid.uuid4().hex[:8]}"
