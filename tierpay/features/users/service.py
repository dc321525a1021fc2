"""
User store (collaborator).

- find_by_id(user_id)
- save(user)  -- persists the embedded subscription fact
- create_user(...)  -- bootstrap/test helper; identity is owned upstream
"""

from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from tierpay.core.database import session_scope, users as app_users, utc_now
from tierpay.models.billing import SubscriptionFact, SubscriptionStatus
from tierpay.models.user import User


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        username=row.username,
        email=row.email,
        first_name=row.first_name,
        subscription=SubscriptionFact(
            plan=row.plan,
            status=SubscriptionStatus(row.subscription_status),
            transaction_id=row.transaction_id or "",
            subscription_code=row.subscription_code or "",
            expires_at=row.expires_at,
        ),
    )


def find_by_id(user_id: str, session: Optional[Session] = None) -> Optional[User]:
    with session_scope(session) as s:
        row = s.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def save(user: User, session: Optional[Session] = None) -> None:
    """Write the user's subscription fact back. Profile fields are not touched."""
    fact = user.subscription
    with session_scope(session) as s:
        result = s.execute(
            update(app_users)
            .where(app_users.c.user_id == user.user_id)
            .values(
                plan=fact.plan,
                subscription_status=fact.status.value,
                transaction_id=fact.transaction_id,
                subscription_code=fact.subscription_code,
                expires_at=fact.expires_at,
                updated_at=utc_now(),
            )
        )
        if result.rowcount == 0:
            raise LookupError(f"user {user.user_id} vanished during save")


def create_user(
    user_id: str,
    username: str,
    email: str,
    first_name: Optional[str] = None,
    session: Optional[Session] = None,
) -> User:
    """Create a user with the default (inactive) subscription fact."""
    with session_scope(session) as s:
        s.execute(
            insert(app_users).values(
                user_id=user_id,
                username=username,
                email=email,
                first_name=first_name,
                subscription_status=SubscriptionStatus.INACTIVE.value,
                transaction_id="",
                subscription_code="",
            )
        )
    return User(user_id=user_id, username=username, email=email, first_name=first_name)
