"""User lookups and account lifecycle helpers.

Learn: soft deletion means "active user" is always `deleted_at IS NULL`.
Every query that hands a User back to a caller goes through these helpers
so no code path can resurrect a deleted account by accident.
"""

import uuid
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.db.models import POLICY_TIERS, FederatedIdentity, User, utcnow


class UserNotFoundError(Exception):
    """Raised when a user does not exist or has been deleted."""
    pass


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_active_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    result = await db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    user = result.scalars().first()
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


async def find_active_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(
            User.email == normalize_email(email),
            User.deleted_at.is_(None),
        )
    )
    return result.scalars().first()


async def soft_delete_user(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Mark the user deleted and unlink its identities.

    Learn: identities are removed (not just hidden) so the same Apple ID
    or email can sign up again later as a brand-new account.
    Sessions must be revoked separately (SessionStore.revoke_all).
    """
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.deleted_at.is_(None))
        .values(deleted_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise UserNotFoundError(f"User {user_id} not found")

    await db.execute(
        delete(FederatedIdentity)
        .where(FederatedIdentity.user_id == user_id)
        .execution_options(synchronize_session=False)
    )


async def set_usage_policy(db: AsyncSession, user_id: uuid.UUID, policy: str) -> None:
    if policy not in POLICY_TIERS:
        raise ValueError(f"Unknown policy tier: {policy}")
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.deleted_at.is_(None))
        .values(ai_usage_policy=policy, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise UserNotFoundError(f"User {user_id} not found")
