"""Identity linker: (provider, subject) → local user.

Learn: first sign-in creates the user; every later sign-in finds it.
The hard part is two first sign-ins racing each other (double tap,
retrying client). Both miss the lookup, both try to create. The unique
constraint on (provider, provider_user_id) lets exactly one INSERT win;
the loser rolls back and re-reads, ending up with the winner's user.
So sign_in is idempotent under concurrency, not just sequentially.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.db.models import FederatedIdentity, User, new_uuid
from livlog_auth.services.users import find_active_user_by_email, normalize_email

logger = structlog.get_logger()

PROVIDER_APPLE = "apple"
PROVIDER_EMAIL = "email"


@dataclass(frozen=True)
class ProfileHints:
    """What the provider told us about the person, used only on creation."""
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False


class IdentityLinker:
    """Resolves federated identities to users, creating users on demand.

    Learn: sign_in may roll back the session when it loses a creation
    race, so it must be the first write of the caller's unit of work.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_user(self, provider: str, subject: str) -> Optional[User]:
        """The active user owning (provider, subject), if any."""
        result = await self.db.execute(
            select(User)
            .join(FederatedIdentity, FederatedIdentity.user_id == User.id)
            .where(
                FederatedIdentity.provider == provider,
                FederatedIdentity.provider_user_id == subject,
                User.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def sign_in(
        self,
        provider: str,
        subject: str,
        hints: Optional[ProfileHints] = None,
    ) -> User:
        """Return the user for this identity, creating it on first sign-in."""
        user = await self.find_user(provider, subject)
        if user is not None:
            return user

        hints = hints or ProfileHints()
        email = normalize_email(hints.email) if hints.email else None
        if email and await find_active_user_by_email(self.db, email) is not None:
            # Email belongs to another account; don't merge accounts silently
            email = None

        try:
            user = await self._create(
                provider,
                subject,
                email=email,
                email_verified=bool(email) and hints.email_verified,
                display_name=hints.display_name or None,
            )
        except IntegrityError:
            await self.db.rollback()
            user = await self.find_user(provider, subject)
            if user is not None:
                logger.info(
                    "identity.concurrent_create_resolved",
                    provider=provider,
                    user_id=str(user.id),
                )
                return user
            if email is None:
                raise
            # Another identity claimed the same email first
            user = await self._create(
                provider,
                subject,
                display_name=hints.display_name or None,
            )
            logger.info(
                "identity.email_claimed_concurrently",
                provider=provider,
                user_id=str(user.id),
            )

        logger.info("identity.user_created", provider=provider, user_id=str(user.id))
        return user

    async def link(self, user_id: uuid.UUID, provider: str, subject: str) -> FederatedIdentity:
        """Attach an identity to an existing user."""
        identity = FederatedIdentity(
            id=new_uuid(),
            user_id=user_id,
            provider=provider,
            provider_user_id=subject,
        )
        self.db.add(identity)
        await self.db.flush()
        logger.info("identity.linked", provider=provider, user_id=str(user_id))
        return identity

    async def providers_for(self, user_id: uuid.UUID) -> list[str]:
        """Linked provider names in the order they were linked."""
        result = await self.db.execute(
            select(FederatedIdentity.provider)
            .where(FederatedIdentity.user_id == user_id)
            .order_by(FederatedIdentity.created_at, FederatedIdentity.provider)
        )
        return list(result.scalars().all())

    # ─── Email path ──────────────────────────────────────

    async def resolve_email_user(self, email: str) -> User:
        """User for a just-verified email address.

        Learn: called by the verification authority after it consumed a
        code, in the same transaction. Order of preference:
        1. a user already linked to the "email" identity
        2. an active user whose email is verified (e.g. from Apple) → link it
        3. a new verified user

        An account that only claimed the address (an Apple sign-in with a
        client-supplied email) is never joined: whoever controls that
        account would gain the mailbox owner's login. The unproven claim
        is dropped from it and the mailbox owner gets a fresh account.
        """
        email = normalize_email(email)

        user = await self.find_user(PROVIDER_EMAIL, email)
        if user is None:
            user = await find_active_user_by_email(self.db, email)
            if user is not None and user.email_verified:
                await self.link(user.id, PROVIDER_EMAIL, email)
            else:
                if user is not None:
                    user.email = None
                    await self.db.flush()
                    logger.info("identity.unverified_email_released", user_id=str(user.id))
                user = await self._create(
                    PROVIDER_EMAIL, email, email=email, email_verified=True
                )
                logger.info("identity.user_created", provider=PROVIDER_EMAIL, user_id=str(user.id))

        if not user.email_verified:
            user.email_verified = True
            await self.db.flush()
        return user

    async def _create(
        self,
        provider: str,
        subject: str,
        email: Optional[str] = None,
        email_verified: bool = False,
        display_name: Optional[str] = None,
    ) -> User:
        """Insert User + FederatedIdentity. IntegrityError propagates."""
        user = User(
            id=new_uuid(),
            email=email,
            email_verified=email_verified,
            display_name=display_name,
        )
        self.db.add(user)
        await self.db.flush()

        self.db.add(
            FederatedIdentity(
                id=new_uuid(),
                user_id=user.id,
                provider=provider,
                provider_user_id=subject,
            )
        )
        await self.db.flush()
        return user
