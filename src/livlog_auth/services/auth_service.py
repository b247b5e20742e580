"""Auth service: the login flows, each one unit of work.

Learn: the components (session store, code authority, identity linker)
only flush. This service decides where a transaction ends:

  login_with_email:  consume code + find/create user + issue session → commit
  login_with_apple:  find/create user + issue session                → commit
  refresh:           claim old session + issue new one               → commit

Any exception (including cancellation) rolls the whole flow back, so an
expired code never leaves a half-created user behind and a failed
rotation never leaves the old session burnt with no successor.
"""

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.auth.apple import AppleIdentityVerifier, FederatedTokenError
from livlog_auth.auth.tokens import CredentialIssuer
from livlog_auth.db.models import User
from livlog_auth.services.identity_linker import (
    PROVIDER_APPLE,
    IdentityLinker,
    ProfileHints,
)
from livlog_auth.services.session_store import SessionError, SessionStore
from livlog_auth.services.users import get_active_user, soft_delete_user
from livlog_auth.services.verification import (
    CodeSender,
    IssuedCode,
    LogCodeSender,
    VerificationCodeAuthority,
)

logger = structlog.get_logger()


@dataclass
class AuthResult:
    """Everything a client needs after signing in."""
    access_token: str
    refresh_token: str
    expires_in: int
    user: User
    providers: list[str]


def build_display_name(given_name: Optional[str], family_name: Optional[str]) -> Optional[str]:
    """'Given Family' from Apple's name components; None if both are empty."""
    parts = [p.strip() for p in (given_name, family_name) if p and p.strip()]
    return " ".join(parts) or None


class AuthService:
    """Login, refresh, logout and account lifecycle for one request."""

    def __init__(
        self,
        db: AsyncSession,
        issuer: CredentialIssuer,
        sessions: SessionStore,
        codes: VerificationCodeAuthority,
        linker: IdentityLinker,
        sender: Optional[CodeSender] = None,
        apple: Optional[AppleIdentityVerifier] = None,
    ):
        self.db = db
        self.issuer = issuer
        self.sessions = sessions
        self.codes = codes
        self.linker = linker
        self.sender = sender or LogCodeSender()
        self.apple = apple

    @classmethod
    def from_settings(
        cls,
        db: AsyncSession,
        settings,
        issuer: CredentialIssuer,
        sender: Optional[CodeSender] = None,
        apple: Optional[AppleIdentityVerifier] = None,
    ) -> "AuthService":
        """Wire the components for one database session."""
        linker = IdentityLinker(db)
        return cls(
            db=db,
            issuer=issuer,
            sessions=SessionStore(
                db,
                issuer,
                refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
                revoke_family_on_reuse=settings.refresh_reuse_revokes_family,
            ),
            codes=VerificationCodeAuthority(
                db,
                linker,
                code_ttl=timedelta(seconds=settings.verification_code_ttl_seconds),
                code_length=settings.verification_code_length,
                resend_interval=timedelta(seconds=settings.code_resend_interval_seconds),
                hash_rounds=settings.code_hash_rounds,
            ),
            linker=linker,
            sender=sender,
            apple=apple,
        )

    @asynccontextmanager
    async def _unit_of_work(self):
        try:
            yield
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

    # ─── Email codes ─────────────────────────────────────

    async def send_code(self, email: str) -> IssuedCode:
        """Issue a code and hand it to the sender once it is durable."""
        async with self._unit_of_work():
            issued = await self.codes.request(email)
        await self.sender.send(issued)
        return issued

    async def resend_code(self, email: str) -> IssuedCode:
        async with self._unit_of_work():
            issued = await self.codes.resend(email)
        await self.sender.send(issued)
        return issued

    async def retry_after(self, email: str) -> int:
        return await self.codes.retry_after(email)

    async def login_with_email(
        self,
        email: str,
        code: str,
        device_info: Optional[str] = None,
    ) -> AuthResult:
        async with self._unit_of_work():
            user = await self.codes.verify(email, code)
            result = await self._start_session(user, device_info)
        logger.info("auth.email_login", user_id=str(user.id))
        return result

    # ─── Apple ───────────────────────────────────────────

    async def login_with_apple(
        self,
        identity_token: str,
        given_name: Optional[str] = None,
        family_name: Optional[str] = None,
        email: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AuthResult:
        """Sign in with an Apple identity token.

        Learn: Apple sends the name (and, for some flows, the email) to the
        app only on the very first authorization, so the client forwards
        them alongside the token. The token's own email claim is signed and
        preferred; a client-supplied one is kept but never marked verified.
        """
        if self.apple is None:
            raise FederatedTokenError("Sign in with Apple is not configured")
        identity = await self.apple.verify(identity_token)

        if identity.email:
            hints = ProfileHints(
                email=identity.email,
                display_name=build_display_name(given_name, family_name),
                email_verified=identity.email_verified,
            )
        else:
            hints = ProfileHints(
                email=email or None,
                display_name=build_display_name(given_name, family_name),
                email_verified=False,
            )

        async with self._unit_of_work():
            user = await self.linker.sign_in(PROVIDER_APPLE, identity.subject, hints)
            result = await self._start_session(user, device_info)
        logger.info("auth.apple_login", user_id=str(user.id))
        return result

    # ─── Sessions ────────────────────────────────────────

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate a refresh token. SessionError means: sign in again."""
        try:
            rotation = await self.sessions.rotate(refresh_token)
            providers = await self.linker.providers_for(rotation.user.id)
        except SessionError:
            # Keep any family revocation done while classifying the failure
            await self.db.commit()
            raise
        except BaseException:
            await self.db.rollback()
            raise
        await self.db.commit()

        return AuthResult(
            access_token=rotation.access_token,
            refresh_token=rotation.refresh_token,
            expires_in=self._expires_in(),
            user=rotation.user,
            providers=providers,
        )

    async def logout(self, refresh_token: str) -> bool:
        async with self._unit_of_work():
            return await self.sessions.revoke_token(refresh_token)

    # ─── Account ─────────────────────────────────────────

    async def get_profile(self, user_id: uuid.UUID) -> tuple[User, list[str]]:
        """The active user and its linked providers. Raises UserNotFoundError."""
        user = await get_active_user(self.db, user_id)
        return user, await self.linker.providers_for(user.id)

    async def delete_account(self, user_id: uuid.UUID) -> None:
        """Revoke every session, then soft-delete the user."""
        async with self._unit_of_work():
            revoked = await self.sessions.revoke_all(user_id)
            await soft_delete_user(self.db, user_id)
        logger.info("auth.account_deleted", user_id=str(user_id), sessions_revoked=revoked)

    # ─── Internal ────────────────────────────────────────

    async def _start_session(self, user: User, device_info: Optional[str]) -> AuthResult:
        refresh_token, _ = await self.sessions.issue(user.id, device_info)
        providers = await self.linker.providers_for(user.id)
        return AuthResult(
            access_token=self.issuer.mint_access(user.id, email=user.email),
            refresh_token=refresh_token,
            expires_in=self._expires_in(),
            user=user,
            providers=providers,
        )

    def _expires_in(self) -> int:
        return int(self.issuer.access_ttl.total_seconds())
