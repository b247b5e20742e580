"""Session store: refresh-token sessions with one-time-use rotation.

Learn: a refresh token is an opaque random string. The database keeps
only its SHA-256, so a leaked dump cannot mint sessions. Every use of a
refresh token (rotate) burns it and issues a new one:

  login  → session A (family F)
  rotate(A) → A revoked, A.replaced_by = B, session B (family F)
  rotate(A) again → SessionRevokedError

Claiming a session is one conditional UPDATE:
  UPDATE user_sessions SET revoked_at = now
   WHERE refresh_token_hash = :h AND revoked_at IS NULL AND expires_at > now
Two concurrent rotations of the same token cannot both match that row,
so exactly one wins. Only after a miss do we read the row to explain why.

Methods flush but never commit: the caller (AuthService) owns the
transaction, so a rotation and everything around it commit or roll back
together.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.auth.hashing import generate_refresh_token, hash_refresh_token
from livlog_auth.auth.tokens import CredentialIssuer
from livlog_auth.db.models import User, UserSession, as_utc, new_uuid, utcnow

logger = structlog.get_logger()


# ═══════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════


class SessionError(Exception):
    """Refresh rejected: the client must sign in again."""
    pass


class SessionNotFoundError(SessionError):
    pass


class SessionRevokedError(SessionError):
    pass


class SessionExpiredError(SessionError):
    pass


@dataclass
class RotationResult:
    refresh_token: str
    access_token: str
    session: UserSession
    user: User


# ═══════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════


class SessionStore:
    """Issues, rotates and revokes refresh sessions.

    The issuer is only needed by rotate(), which mints the new access token.
    """

    def __init__(
        self,
        db: AsyncSession,
        issuer: Optional[CredentialIssuer] = None,
        refresh_ttl: timedelta = timedelta(days=30),
        revoke_family_on_reuse: bool = False,
    ):
        self.db = db
        self.issuer = issuer
        self.refresh_ttl = refresh_ttl
        self.revoke_family_on_reuse = revoke_family_on_reuse

    # ─── Issue ───────────────────────────────────────────

    async def issue(
        self,
        user_id: uuid.UUID,
        device_info: Optional[str] = None,
        family_id: Optional[uuid.UUID] = None,
    ) -> tuple[str, UserSession]:
        """Create a session. The plaintext token is returned exactly once."""
        token = generate_refresh_token()
        now = utcnow()
        session = UserSession(
            id=new_uuid(),
            user_id=user_id,
            family_id=family_id or new_uuid(),
            refresh_token_hash=hash_refresh_token(token),
            device_info=device_info,
            created_at=now,
            expires_at=now + self.refresh_ttl,
        )
        self.db.add(session)
        await self.db.flush()

        logger.info(
            "session.issued",
            session_id=str(session.id),
            user_id=str(user_id),
            family_id=str(session.family_id),
        )
        return token, session

    # ─── Rotate ──────────────────────────────────────────

    async def rotate(self, presented_token: str) -> RotationResult:
        """Exchange a refresh token for a fresh refresh + access pair.

        Raises SessionNotFoundError, SessionRevokedError or SessionExpiredError.
        """
        if self.issuer is None:
            raise RuntimeError("rotate() needs a CredentialIssuer")
        token_hash = hash_refresh_token(presented_token)
        now = utcnow()

        claimed = await self.db.execute(
            update(UserSession)
            .where(
                UserSession.refresh_token_hash == token_hash,
                UserSession.revoked_at.is_(None),
                UserSession.expires_at > now,
            )
            .values(revoked_at=now)
            .returning(
                UserSession.id,
                UserSession.user_id,
                UserSession.family_id,
                UserSession.device_info,
            )
            .execution_options(synchronize_session=False)
        )
        row = claimed.first()
        if row is None:
            raise await self._rejection(token_hash, now)

        user = (
            await self.db.execute(
                select(User).where(User.id == row.user_id, User.deleted_at.is_(None))
            )
        ).scalars().first()
        if user is None:
            # Account deleted after the session was issued
            raise SessionRevokedError("Session has been revoked")

        new_token, new_session = await self.issue(
            row.user_id, row.device_info, family_id=row.family_id
        )
        await self.db.execute(
            update(UserSession)
            .where(UserSession.id == row.id)
            .values(replaced_by_id=new_session.id)
            .execution_options(synchronize_session=False)
        )

        access_token = self.issuer.mint_access(user.id, email=user.email)

        logger.info(
            "session.rotated",
            old_session_id=str(row.id),
            new_session_id=str(new_session.id),
            user_id=str(user.id),
        )
        return RotationResult(
            refresh_token=new_token,
            access_token=access_token,
            session=new_session,
            user=user,
        )

    async def _rejection(self, token_hash: str, now: datetime) -> SessionError:
        """Explain why no session could be claimed for this hash."""
        result = await self.db.execute(
            select(UserSession)
            .where(UserSession.refresh_token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        session = result.scalars().first()

        if session is None:
            return SessionNotFoundError("Session not found")

        if session.revoked_at is not None:
            if session.replaced_by_id is not None and self.revoke_family_on_reuse:
                revoked = await self._revoke_family(session.family_id, now)
                logger.warning(
                    "session.reuse_detected",
                    session_id=str(session.id),
                    family_id=str(session.family_id),
                    user_id=str(session.user_id),
                    revoked=revoked,
                )
            return SessionRevokedError("Session has been revoked")

        if as_utc(session.expires_at) <= now:
            return SessionExpiredError("Session has expired")

        # Matched no row a moment ago but looks active now: lost a race
        # against a concurrent rotation that has not committed yet.
        return SessionRevokedError("Session has been revoked")

    # ─── Revoke ──────────────────────────────────────────

    async def revoke(self, session_id: uuid.UUID) -> bool:
        """Revoke one session. Returns False if it was already revoked."""
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.id == session_id, UserSession.revoked_at.is_(None))
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def revoke_token(self, refresh_token: str) -> bool:
        """Revoke the session a refresh token belongs to (logout)."""
        result = await self.db.execute(
            update(UserSession)
            .where(
                UserSession.refresh_token_hash == hash_refresh_token(refresh_token),
                UserSession.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        revoked = result.rowcount > 0
        logger.info("session.logout", revoked=revoked)
        return revoked

    async def revoke_all(self, user_id: uuid.UUID) -> int:
        """Revoke every active session of a user. Returns how many."""
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
            .values(revoked_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.info("session.revoked_all", user_id=str(user_id), count=result.rowcount)
        return result.rowcount

    async def _revoke_family(self, family_id: uuid.UUID, now: datetime) -> int:
        result = await self.db.execute(
            update(UserSession)
            .where(UserSession.family_id == family_id, UserSession.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
