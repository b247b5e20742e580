"""Verification code authority: passwordless email sign-in.

Learn: the protocol is
  request(email) → 6-digit code mailed to the address, valid 10 min
  verify(email, code) → code consumed, user found or created

Invariants and how they are held:
- One live code per email. Issuing deletes the previous unconsumed code
  and inserts the new one in one transaction; a partial unique index
  (email WHERE consumed_at IS NULL) makes the database reject a
  concurrent duplicate instead of trusting a check-then-write.
- Single use. Consumption is a conditional UPDATE ... WHERE consumed_at
  IS NULL; of two concurrent verifies only one can flip the row.
- No orphans. Consuming the code and creating the user happen in the same
  transaction, owned by the caller.
- Issuance throttle (send and resend alike) is enforced here, from the
  database, not by the client's countdown timer.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.auth.hashing import generate_code, hash_code, verify_code
from livlog_auth.db.models import User, VerificationCode, as_utc, new_uuid, utcnow
from livlog_auth.services.identity_linker import IdentityLinker
from livlog_auth.services.users import normalize_email

logger = structlog.get_logger()

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


# ═══════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════


class VerificationError(Exception):
    """Base class for verification failures."""
    pass


class InvalidEmailError(VerificationError):
    pass


class InvalidCodeError(VerificationError):
    pass


class CodeExpiredError(VerificationError):
    pass


class CodeAlreadyUsedError(VerificationError):
    pass


class ResendThrottledError(VerificationError):
    """A code was issued for this email too recently."""

    def __init__(self, retry_after: int):
        super().__init__(f"Too many requests, retry in {retry_after}s")
        self.retry_after = retry_after


# ═══════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class IssuedCode:
    email: str
    code: str
    expires_at: datetime


class CodeSender(Protocol):
    async def send(self, issued: IssuedCode) -> None: ...


class LogCodeSender:
    """Development delivery: writes the issuance to the log.

    The code itself is only logged when reveal_code is set, which the app
    does in the development environment only.
    """

    def __init__(self, reveal_code: bool = False):
        self.reveal_code = reveal_code

    async def send(self, issued: IssuedCode) -> None:
        if self.reveal_code:
            logger.info("verification_code.sent", email=issued.email, code=issued.code)
        else:
            logger.info("verification_code.sent", email=issued.email)


def validate_email(email: str) -> str:
    """Normalize an address, raising InvalidEmailError if it is unusable."""
    email = normalize_email(email or "")
    if not email or len(email) > 255 or not EMAIL_RE.match(email):
        raise InvalidEmailError("Invalid email format")
    return email


# ═══════════════════════════════════════════════════════════
# Authority
# ═══════════════════════════════════════════════════════════


class VerificationCodeAuthority:
    """Issues and redeems one-time email codes. Flushes, never commits."""

    def __init__(
        self,
        db: AsyncSession,
        linker: IdentityLinker,
        code_ttl: timedelta = timedelta(minutes=10),
        code_length: int = 6,
        resend_interval: timedelta = timedelta(seconds=60),
        hash_rounds: int = 10,
    ):
        self.db = db
        self.linker = linker
        self.code_ttl = code_ttl
        self.code_length = code_length
        self.resend_interval = resend_interval
        self.hash_rounds = hash_rounds

    # ─── Issue ───────────────────────────────────────────

    async def request(self, email: str) -> IssuedCode:
        """Issue a fresh code, replacing any live one for this email.

        Refused with ResendThrottledError within resend_interval of the
        previous code for the address, whichever route issued it.
        """
        return await self._issue(validate_email(email))

    async def resend(self, email: str) -> IssuedCode:
        """Same contract as request(); the entry point of the resend route."""
        return await self._issue(validate_email(email))

    async def retry_after(self, email: str) -> int:
        """Seconds until another code may be issued for this email (0 = now)."""
        return await self._seconds_until_resend(validate_email(email))

    async def _issue(self, email: str) -> IssuedCode:
        wait = await self._seconds_until_resend(email)
        if wait > 0:
            logger.info("verification_code.throttled", email=email, retry_after=wait)
            raise ResendThrottledError(wait)

        code = generate_code(self.code_length)
        code_hash = await asyncio.to_thread(hash_code, code, self.hash_rounds)
        now = utcnow()
        record = VerificationCode(
            id=new_uuid(),
            email=email,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + self.code_ttl,
        )

        await self.db.execute(
            delete(VerificationCode)
            .where(
                VerificationCode.email == email,
                VerificationCode.consumed_at.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.add(record)
        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent request for the same email inserted first
            logger.info("verification_code.concurrent_issue", email=email)
            raise ResendThrottledError(max(int(self.resend_interval.total_seconds()), 1))

        logger.info("verification_code.issued", email=email, code_id=str(record.id))
        return IssuedCode(email=email, code=code, expires_at=record.expires_at)

    async def _latest(self, email: str) -> Optional[VerificationCode]:
        result = await self.db.execute(
            select(VerificationCode)
            .where(VerificationCode.email == email)
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _seconds_until_resend(self, email: str) -> int:
        latest = await self._latest(email)
        if latest is None:
            return 0
        remaining = as_utc(latest.created_at) + self.resend_interval - utcnow()
        if remaining <= timedelta(0):
            return 0
        return int(remaining.total_seconds()) + 1  # round up

    # ─── Verify ──────────────────────────────────────────

    async def verify(self, email: str, code: str) -> User:
        """Consume a code and return the (possibly new) user.

        Raises InvalidCodeError, CodeExpiredError or CodeAlreadyUsedError.
        """
        email = validate_email(email)
        if len(code or "") != self.code_length or not code.isdigit():
            raise InvalidCodeError("Invalid verification code")

        record = await self._latest(email)
        if record is None:
            raise InvalidCodeError("Invalid verification code")
        if not await asyncio.to_thread(verify_code, code, record.code_hash):
            raise InvalidCodeError("Invalid verification code")
        if record.consumed_at is not None:
            raise CodeAlreadyUsedError("Verification code already used")

        now = utcnow()
        if as_utc(record.expires_at) <= now:
            raise CodeExpiredError("Verification code expired")

        consumed = await self.db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.id == record.id,
                VerificationCode.consumed_at.is_(None),
                VerificationCode.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount == 0:
            # A concurrent verify consumed it between our read and write
            raise CodeAlreadyUsedError("Verification code already used")

        user = await self.linker.resolve_email_user(email)
        logger.info("verification_code.consumed", email=email, user_id=str(user.id))
        return user
