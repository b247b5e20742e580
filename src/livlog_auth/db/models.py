"""SQLAlchemy ORM models: single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Relationships, constraints, and indexes defined here.
Alembic auto-generates migrations by comparing these models to the actual DB.

Key concepts:
- UUID primary keys (portable `Uuid` type: native on PostgreSQL, CHAR(32) on SQLite)
- Secrets are never stored: refresh tokens as SHA-256, codes as bcrypt
- Partial unique indexes carry the invariants ("one active code per email",
  "one active account per email") so the database rejects concurrent duplicates
- Python-side timestamp defaults so values are known right after flush
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def as_utc(dt: datetime) -> datetime:
    """Normalize a datetime read from the database to aware UTC.

    SQLite hands back naive datetimes even for timezone=True columns.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# Policy tiers for the AI search quota
POLICY_BASIC = "basic"
POLICY_PRO = "pro"
POLICY_UNLIMITED = "unlimited"
POLICY_TIERS = (POLICY_BASIC, POLICY_PRO, POLICY_UNLIMITED)


# ══════════════════════════════════════════════════════════════
# Users and linked identities
# ══════════════════════════════════════════════════════════════


class User(Base):
    """A person using the catalog app.

    Learn: email is optional because Sign in with Apple may hide it.
    Accounts are soft-deleted (deleted_at) so sessions and usage rows that
    reference them stay consistent; every lookup filters deleted users out.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index(
            "uq_users_email_active",
            "email",
            unique=True,
            postgresql_where=text("email IS NOT NULL AND deleted_at IS NULL"),
            sqlite_where=text("email IS NOT NULL AND deleted_at IS NULL"),
        ),
        Index("idx_users_ai_usage_policy", "ai_usage_policy"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ai_usage_policy: Mapped[str] = mapped_column(
        String(20), nullable=False, default=POLICY_BASIC, server_default=POLICY_BASIC
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    identities: Mapped[list["FederatedIdentity"]] = relationship(back_populates="user")


class FederatedIdentity(Base):
    """A (provider, subject) pair owned by exactly one user.

    Learn: the unique constraint is what makes concurrent first sign-ins
    safe. Two requests may both miss the lookup, but only one INSERT can
    win; the loser re-reads and returns the winner's user.
    The email login path is recorded here too, as provider "email".
    """

    __tablename__ = "user_auth_providers"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_auth_provider"),
        Index("idx_auth_providers_user_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="identities")


# ══════════════════════════════════════════════════════════════
# Refresh sessions
# ══════════════════════════════════════════════════════════════


class UserSession(Base):
    """A long-lived, renewable login on one device.

    Learn: only the SHA-256 of the refresh token is stored, so a database
    dump cannot be replayed. Each rotation revokes this row and points
    replaced_by_id at its successor; all rows descending from one login
    share a family_id.
    """

    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("idx_user_sessions_user_id", "user_id"),
        Index("idx_user_sessions_family", "family_id"),
        Index("idx_user_sessions_expires", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    family_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    refresh_token_hash: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    device_info: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    replaced_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ══════════════════════════════════════════════════════════════
# Email verification codes
# ══════════════════════════════════════════════════════════════


class VerificationCode(Base):
    """A one-time numeric code bound to an email address.

    Learn: not tied to a user, because the user may not exist yet.
    The partial unique index allows any number of consumed rows but at
    most one unconsumed row per email.
    """

    __tablename__ = "verification_codes"
    __table_args__ = (
        Index(
            "uq_verification_codes_active_email",
            "email",
            unique=True,
            postgresql_where=text("consumed_at IS NULL"),
            sqlite_where=text("consumed_at IS NULL"),
        ),
        Index("idx_verification_codes_email_created", "email", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(60), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ══════════════════════════════════════════════════════════════
# AI search usage
# ══════════════════════════════════════════════════════════════


class UsagePeriod(Base):
    """Rolling AI-search accounting window, one row per user.

    Learn: a stale window is reset in place by the same upsert that
    counts the request, so there is never more than one active period.
    """

    __tablename__ = "ai_search_usage"
    __table_args__ = (
        Index("idx_ai_search_usage_period_end", "period_end"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    search_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
