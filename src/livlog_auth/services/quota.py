"""Quota tracker: per-user, per-tier rolling cap on AI searches.

Learn: the classic bug is check-then-increment:
  count = SELECT search_count  → 4 (< 5, ok)
  ... five concurrent requests all read 4 ...
  UPDATE search_count = count + 1
and the cap leaks. Here the check and the increment are one statement:

  INSERT INTO ai_search_usage (...) VALUES (..., 1, now, now + window)
  ON CONFLICT (user_id) DO UPDATE SET
      search_count = CASE WHEN period_end <= now THEN 1 ELSE search_count + 1 END,
      ...
  WHERE period_end <= now OR search_count < :limit
  RETURNING search_count, period_start, period_end

The database evaluates the WHERE against the row it locked, so N racing
callers with limit L see exactly min(N, L) rows come back. No row back
means the cap is hit and nothing was written.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import DateTime, case, literal, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.db.models import (
    POLICY_BASIC,
    UsagePeriod,
    as_utc,
    new_uuid,
    utcnow,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class UsageStatus:
    count: int
    limit: int  # 0 = unlimited
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(self.limit - self.count, 0)


class QuotaExceededError(Exception):
    """The user's cap for the current period is used up."""

    def __init__(self, limit: int, period_end: Optional[datetime]):
        super().__init__(f"AI search limit of {limit} reached")
        self.limit = limit
        self.period_end = period_end


class QuotaTracker:
    """Counts AI searches against tier limits.

    Unlike the login components this one commits: a consumed search is
    its own unit of work and must be durable before the search runs.
    """

    def __init__(
        self,
        db: AsyncSession,
        limits: dict[str, int],
        window: timedelta = timedelta(hours=24),
    ):
        self.db = db
        self.limits = dict(limits)
        self.window = window

    def limit_for(self, policy: str) -> int:
        """Cap for a tier; unknown tiers get the basic cap."""
        return self.limits.get(policy, self.limits[POLICY_BASIC])

    async def check_and_consume(self, user_id: uuid.UUID, policy: str) -> UsageStatus:
        """Count one search, or raise QuotaExceededError without counting it."""
        limit = self.limit_for(policy)
        if limit == 0:
            return UsageStatus(count=0, limit=0)

        now = utcnow()
        stmt = self._insert()(UsagePeriod).values(
            id=new_uuid(),
            user_id=user_id,
            search_count=1,
            period_start=now,
            period_end=now + self.window,
            updated_at=now,
        )
        stale = UsagePeriod.period_end <= now
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsagePeriod.user_id],
            set_={
                "search_count": case((stale, 1), else_=UsagePeriod.search_count + 1),
                "period_start": case(
                    (stale, literal(now, DateTime(timezone=True))),
                    else_=UsagePeriod.period_start,
                ),
                "period_end": case(
                    (stale, literal(now + self.window, DateTime(timezone=True))),
                    else_=UsagePeriod.period_end,
                ),
                "updated_at": now,
            },
            where=or_(stale, UsagePeriod.search_count < limit),
        ).returning(
            UsagePeriod.search_count,
            UsagePeriod.period_start,
            UsagePeriod.period_end,
        )

        try:
            row = (await self.db.execute(stmt)).first()
            if row is None:
                # Read before rollback: rollback expires loaded rows
                current = await self._current(user_id)
                period_end = as_utc(current.period_end) if current else None
                await self.db.rollback()
                logger.info(
                    "quota.exceeded",
                    user_id=str(user_id),
                    policy=policy,
                    limit=limit,
                )
                raise QuotaExceededError(limit, period_end)
            await self.db.commit()
        except QuotaExceededError:
            raise
        except BaseException:
            await self.db.rollback()
            raise

        status = UsageStatus(
            count=row.search_count,
            limit=limit,
            period_start=as_utc(row.period_start),
            period_end=as_utc(row.period_end),
        )
        logger.info(
            "quota.consumed",
            user_id=str(user_id),
            policy=policy,
            count=status.count,
            limit=limit,
        )
        return status

    async def usage(self, user_id: uuid.UUID, policy: str) -> UsageStatus:
        """Read-only view of the active period (count 0 if none or stale)."""
        limit = self.limit_for(policy)
        current = await self._current(user_id)
        if current is None or as_utc(current.period_end) <= utcnow():
            return UsageStatus(count=0, limit=limit)
        return UsageStatus(
            count=current.search_count,
            limit=limit,
            period_start=as_utc(current.period_start),
            period_end=as_utc(current.period_end),
        )

    async def _current(self, user_id: uuid.UUID) -> Optional[UsagePeriod]:
        result = await self.db.execute(
            select(UsagePeriod)
            .where(UsagePeriod.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    def _insert(self):
        # ON CONFLICT is dialect syntax; both supported backends share it
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert
        return pg_insert
