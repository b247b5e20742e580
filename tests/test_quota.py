"""Quota tracker tests.

Learn: check_and_consume commits on its own, so each test uses fresh
sessions from the factory the way separate requests would.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from livlog_auth.db.models import POLICY_BASIC, POLICY_PRO, POLICY_UNLIMITED, UsagePeriod, utcnow
from livlog_auth.services.quota import QuotaExceededError, QuotaTracker

LIMITS = {POLICY_BASIC: 5, POLICY_PRO: 50, POLICY_UNLIMITED: 0}


def _tracker(db, **kwargs) -> QuotaTracker:
    kwargs.setdefault("limits", LIMITS)
    return QuotaTracker(db, **kwargs)


@pytest.mark.asyncio
async def test_five_per_day_then_exceeded(db_session, user):
    tracker = _tracker(db_session)

    counts = [(await tracker.check_and_consume(user.id, "basic")).count for _ in range(5)]
    assert counts == [1, 2, 3, 4, 5]

    with pytest.raises(QuotaExceededError) as exc:
        await tracker.check_and_consume(user.id, "basic")
    assert exc.value.limit == 5
    assert exc.value.period_end > utcnow()

    # The refused call did not count
    assert (await tracker.usage(user.id, "basic")).count == 5


@pytest.mark.asyncio
async def test_new_period_after_period_end(db_session, user):
    tracker = _tracker(db_session)
    for _ in range(5):
        await tracker.check_and_consume(user.id, "basic")

    await db_session.execute(
        update(UsagePeriod).values(period_end=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()

    status = await tracker.check_and_consume(user.id, "basic")
    assert status.count == 1
    assert status.period_end - status.period_start == timedelta(hours=24)
    assert status.period_end > utcnow()

    rows = await db_session.scalar(select(func.count()).select_from(UsagePeriod))
    assert rows == 1


@pytest.mark.asyncio
async def test_concurrent_consumers_never_exceed_limit(session_factory, user):
    async def attempt():
        async with session_factory() as db:
            try:
                await _tracker(db).check_and_consume(user.id, "basic")
                return True
            except QuotaExceededError:
                return False

    results = await asyncio.gather(*[attempt() for _ in range(8)])
    assert sum(results) == 5

    async with session_factory() as db:
        assert (await _tracker(db).usage(user.id, "basic")).count == 5


@pytest.mark.asyncio
async def test_concurrent_consumers_below_limit_all_succeed(session_factory, user):
    async def attempt():
        async with session_factory() as db:
            return (await _tracker(db).check_and_consume(user.id, "basic")).count

    counts = await asyncio.gather(*[attempt() for _ in range(3)])
    assert sorted(counts) == [1, 2, 3]


@pytest.mark.asyncio
async def test_unlimited_tier_touches_no_storage(db_session, user):
    tracker = _tracker(db_session)
    for _ in range(20):
        status = await tracker.check_and_consume(user.id, "unlimited")
        assert status.unlimited
        assert status.remaining is None

    rows = await db_session.scalar(select(func.count()).select_from(UsagePeriod))
    assert rows == 0


@pytest.mark.asyncio
async def test_pro_tier_has_higher_limit(db_session, user):
    tracker = _tracker(db_session, limits={"basic": 1, "pro": 3, "unlimited": 0})
    for _ in range(3):
        await tracker.check_and_consume(user.id, "pro")
    with pytest.raises(QuotaExceededError):
        await tracker.check_and_consume(user.id, "pro")


@pytest.mark.asyncio
async def test_unknown_tier_falls_back_to_basic(db_session, user):
    tracker = _tracker(db_session, limits={"basic": 1, "pro": 3, "unlimited": 0})
    await tracker.check_and_consume(user.id, "enterprise")
    with pytest.raises(QuotaExceededError):
        await tracker.check_and_consume(user.id, "enterprise")


@pytest.mark.asyncio
async def test_usage_view(db_session, user):
    tracker = _tracker(db_session)
    empty = await tracker.usage(user.id, "basic")
    assert (empty.count, empty.limit, empty.remaining) == (0, 5, 5)
    assert empty.period_end is None

    await tracker.check_and_consume(user.id, "basic")
    await tracker.check_and_consume(user.id, "basic")
    status = await tracker.usage(user.id, "basic")
    assert (status.count, status.remaining) == (2, 3)

    await db_session.execute(
        update(UsagePeriod).values(period_end=utcnow() - timedelta(seconds=1))
    )
    await db_session.commit()
    assert (await tracker.usage(user.id, "basic")).count == 0


@pytest.mark.asyncio
async def test_exceeded_reports_current_period_end(db_session, user):
    tracker = _tracker(db_session, limits={"basic": 1, "pro": 3, "unlimited": 0})
    first = await tracker.check_and_consume(user.id, "basic")

    for _ in range(2):
        with pytest.raises(QuotaExceededError) as exc:
            await tracker.check_and_consume(user.id, "basic")
        assert exc.value.period_end == first.period_end

    # The session is still usable after the refused calls
    assert (await tracker.usage(user.id, "basic")).period_end == first.period_end
