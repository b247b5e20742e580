"""AI search quota routes.

Learn: the search itself lives in another service. Before calling the
AI provider the client (or that service) consumes one unit here; a 429
means "not until period_end". The tier always comes from the User row,
never from the request.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from livlog_auth.auth.dependencies import CurrentUser, get_current_user
from livlog_auth.db.engine import get_db
from livlog_auth.schemas.quota import UsageRead
from livlog_auth.services.quota import QuotaExceededError, QuotaTracker, UsageStatus
from livlog_auth.services.users import UserNotFoundError, get_active_user

router = APIRouter(prefix="/search")


def _tracker(request: Request, db: AsyncSession = Depends(get_db)) -> QuotaTracker:
    settings = request.app.state.settings
    return QuotaTracker(
        db,
        limits=settings.ai_search_limits,
        window=settings.ai_search_period,
    )


async def _policy(tracker: QuotaTracker, current: CurrentUser) -> str:
    try:
        user = await get_active_user(tracker.db, current.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    return user.ai_usage_policy


def _usage_read(policy: str, status: UsageStatus) -> UsageRead:
    return UsageRead(
        policy=policy,
        count=status.count,
        limit=status.limit,
        remaining=status.remaining,
        unlimited=status.unlimited,
        period_start=status.period_start,
        period_end=status.period_end,
    )


@router.get("/quota", response_model=UsageRead)
async def get_quota(
    current: CurrentUser = Depends(get_current_user),
    tracker: QuotaTracker = Depends(_tracker),
):
    """Current AI search usage for the signed-in user."""
    policy = await _policy(tracker, current)
    return _usage_read(policy, await tracker.usage(current.user_id, policy))


@router.post("/quota/consume", response_model=UsageRead)
async def consume_quota(
    current: CurrentUser = Depends(get_current_user),
    tracker: QuotaTracker = Depends(_tracker),
):
    """Count one AI search. 429 once the period's cap is used up."""
    policy = await _policy(tracker, current)
    try:
        status = await tracker.check_and_consume(current.user_id, policy)
    except QuotaExceededError as e:
        period_end = e.period_end.isoformat() if e.period_end else None
        raise HTTPException(
            status_code=429,
            detail={
                "message": "Too many AI search requests. Please try again later.",
                "limit": e.limit,
                "period_end": period_end,
            },
        )
    return _usage_read(policy, status)
