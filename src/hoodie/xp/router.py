"""XP API endpoints — award, manual award, progress, summary, daily login, courses."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from hoodie.dependencies import get_db, get_redis_dep
from hoodie.xp.award_service import (
    award_manual_xp,
    award_xp,
    claim_daily_login,
    record_course_completion,
)
from hoodie.xp.levels import level_progress
from hoodie.xp.outcomes import AwardResult, Duplicate, LimitReached, Success
from hoodie.xp.progress_service import (
    DAILY_LOGIN_ACTION,
    as_utc,
    get_daily_login_status,
    get_daily_progress,
    get_recent_activities,
    local_date,
    next_day_start,
    utcnow,
)
from hoodie.xp.rewards import calculate_max_daily_xp, get_enabled_rewards, get_xp_reward
from hoodie.xp.schemas import (
    AwardRequest,
    AwardResponse,
    CourseCompletionRequest,
    CourseCompletionResponse,
    DailyLoginRequest,
    DailyLoginResponse,
    DailyLoginStatusResponse,
    DailyProgressResponse,
    ManualAwardRequest,
    RewardCatalogResponse,
    RewardConfigResponse,
    XPSummaryResponse,
)
from hoodie.xp.summary_service import get_xp_summary

router = APIRouter(prefix="/api/xp", tags=["XP"])

_STATUS_BY_KIND = {
    "unknown_action": 400,
    "action_disabled": 400,
    "invalid_amount": 400,
    "invalid_source": 400,
    "invalid_wallet": 400,
    "unauthorized": 403,
    "duplicate": 409,
    "limit_reached": 429,
    "cooldown_active": 429,
    "daily_cap_reached": 429,
    "storage_error": 500,
}


def _raise_rejection(outcome: AwardResult) -> None:
    raise HTTPException(status_code=_STATUS_BY_KIND[outcome.kind], detail=outcome.to_detail())  # type: ignore[union-attr]


def _award_response(outcome: Success) -> AwardResponse:
    progress = level_progress(outcome.new_total_xp)
    return AwardResponse(
        target_wallet=outcome.wallet_address,
        xp_awarded=outcome.xp_awarded,
        requested_xp=outcome.requested_xp,
        capped=outcome.capped,
        action=outcome.action,
        source=outcome.source,
        reason=outcome.reason,
        reference_id=outcome.reference_id,
        previous_xp=outcome.previous_xp,
        new_total_xp=outcome.new_total_xp,
        previous_level=outcome.previous_level,
        new_level=outcome.new_level,
        level_up=outcome.level_up,
        xp_in_current_level=progress["xp_in_current_level"],
        xp_to_next_level=progress["xp_to_next_level"],
        progress_to_next_level=progress["progress_to_next_level"],
        message=outcome.message,
        daily_progress=outcome.daily_progress,
        warnings=list(outcome.warnings),
    )


# ── Configured-action awards ──


@router.post("/auto-reward", response_model=AwardResponse)
async def auto_reward(
    body: AwardRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Award XP for a configured action."""
    outcome = await award_xp(
        db,
        body.wallet_address,
        body.action,
        reference_id=body.reference_id,
        custom_amount=body.custom_xp_amount,
        metadata=body.metadata,
        skip_duplicate_check=body.skip_duplicate_check,
        redis=redis,
    )
    if not isinstance(outcome, Success):
        _raise_rejection(outcome)
    return _award_response(outcome)


@router.get(
    "/auto-reward",
    response_model=DailyProgressResponse | RewardConfigResponse | RewardCatalogResponse,
)
async def auto_reward_info(
    wallet: str | None = Query(None),
    action: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Daily progress for ``wallet``, one action's config for ``action``, else the catalogue."""
    if wallet:
        now = utcnow()
        return DailyProgressResponse(
            daily_progress=await get_daily_progress(db, wallet.strip(), now=now),
            recent_activities=await get_recent_activities(db, wallet.strip(), now=now),
        )

    if action:
        config = get_xp_reward(action)
        if config is None:
            raise HTTPException(status_code=404, detail=f"Action not found: {action}")
        return RewardConfigResponse.from_config(config)

    actions = [RewardConfigResponse.from_config(c) for c in get_enabled_rewards()]
    return RewardCatalogResponse(
        actions=actions,
        total_actions=len(actions),
        max_daily_limited_xp=calculate_max_daily_xp(),
    )


# ── Manual awards and summary ──


@router.post("", response_model=AwardResponse)
async def manual_award(
    body: ManualAwardRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Grant an arbitrary XP amount (admin and system callers)."""
    outcome = await award_manual_xp(
        db,
        body.target_wallet,
        body.xp_amount,
        body.source,
        body.reason,
        awarded_by=body.awarded_by,
        metadata=body.metadata,
        redis=redis,
    )
    if not isinstance(outcome, Success):
        _raise_rejection(outcome)
    return _award_response(outcome)


@router.get("", response_model=XPSummaryResponse, response_model_exclude_none=True)
async def xp_summary(
    wallet: str = Query(..., min_length=1),
    include_history: bool = Query(False, alias="includeHistory"),
    include_courses: bool = Query(False, alias="includeCourses"),
    include_bounties: bool = Query(False, alias="includeBounties"),
    db: AsyncSession = Depends(get_db),
):
    """XP total, level progress and optional history/course/bounty sections."""
    return await get_xp_summary(
        db,
        wallet,
        include_history=include_history,
        include_courses=include_courses,
        include_bounties=include_bounties,
    )


# ── Daily login ──


@router.post("/daily-login", response_model=DailyLoginResponse, response_model_exclude_none=True)
async def daily_login(
    body: DailyLoginRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Claim today's login bonus. A second claim on the same day is not an error."""
    now = utcnow()
    outcome = await claim_daily_login(db, body.wallet_address, redis=redis, now=now)
    today = local_date(now).isoformat()

    # The bonus may also have been granted today through /auto-reward under another reference.
    if isinstance(outcome, Duplicate) or (
        isinstance(outcome, LimitReached) and outcome.action == DAILY_LOGIN_ACTION
    ):
        return DailyLoginResponse(
            success=False,
            already_claimed=True,
            message="Daily login bonus already claimed today",
            today=today,
            next_available=next_day_start(now),
        )
    if not isinstance(outcome, Success):
        _raise_rejection(outcome)

    return DailyLoginResponse(
        success=True,
        message=f"Daily login bonus claimed! +{outcome.xp_awarded} XP",
        today=today,
        next_available=next_day_start(now),
        xp_awarded=outcome.xp_awarded,
        new_total_xp=outcome.new_total_xp,
        new_level=outcome.new_level,
        level_up=outcome.level_up,
        daily_progress=outcome.daily_progress,
    )


@router.get("/daily-login", response_model=DailyLoginStatusResponse)
async def daily_login_status(
    wallet: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """Whether today's login bonus is still available."""
    return await get_daily_login_status(db, wallet.strip())


# ── Course completion ──


@router.post("/course-completion", response_model=CourseCompletionResponse, response_model_exclude_none=True)
async def course_completion(
    body: CourseCompletionRequest,
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Record a course completion and grant its XP once."""
    outcome = await record_course_completion(
        db,
        body.wallet_address,
        body.course_id,
        course_title=body.course_title,
        custom_xp=body.custom_xp,
        redis=redis,
    )

    if isinstance(outcome, Duplicate):
        return CourseCompletionResponse(
            success=False,
            already_completed=True,
            course_id=body.course_id,
            message="Course already completed",
            completed_at=as_utc(outcome.previous_award) if outcome.previous_award else None,
        )
    if not isinstance(outcome, Success):
        _raise_rejection(outcome)

    return CourseCompletionResponse(
        success=True,
        course_id=body.course_id,
        message=f"Course completed! +{outcome.xp_awarded} XP",
        award=_award_response(outcome),
    )
