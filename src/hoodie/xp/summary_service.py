"""Read-side XP summary: totals, level progress and per-source breakdown.

Totals are aggregated in SQL; row lists (history, bounties) are capped at
``HISTORY_LIMIT`` newest records, so a summary read stays bounded however
long a wallet's activity log grows.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoodie.db.models import CourseCompletion, User, UserActivity
from hoodie.xp.levels import level_progress
from hoodie.xp.progress_service import XP_ACTIVITY_TYPES, as_utc
from hoodie.xp.schemas import (
    BountyCompletionEntry,
    CourseCompletionEntry,
    XPBreakdown,
    XPHistoryEntry,
    XPSummaryResponse,
)

HISTORY_LIMIT = 100

# activity_type -> (history type, breakdown field)
_HISTORY_SOURCES = {
    "course_completion": ("course", "course_xp"),
    "xp_bounty": ("bounty", "bounty_xp"),
    "daily_login_bonus": ("daily_login", "daily_login_xp"),
    "xp_awarded": ("admin_award", "admin_award_xp"),
}


def _history_source(activity_type: str) -> tuple[str, str]:
    return _HISTORY_SOURCES.get(activity_type, ("other", "other_xp"))


async def _breakdown(db: AsyncSession, wallet_address: str) -> XPBreakdown:
    result = await db.execute(
        select(UserActivity.activity_type, func.coalesce(func.sum(UserActivity.xp_amount), 0))
        .where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type.in_(XP_ACTIVITY_TYPES),
        )
        .group_by(UserActivity.activity_type)
    )
    breakdown = XPBreakdown()
    for activity_type, total in result.all():
        _, field = _history_source(activity_type)
        setattr(breakdown, field, getattr(breakdown, field) + int(total))
    return breakdown


async def _latest_activities(
    db: AsyncSession, wallet_address: str, activity_types: tuple[str, ...]
) -> list[UserActivity]:
    result = await db.execute(
        select(UserActivity)
        .where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type.in_(activity_types),
        )
        .order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
        .limit(HISTORY_LIMIT)
    )
    return list(result.scalars().all())


async def get_xp_summary(
    db: AsyncSession,
    wallet_address: str,
    include_history: bool = False,
    include_courses: bool = False,
    include_bounties: bool = False,
) -> XPSummaryResponse:
    """Build the XP summary for a wallet. Unknown wallets get a zero-state summary."""
    wallet_address = wallet_address.strip()
    result = await db.execute(select(User).where(User.wallet_address == wallet_address))
    user = result.scalar_one_or_none()

    if user is None:
        return XPSummaryResponse(
            wallet_address=wallet_address,
            exists=False,
            total_xp=0,
            message="User not found. XP will be created when first action is performed.",
            **level_progress(0),
        )

    progress = level_progress(user.total_xp or 0)
    summary = XPSummaryResponse(
        wallet_address=wallet_address,
        exists=True,
        display_name=user.display_name,
        squad=user.squad,
        total_xp=user.total_xp or 0,
        created_at=as_utc(user.created_at) if user.created_at else None,
        updated_at=as_utc(user.updated_at) if user.updated_at else None,
        **progress,
    )
    summary.breakdown = await _breakdown(db, wallet_address)

    if include_history:
        history = []
        for activity in await _latest_activities(db, wallet_address, XP_ACTIVITY_TYPES):
            details = activity.details or {}
            history.append(XPHistoryEntry(
                type=activity.activity_type,
                source=_history_source(activity.activity_type)[0],
                xp_amount=activity.xp_amount,
                reason=details.get("reason") or activity.action or activity.activity_type,
                date=as_utc(activity.created_at),
                metadata=details,
            ))
        summary.xp_history = history

    if include_courses:
        # At most one row per (wallet, course).
        course_result = await db.execute(
            select(CourseCompletion)
            .where(CourseCompletion.wallet_address == wallet_address)
            .order_by(CourseCompletion.completed_at.desc())
        )
        courses = [
            CourseCompletionEntry(
                course_id=c.course_id,
                course_title=c.course_title,
                xp_earned=c.xp_earned,
                completed_at=as_utc(c.completed_at),
            )
            for c in course_result.scalars().all()
        ]
        summary.course_completions = courses
        summary.total_courses_completed = len(courses)
        summary.total_course_xp = sum(c.xp_earned for c in courses)

    if include_bounties:
        summary.bounty_completions = [
            BountyCompletionEntry(
                xp_earned=a.xp_amount,
                reason=(a.details or {}).get("reason"),
                bounty_type=(a.details or {}).get("bounty_type"),
                completed_at=as_utc(a.created_at),
            )
            for a in await _latest_activities(db, wallet_address, ("xp_bounty",))
        ]
        summary.total_bounty_xp = summary.breakdown.bounty_xp

    return summary
