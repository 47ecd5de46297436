"""Daily XP progress: day windows, today's totals and recent activity.

A "day" runs from midnight to midnight in the configured server timezone.
The progress reads here are display values and follow an explicit
best-effort policy: if the activity log cannot be read they return the
zero-state default flagged ``degraded`` instead of raising.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hoodie.config import get_settings
from hoodie.db.models import UserActivity
from hoodie.xp.rewards import DAILY_XP_CAP, get_xp_amount
from hoodie.xp.schemas import DailyLoginStatusResponse, DailyProgress, RecentActivity

logger = structlog.get_logger()

# Activity categories that move total_xp and count toward the daily cap.
XP_ACTIVITY_TYPES = ("xp_awarded", "xp_bounty", "course_completion", "daily_login_bonus")

DAILY_LOGIN_ACTION = "DAILY_LOGIN"


# ---------------------------------------------------------------------------
# Day windows
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    """Normalise to aware UTC; naive values (SQLite) are already UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _server_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def local_date(now: datetime) -> date:
    """Calendar date of ``now`` in the server timezone."""
    return as_utc(now).astimezone(_server_tz()).date()


def start_of_day(now: datetime) -> datetime:
    """UTC instant of the most recent server-local midnight."""
    midnight = datetime.combine(local_date(now), time.min, tzinfo=_server_tz())
    return midnight.astimezone(timezone.utc)


def next_day_start(now: datetime) -> datetime:
    """UTC instant of the next server-local midnight."""
    midnight = datetime.combine(local_date(now) + timedelta(days=1), time.min, tzinfo=_server_tz())
    return midnight.astimezone(timezone.utc)


def short_wallet(wallet_address: str) -> str:
    return wallet_address[:10] + "..."


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


async def sum_xp_today(db: AsyncSession, wallet_address: str, now: datetime) -> int:
    """XP granted to the wallet since local midnight, across all XP categories."""
    result = await db.execute(
        select(func.coalesce(func.sum(UserActivity.xp_amount), 0)).where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type.in_(XP_ACTIVITY_TYPES),
            UserActivity.created_at >= start_of_day(now),
        )
    )
    return int(result.scalar_one())


async def get_daily_progress(
    db: AsyncSession,
    wallet_address: str,
    *,
    now: datetime | None = None,
) -> DailyProgress:
    """Today's earned XP against the cap. Never raises on storage errors."""
    now = as_utc(now or utcnow())
    try:
        earned = await sum_xp_today(db, wallet_address, now)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning(
            "xp_daily_progress_unavailable",
            wallet=short_wallet(wallet_address),
            error=str(exc),
        )
        return DailyProgress(degraded=True)
    return DailyProgress.from_earned(earned, DAILY_XP_CAP)


async def get_recent_activities(
    db: AsyncSession,
    wallet_address: str,
    *,
    now: datetime | None = None,
    limit: int = 10,
) -> list[RecentActivity]:
    """Today's XP grants, newest first. Empty on storage errors."""
    now = as_utc(now or utcnow())
    try:
        result = await db.execute(
            select(UserActivity)
            .where(
                UserActivity.wallet_address == wallet_address,
                UserActivity.activity_type.in_(XP_ACTIVITY_TYPES),
                UserActivity.created_at >= start_of_day(now),
            )
            .order_by(UserActivity.created_at.desc(), UserActivity.id.desc())
            .limit(limit)
        )
        rows = result.scalars().all()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning(
            "xp_recent_activity_unavailable",
            wallet=short_wallet(wallet_address),
            error=str(exc),
        )
        return []

    return [
        RecentActivity(
            action=row.action,
            xp_amount=row.xp_amount,
            reason=(row.details or {}).get("reason"),
            timestamp=as_utc(row.created_at),
        )
        for row in rows
    ]


async def get_daily_login_status(
    db: AsyncSession,
    wallet_address: str,
    *,
    now: datetime | None = None,
) -> DailyLoginStatusResponse:
    """Whether today's login bonus was already granted, and when the next one opens."""
    now = as_utc(now or utcnow())
    result = await db.execute(
        select(func.max(UserActivity.created_at)).where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type == "xp_awarded",
            UserActivity.action == DAILY_LOGIN_ACTION,
            UserActivity.created_at >= start_of_day(now),
        )
    )
    last_claimed = result.scalar_one_or_none()
    claimed = last_claimed is not None

    return DailyLoginStatusResponse(
        wallet_address=wallet_address,
        today=local_date(now).isoformat(),
        already_claimed=claimed,
        last_claimed=as_utc(last_claimed) if claimed else None,
        next_available=next_day_start(now) if claimed else now,
        daily_bonus_xp=get_xp_amount(DAILY_LOGIN_ACTION),
    )
