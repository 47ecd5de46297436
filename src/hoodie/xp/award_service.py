"""XP award engine: configured-action awards, manual awards and level-up detection.

Configured-action pipeline (``award_xp``), short-circuiting on the first
rejection:

1. Validate wallet, action and amount (no storage access).
2. Lock the wallet (advisory lock on PostgreSQL plus the user row), then
   run duplicate, per-action daily limit, cooldown and global daily cap
   checks.
3. Create the user if needed, apply XP and recompute the level.
4. Append the activity record inside a savepoint. A unique idempotency key
   turns a racing duplicate into a full rollback; any other log failure
   leaves the XP change in place and is reported as a warning.
5. Commit, then report today's progress.
"""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hoodie.config import get_settings
from hoodie.db.base import Base
from hoodie.db.models import CourseCompletion, User, UserActivity
from hoodie.xp.levels import compute_level
from hoodie.xp.outcomes import (
    ActionDisabled,
    AwardResult,
    CooldownActive,
    DailyCapReached,
    Duplicate,
    InvalidAmount,
    InvalidSource,
    InvalidWallet,
    LimitReached,
    Rejection,
    StorageError,
    Success,
    Unauthorized,
    UnknownAction,
)
from hoodie.xp.progress_service import (
    DAILY_LOGIN_ACTION,
    as_utc,
    get_daily_progress,
    local_date,
    short_wallet,
    start_of_day,
    sum_xp_today,
    utcnow,
)
from hoodie.xp.rewards import DAILY_XP_CAP, get_xp_reward

logger = structlog.get_logger()

MANUAL_SOURCE_ACTIVITY_TYPES: Mapping[str, str] = MappingProxyType({
    "course": "course_completion",
    "bounty": "xp_bounty",
    "daily_login": "daily_login_bonus",
    "admin": "xp_awarded",
    "other": "xp_awarded",
})

COURSE_XP_REWARDS: Mapping[str, int] = MappingProxyType({
    "wallet-wizardry": 100,
    "nft-mastery": 100,
    "meme-coin-mania": 100,
    "community-strategy": 100,
    "sns": 100,
    "technical-analysis": 100,
    "cybersecurity-wallet-practices": 100,
    "ai-automation-curriculum": 100,
    "lore-narrative-crafting": 100,
    "nft-trading-psychology": 100,
})
DEFAULT_COURSE_XP = 50


def default_display_name(wallet_address: str) -> str:
    return f"User {wallet_address[:6]}..."


def idempotency_key(wallet_address: str, action: str, reference_id: str) -> str:
    return f"{wallet_address}:{action}:{reference_id}"


# ---------------------------------------------------------------------------
# User rows
# ---------------------------------------------------------------------------


async def _lock_user(db: AsyncSession, wallet_address: str) -> User | None:
    """Load the user row FOR UPDATE, refreshing any stale identity-map copy."""
    result = await db.execute(
        select(User)
        .where(User.wallet_address == wallet_address)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _lock_wallet(db: AsyncSession, wallet_address: str) -> None:
    """Serialize award transactions for one wallet until commit or rollback.

    A row lock alone misses wallets without a users row yet, so PostgreSQL also
    takes a transaction-scoped advisory lock on the wallet. SQLite allows a
    single writer and needs neither.
    """
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(wallet_address))))
    await _lock_user(db, wallet_address)


async def get_or_create_user(db: AsyncSession, wallet_address: str, now: datetime) -> User:
    """Return the locked user row, creating it at 0 XP / level 1 if absent."""
    user = await _lock_user(db, wallet_address)
    if user is not None:
        return user

    insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
    await db.execute(
        insert(User)
        .values(
            wallet_address=wallet_address,
            display_name=default_display_name(wallet_address),
            total_xp=0,
            level=1,
            is_admin=False,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["wallet_address"])
    )
    logger.info("xp_user_created", wallet=short_wallet(wallet_address))

    result = await db.execute(
        select(User)
        .where(User.wallet_address == wallet_address)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def is_admin(db: AsyncSession, wallet_address: str) -> bool:
    result = await db.execute(select(User.is_admin).where(User.wallet_address == wallet_address))
    return bool(result.scalar_one_or_none())


# ---------------------------------------------------------------------------
# Rate / duplicate lookups
# ---------------------------------------------------------------------------


async def _find_prior_award(
    db: AsyncSession, wallet_address: str, action: str, reference_id: str
) -> UserActivity | None:
    result = await db.execute(
        select(UserActivity)
        .where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type == "xp_awarded",
            UserActivity.action == action,
            UserActivity.reference_id == reference_id,
        )
        .order_by(UserActivity.created_at.asc())
        .limit(1)
    )
    return result.scalars().first()


async def _count_action_today(db: AsyncSession, wallet_address: str, action: str, now: datetime) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(UserActivity)
        .where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type == "xp_awarded",
            UserActivity.action == action,
            UserActivity.created_at >= start_of_day(now),
        )
    )
    return int(result.scalar_one())


async def _last_action_at(db: AsyncSession, wallet_address: str, action: str) -> datetime | None:
    result = await db.execute(
        select(func.max(UserActivity.created_at)).where(
            UserActivity.wallet_address == wallet_address,
            UserActivity.activity_type == "xp_awarded",
            UserActivity.action == action,
        )
    )
    last = result.scalar_one_or_none()
    return as_utc(last) if last is not None else None


async def _apply_daily_cap(
    db: AsyncSession, wallet_address: str, amount: int, now: datetime
) -> int | DailyCapReached:
    """Grantable amount under the global daily cap, or the rejection if no headroom is left."""
    earned_today = await sum_xp_today(db, wallet_address, now)
    if earned_today >= DAILY_XP_CAP:
        return DailyCapReached(total_xp_today=earned_today, daily_cap=DAILY_XP_CAP)

    headroom = DAILY_XP_CAP - earned_today
    if amount > headroom:
        logger.info(
            "xp_daily_cap_applied",
            wallet=short_wallet(wallet_address),
            requested=amount,
            granted=headroom,
            earned_today=earned_today,
        )
        return headroom
    return amount


async def _reject(db: AsyncSession, outcome: Rejection, wallet_address: str) -> Rejection:
    """Release the row lock and report a rejection. Nothing has been written at this point."""
    await db.rollback()
    event = "xp_duplicate_prevented" if isinstance(outcome, Duplicate) else "xp_award_rejected"
    logger.info(event, wallet=short_wallet(wallet_address), kind=outcome.kind, reason=outcome.message)
    return outcome


# ---------------------------------------------------------------------------
# Grant
# ---------------------------------------------------------------------------


async def _append_activity(db: AsyncSession, activity: UserActivity) -> None:
    """Insert the activity record inside a savepoint so a failure only undoes the log row."""
    async with db.begin_nested():
        db.add(activity)


async def _publish_level_up(redis: object, wallet_address: str, old_level: int, new_level: int) -> None:
    """Broadcast a level-up event for live overlays and leaderboards. Best-effort."""
    if redis is None:
        return
    try:
        await redis.publish(  # type: ignore[attr-defined]
            get_settings().level_up_channel,
            json.dumps({
                "wallet_address": wallet_address,
                "old_level": old_level,
                "new_level": new_level,
            }),
        )
    except Exception:
        logger.warning("level_up_publish_failed", wallet=short_wallet(wallet_address), exc_info=True)


async def _grant(
    db: AsyncSession,
    *,
    wallet_address: str,
    amount: int,
    requested: int,
    activity_type: str,
    reason: str,
    details: dict[str, Any],
    now: datetime,
    redis: object = None,
    action: str | None = None,
    source: str | None = None,
    reference_id: str | None = None,
    key: str | None = None,
    extra_rows: Callable[[int], Sequence[Base]] | None = None,
) -> AwardResult:
    """Apply ``amount`` XP to the wallet, log it and commit."""
    user = await get_or_create_user(db, wallet_address, now)

    previous_xp = user.total_xp or 0
    previous_level = user.level or 1
    new_total_xp = previous_xp + amount
    new_level = compute_level(new_total_xp)
    level_up = new_level > previous_level

    user.total_xp = new_total_xp
    user.level = new_level
    user.updated_at = now
    if extra_rows is not None:
        db.add_all(extra_rows(amount))

    try:
        await db.flush()
    except IntegrityError:
        if key is None:
            raise
        return await _reject(db, Duplicate(action=action, reference_id=reference_id), wallet_address)

    activity = UserActivity(
        wallet_address=wallet_address,
        activity_type=activity_type,
        action=action,
        reference_id=reference_id,
        xp_amount=amount,
        idempotency_key=key,
        created_at=now,
        details={
            **details,
            "xp_amount": amount,
            "action": action,
            "source": source,
            "reference_id": reference_id,
            "reason": reason,
            "previous_xp": previous_xp,
            "new_total_xp": new_total_xp,
            "previous_level": previous_level,
            "new_level": new_level,
            "level_up": level_up,
        },
    )

    warnings: list[str] = []
    try:
        await _append_activity(db, activity)
    except SQLAlchemyError as exc:
        if key is not None and isinstance(exc, IntegrityError):
            return await _reject(db, Duplicate(action=action, reference_id=reference_id), wallet_address)
        logger.warning(
            "xp_activity_log_failed",
            wallet=short_wallet(wallet_address),
            action=action,
            source=source,
            xp=amount,
            error=str(exc),
        )
        warnings.append("activity_log_failed")

    await db.commit()

    logger.info(
        "xp_awarded",
        wallet=short_wallet(wallet_address),
        action=action,
        source=source,
        xp=amount,
        requested=requested,
        new_total_xp=new_total_xp,
        level_up=level_up,
    )

    if level_up:
        await _publish_level_up(redis, wallet_address, previous_level, new_level)

    return Success(
        wallet_address=wallet_address,
        xp_awarded=amount,
        requested_xp=requested,
        previous_xp=previous_xp,
        new_total_xp=new_total_xp,
        previous_level=previous_level,
        new_level=new_level,
        level_up=level_up,
        reason=reason,
        daily_progress=await get_daily_progress(db, wallet_address, now=now),
        action=action,
        source=source,
        reference_id=reference_id,
        warnings=tuple(warnings),
    )


# ---------------------------------------------------------------------------
# Configured-action awards
# ---------------------------------------------------------------------------


async def award_xp(
    db: AsyncSession,
    wallet_address: str,
    action: str,
    reference_id: str | None = None,
    custom_amount: int | None = None,
    metadata: dict[str, Any] | None = None,
    skip_duplicate_check: bool = False,
    *,
    redis: object = None,
    now: datetime | None = None,
) -> AwardResult:
    """Award XP for a configured action.

    ``custom_amount`` replaces the configured amount. ``skip_duplicate_check``
    is for privileged callers and also leaves the idempotency key unset.
    """
    wallet_address = wallet_address.strip()
    if not wallet_address:
        return InvalidWallet(wallet_address=wallet_address)
    config = get_xp_reward(action)
    if config is None:
        return UnknownAction(action=action)
    if not config.enabled:
        return ActionDisabled(action=config.key)

    requested = custom_amount if custom_amount is not None else config.xp_amount
    if requested <= 0:
        return InvalidAmount(amount=requested)

    now = as_utc(now or utcnow())
    check_duplicates = not skip_duplicate_check and bool(reference_id)

    try:
        await _lock_wallet(db, wallet_address)

        if check_duplicates:
            prior = await _find_prior_award(db, wallet_address, config.key, reference_id)  # type: ignore[arg-type]
            if prior is not None:
                return await _reject(
                    db,
                    Duplicate(action=config.key, reference_id=reference_id, previous_award=as_utc(prior.created_at)),
                    wallet_address,
                )

        if config.max_per_day:
            count = await _count_action_today(db, wallet_address, config.key, now)
            if count >= config.max_per_day:
                return await _reject(
                    db,
                    LimitReached(action=config.key, current_count=count, max_per_day=config.max_per_day),
                    wallet_address,
                )

        if config.cooldown_hours:
            last = await _last_action_at(db, wallet_address, config.key)
            if last is not None:
                cooldown = timedelta(hours=config.cooldown_hours)
                elapsed = now - last
                if elapsed < cooldown:
                    remaining_hours = math.ceil((cooldown - elapsed).total_seconds() / 3600)
                    return await _reject(
                        db,
                        CooldownActive(action=config.key, remaining_hours=remaining_hours),
                        wallet_address,
                    )

        granted = await _apply_daily_cap(db, wallet_address, requested, now)
        if isinstance(granted, DailyCapReached):
            return await _reject(db, granted, wallet_address)

        return await _grant(
            db,
            wallet_address=wallet_address,
            amount=granted,
            requested=requested,
            activity_type="xp_awarded",
            reason=config.description,
            details={**(metadata or {}), "category": config.category},
            now=now,
            redis=redis,
            action=config.key,
            reference_id=reference_id,
            key=idempotency_key(wallet_address, config.key, reference_id) if check_duplicates else None,  # type: ignore[arg-type]
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("xp_award_storage_error", wallet=short_wallet(wallet_address), action=config.key, error=str(exc))
        return StorageError(error=str(exc))


async def claim_daily_login(
    db: AsyncSession,
    wallet_address: str,
    *,
    redis: object = None,
    now: datetime | None = None,
) -> AwardResult:
    """Grant the once-per-day login bonus, keyed on the server-local date."""
    now = as_utc(now or utcnow())
    today = local_date(now).isoformat()
    return await award_xp(
        db,
        wallet_address,
        DAILY_LOGIN_ACTION,
        reference_id=f"login_{today}",
        metadata={"login_date": today, "login_timestamp": now.isoformat()},
        redis=redis,
        now=now,
    )


# ---------------------------------------------------------------------------
# Manual awards
# ---------------------------------------------------------------------------


async def _award_manual(
    db: AsyncSession,
    target_wallet: str,
    amount: int,
    source: str,
    reason: str,
    awarded_by: str | None,
    metadata: dict[str, Any] | None,
    *,
    redis: object,
    now: datetime,
    reference_id: str | None = None,
    key: str | None = None,
    extra_rows: Callable[[int], Sequence[Base]] | None = None,
) -> AwardResult:
    if source == "admin" and not await is_admin(db, awarded_by):  # type: ignore[arg-type]
        logger.warning("xp_admin_check_failed", awarded_by=short_wallet(awarded_by or ""))
        return await _reject(db, Unauthorized(awarded_by=awarded_by), target_wallet)

    await _lock_wallet(db, target_wallet)

    granted = amount
    if source not in get_settings().daily_cap_exempt_sources:
        capped = await _apply_daily_cap(db, target_wallet, amount, now)
        if isinstance(capped, DailyCapReached):
            return await _reject(db, capped, target_wallet)
        granted = capped

    return await _grant(
        db,
        wallet_address=target_wallet,
        amount=granted,
        requested=amount,
        activity_type=MANUAL_SOURCE_ACTIVITY_TYPES[source],
        reason=reason,
        details={**(metadata or {}), "awarded_by": awarded_by or "system"},
        now=now,
        redis=redis,
        source=source,
        reference_id=reference_id,
        key=key,
        extra_rows=extra_rows,
    )


async def award_manual_xp(
    db: AsyncSession,
    target_wallet: str,
    amount: int,
    source: str,
    reason: str,
    awarded_by: str | None = None,
    metadata: dict[str, Any] | None = None,
    *,
    redis: object = None,
    now: datetime | None = None,
) -> AwardResult:
    """Grant an arbitrary amount outside the configured-action table.

    Skips the duplicate, cooldown and per-action checks. ``source="admin"``
    requires ``awarded_by`` to be an administrator. Sources not listed in
    ``Settings.daily_cap_exempt_sources`` are held to the global daily cap.
    """
    target_wallet = target_wallet.strip()
    if not target_wallet:
        return InvalidWallet(wallet_address=target_wallet)
    if source not in MANUAL_SOURCE_ACTIVITY_TYPES:
        return InvalidSource(source=source)
    if amount <= 0:
        return InvalidAmount(amount=amount)
    if source == "admin" and not awarded_by:
        return Unauthorized(awarded_by=None)

    now = as_utc(now or utcnow())
    try:
        return await _award_manual(
            db, target_wallet, amount, source, reason, awarded_by, metadata, redis=redis, now=now
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("xp_manual_award_storage_error", wallet=short_wallet(target_wallet), source=source, error=str(exc))
        return StorageError(error=str(exc))


async def record_course_completion(
    db: AsyncSession,
    wallet_address: str,
    course_id: str,
    course_title: str | None = None,
    custom_xp: int | None = None,
    *,
    redis: object = None,
    now: datetime | None = None,
) -> AwardResult:
    """Grant course XP once per (wallet, course) and record the completion."""
    wallet_address = wallet_address.strip()
    if not wallet_address:
        return InvalidWallet(wallet_address=wallet_address)
    amount = custom_xp if custom_xp is not None else COURSE_XP_REWARDS.get(course_id, DEFAULT_COURSE_XP)
    if amount <= 0:
        return InvalidAmount(amount=amount)

    now = as_utc(now or utcnow())
    try:
        await _lock_wallet(db, wallet_address)
        result = await db.execute(
            select(CourseCompletion).where(
                CourseCompletion.wallet_address == wallet_address,
                CourseCompletion.course_id == course_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return await _reject(
                db,
                Duplicate(action="COURSE_COMPLETED", reference_id=course_id, previous_award=as_utc(existing.completed_at)),
                wallet_address,
            )

        def completion_row(granted: int) -> list[Base]:
            return [
                CourseCompletion(
                    wallet_address=wallet_address,
                    course_id=course_id,
                    course_title=course_title or course_id,
                    xp_earned=granted,
                    completed_at=now,
                )
            ]

        return await _award_manual(
            db,
            wallet_address,
            amount,
            "course",
            f"Completed course: {course_title or course_id}",
            None,
            {"course_id": course_id, "course_title": course_title or course_id},
            redis=redis,
            now=now,
            reference_id=course_id,
            key=idempotency_key(wallet_address, "COURSE_COMPLETED", course_id),
            extra_rows=completion_row,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("xp_course_completion_storage_error", wallet=short_wallet(wallet_address), error=str(exc))
        return StorageError(error=str(exc))
