"""Award engine tests — duplicates, limits, cooldowns, the daily cap and level-ups."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from hoodie.config import get_settings
from hoodie.db.models import User, UserActivity
from hoodie.xp.award_service import (
    _apply_daily_cap,
    _lock_wallet,
    award_manual_xp,
    award_xp,
    claim_daily_login,
    record_course_completion,
)
from hoodie.xp.outcomes import (
    ActionDisabled,
    CooldownActive,
    DailyCapReached,
    Duplicate,
    InvalidAmount,
    InvalidWallet,
    LimitReached,
    StorageError,
    Success,
    UnknownAction,
)
from hoodie.xp.rewards import RewardConfig

from tests.conftest import NOW, WALLET


async def _total_xp(db: AsyncSession, wallet: str = WALLET) -> int | None:
    result = await db.execute(select(User.total_xp).where(User.wallet_address == wallet))
    return result.scalar_one_or_none()


async def _activity_count(db: AsyncSession, wallet: str = WALLET) -> int:
    result = await db.execute(
        select(func.count()).select_from(UserActivity).where(UserActivity.wallet_address == wallet)
    )
    return result.scalar_one()


async def _seed_user(db: AsyncSession, total_xp: int, level: int) -> None:
    db.add(User(wallet_address=WALLET, total_xp=total_xp, level=level, created_at=NOW, updated_at=NOW))
    await db.commit()


class TestFirstAward:
    @pytest.mark.asyncio
    async def test_creates_user_and_grants(self, db_session: AsyncSession) -> None:
        result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", reference_id="fb-1", now=NOW)

        assert isinstance(result, Success)
        assert result.xp_awarded == 10
        assert result.previous_xp == 0
        assert result.new_total_xp == 10
        assert result.previous_level == 1
        assert result.new_level == 1
        assert result.level_up is False
        assert result.capped is False
        assert result.warnings == ()
        assert result.message == "10 XP awarded for Submitting valuable feedback"
        assert result.daily_progress.earned_today == 10
        assert result.daily_progress.remaining == 290

        user = (await db_session.execute(select(User).where(User.wallet_address == WALLET))).scalar_one()
        assert user.display_name == "User JCUdhS..."
        assert user.total_xp == 10
        assert user.level == 1

    @pytest.mark.asyncio
    async def test_writes_activity_record(self, db_session: AsyncSession) -> None:
        await award_xp(
            db_session, WALLET, "feedback_submitted", reference_id="fb-1", metadata={"page": "/courses"}, now=NOW
        )

        activity = (await db_session.execute(select(UserActivity))).scalar_one()
        assert activity.activity_type == "xp_awarded"
        assert activity.action == "FEEDBACK_SUBMITTED"
        assert activity.reference_id == "fb-1"
        assert activity.xp_amount == 10
        assert activity.idempotency_key == f"{WALLET}:FEEDBACK_SUBMITTED:fb-1"
        assert activity.details["page"] == "/courses"
        assert activity.details["category"] == "contribution"
        assert activity.details["new_total_xp"] == 10
        assert activity.details["level_up"] is False

    @pytest.mark.asyncio
    async def test_engine_fields_override_caller_metadata(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", metadata={"xp_amount": 9999}, now=NOW)

        activity = (await db_session.execute(select(UserActivity))).scalar_one()
        assert activity.details["xp_amount"] == 10

    @pytest.mark.asyncio
    async def test_custom_amount_replaces_configured(self, db_session: AsyncSession) -> None:
        result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", custom_amount=40, now=NOW)
        assert isinstance(result, Success)
        assert result.xp_awarded == 40


class TestValidation:
    @pytest.mark.asyncio
    async def test_unknown_action_creates_nothing(self, db_session: AsyncSession) -> None:
        result = await award_xp(db_session, WALLET, "TELEPORTED", now=NOW)

        assert isinstance(result, UnknownAction)
        assert result.message == "Unknown action: TELEPORTED"
        assert await _total_xp(db_session) is None

    @pytest.mark.asyncio
    async def test_disabled_action(self, db_session: AsyncSession) -> None:
        disabled = RewardConfig("SQUAD_JOINED", 30, "social", "Joining a squad", enabled=False)
        with patch("hoodie.xp.award_service.get_xp_reward", return_value=disabled):
            result = await award_xp(db_session, WALLET, "SQUAD_JOINED", now=NOW)

        assert isinstance(result, ActionDisabled)
        assert await _total_xp(db_session) is None

    @pytest.mark.asyncio
    async def test_zero_configured_amount_needs_custom(self, db_session: AsyncSession) -> None:
        result = await award_xp(db_session, WALLET, "ADMIN_BONUS", now=NOW)
        assert isinstance(result, InvalidAmount)
        assert result.amount == 0

    @pytest.mark.asyncio
    async def test_negative_custom_amount(self, db_session: AsyncSession) -> None:
        result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", custom_amount=-5, now=NOW)
        assert isinstance(result, InvalidAmount)
        assert await _total_xp(db_session) is None


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_same_reference_is_rejected(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW)
        result = await award_xp(
            db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW + timedelta(minutes=5)
        )

        assert isinstance(result, Duplicate)
        assert result.reference_id == "fb-7"
        assert result.previous_award == NOW
        assert await _total_xp(db_session) == 50
        assert await _activity_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_other_reference_is_allowed(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW)
        result = await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-8", now=NOW)
        assert isinstance(result, Success)
        assert result.new_total_xp == 100

    @pytest.mark.asyncio
    async def test_no_reference_means_no_duplicate_check(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", now=NOW)
        result = await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", now=NOW)

        assert isinstance(result, Success)
        keys = (await db_session.execute(select(UserActivity.idempotency_key))).scalars().all()
        assert keys == [None, None]

    @pytest.mark.asyncio
    async def test_skip_duplicate_check(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW)
        result = await award_xp(
            db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", skip_duplicate_check=True, now=NOW
        )
        assert isinstance(result, Success)
        assert result.new_total_xp == 100

    @pytest.mark.asyncio
    async def test_racing_duplicate_rolls_back_the_grant(self, db_session: AsyncSession) -> None:
        """A concurrent writer that slipped past the read check is stopped by the idempotency key."""
        await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW)

        with patch("hoodie.xp.award_service._find_prior_award", AsyncMock(return_value=None)):
            result = await award_xp(db_session, WALLET, "FEEDBACK_APPROVED", reference_id="fb-7", now=NOW)

        assert isinstance(result, Duplicate)
        assert await _total_xp(db_session) == 50
        assert await _activity_count(db_session) == 1


class TestPerActionLimits:
    @pytest.mark.asyncio
    async def test_daily_limit(self, db_session: AsyncSession) -> None:
        for i in range(5):
            result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", reference_id=f"fb-{i}", now=NOW)
            assert isinstance(result, Success)

        result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", reference_id="fb-5", now=NOW)
        assert isinstance(result, LimitReached)
        assert result.current_count == 5
        assert result.max_per_day == 5
        assert result.message == "Daily limit reached for FEEDBACK_SUBMITTED (5 per day)"
        assert await _total_xp(db_session) == 50

    @pytest.mark.asyncio
    async def test_limit_resets_at_midnight(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "DAILY_LOGIN", reference_id="a", now=NOW)
        blocked = await award_xp(db_session, WALLET, "DAILY_LOGIN", reference_id="b", now=NOW)
        next_day = await award_xp(db_session, WALLET, "DAILY_LOGIN", reference_id="b", now=NOW + timedelta(days=1))

        assert isinstance(blocked, LimitReached)
        assert isinstance(next_day, Success)

    @pytest.mark.asyncio
    async def test_day_follows_server_timezone(self, db_session: AsyncSession, monkeypatch) -> None:
        monkeypatch.setenv("HOODIE_TIMEZONE", "America/New_York")
        get_settings.cache_clear()

        late_evening = NOW.replace(hour=3)  # 23:00 on the 9th in New York
        after_midnight = NOW.replace(hour=5)  # 01:00 on the 10th in New York

        first = await award_xp(db_session, WALLET, "DAILY_LOGIN", reference_id="a", now=late_evening)
        second = await award_xp(db_session, WALLET, "DAILY_LOGIN", reference_id="b", now=after_midnight)

        assert isinstance(first, Success)
        assert isinstance(second, Success)


class TestCooldown:
    @pytest.mark.asyncio
    async def test_cooldown_reports_remaining_hours_rounded_up(self, db_session: AsyncSession) -> None:
        config = RewardConfig("SQUAD_JOINED", 30, "social", "Joining a squad", cooldown_hours=24)
        with patch("hoodie.xp.award_service.get_xp_reward", return_value=config):
            await award_xp(db_session, WALLET, "SQUAD_JOINED", now=NOW)
            blocked = await award_xp(db_session, WALLET, "SQUAD_JOINED", now=NOW + timedelta(hours=10, minutes=30))
            allowed = await award_xp(db_session, WALLET, "SQUAD_JOINED", now=NOW + timedelta(hours=24))

        assert isinstance(blocked, CooldownActive)
        assert blocked.remaining_hours == 14
        assert blocked.message == "Cooldown active for SQUAD_JOINED. Try again in 14 hours."
        assert isinstance(allowed, Success)
        assert await _total_xp(db_session) == 60


class TestDailyCap:
    @pytest.mark.asyncio
    async def test_partial_award_then_rejection(self, db_session: AsyncSession) -> None:
        first = await award_xp(db_session, WALLET, "SPECIAL_ACHIEVEMENT", reference_id="s1", now=NOW)
        second = await award_xp(db_session, WALLET, "BOUNTY_WINNER_FIRST", reference_id="b1", now=NOW)
        third = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", reference_id="f1", now=NOW)

        assert isinstance(first, Success)
        assert first.xp_awarded == 250

        assert isinstance(second, Success)
        assert second.requested_xp == 250
        assert second.xp_awarded == 50
        assert second.capped is True
        assert second.daily_progress.cap_reached is True
        assert second.daily_progress.remaining == 0

        assert isinstance(third, DailyCapReached)
        assert third.total_xp_today == 300
        assert third.daily_cap == 300
        assert third.message == "Daily XP cap reached (300 XP/day). Come back tomorrow!"
        assert await _total_xp(db_session) == 300

    @pytest.mark.asyncio
    async def test_cap_resets_next_day(self, db_session: AsyncSession) -> None:
        await award_xp(db_session, WALLET, "SPECIAL_ACHIEVEMENT", reference_id="s1", now=NOW)
        await award_xp(db_session, WALLET, "SPECIAL_ACHIEVEMENT", reference_id="s2", now=NOW)
        result = await award_xp(
            db_session, WALLET, "SPECIAL_ACHIEVEMENT", reference_id="s3", now=NOW + timedelta(days=1)
        )

        assert isinstance(result, Success)
        assert result.xp_awarded == 250
        assert result.daily_progress.earned_today == 250


class TestLevelUp:
    @pytest.mark.asyncio
    async def test_crossing_a_band_levels_up_and_publishes(self, db_session: AsyncSession) -> None:
        await _seed_user(db_session, total_xp=950, level=1)
        redis = AsyncMock()

        result = await award_xp(db_session, WALLET, "EXAM_PASSED", reference_id="exam-1", redis=redis, now=NOW)

        assert isinstance(result, Success)
        assert result.previous_xp == 950
        assert result.new_total_xp == 1100
        assert result.new_level == 2
        assert result.level_up is True
        assert await _total_xp(db_session) == 1100

        redis.publish.assert_awaited_once()
        channel, payload = redis.publish.await_args.args
        assert channel == "pubsub:level_up"
        assert json.loads(payload) == {"wallet_address": WALLET, "old_level": 1, "new_level": 2}

    @pytest.mark.asyncio
    async def test_no_publish_without_level_up(self, db_session: AsyncSession) -> None:
        redis = AsyncMock()
        await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", redis=redis, now=NOW)
        redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_award(self, db_session: AsyncSession) -> None:
        await _seed_user(db_session, total_xp=990, level=1)
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("redis down")

        result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", redis=redis, now=NOW)

        assert isinstance(result, Success)
        assert result.level_up is True


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_store_unavailable(self, db_session: AsyncSession) -> None:
        error = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch("hoodie.xp.award_service._lock_user", AsyncMock(side_effect=error)):
            result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", now=NOW)

        assert isinstance(result, StorageError)
        assert "connection refused" in result.error
        assert await _total_xp(db_session) is None

    @pytest.mark.asyncio
    async def test_activity_log_failure_keeps_the_grant(self, db_session: AsyncSession) -> None:
        error = OperationalError("INSERT", {}, Exception("disk full"))
        with patch("hoodie.xp.award_service._append_activity", AsyncMock(side_effect=error)):
            result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", reference_id="fb-1", now=NOW)

        assert isinstance(result, Success)
        assert result.warnings == ("activity_log_failed",)
        assert await _total_xp(db_session) == 10
        assert await _activity_count(db_session) == 0


class TestDailyLogin:
    @pytest.mark.asyncio
    async def test_once_per_day(self, db_session: AsyncSession) -> None:
        first = await claim_daily_login(db_session, WALLET, now=NOW)
        again = await claim_daily_login(db_session, WALLET, now=NOW + timedelta(hours=3))
        tomorrow = await claim_daily_login(db_session, WALLET, now=NOW + timedelta(days=1))

        assert isinstance(first, Success)
        assert first.xp_awarded == 5
        assert first.reference_id == "login_2026-03-10"
        assert isinstance(again, Duplicate)
        assert isinstance(tomorrow, Success)
        assert tomorrow.reference_id == "login_2026-03-11"

        activity = (
            await db_session.execute(select(UserActivity).order_by(UserActivity.id).limit(1))
        ).scalar_one()
        assert activity.details["login_date"] == "2026-03-10"


class TestWalletValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("wallet", ["", "   "])
    async def test_blank_wallet_is_rejected_before_storage(self, db_session: AsyncSession, wallet: str) -> None:
        with patch("hoodie.xp.award_service._lock_wallet", AsyncMock()) as lock:
            configured = await award_xp(db_session, wallet, "FEEDBACK_SUBMITTED", now=NOW)
            manual = await award_manual_xp(db_session, wallet, 10, "other", "Blank", now=NOW)
            course = await record_course_completion(db_session, wallet, "sns", now=NOW)

        assert isinstance(configured, InvalidWallet)
        assert isinstance(manual, InvalidWallet)
        assert isinstance(course, InvalidWallet)
        assert configured.message == "Wallet address is required"
        lock.assert_not_awaited()
        assert (await db_session.execute(select(func.count()).select_from(User))).scalar_one() == 0


class TestWalletLock:
    @pytest.mark.asyncio
    async def test_postgres_takes_advisory_lock(self) -> None:
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "postgresql"
        db.execute = AsyncMock()

        await _lock_wallet(db, WALLET)

        statement = db.execute.await_args_list[0].args[0]
        sql = str(statement.compile(dialect=postgresql.dialect()))
        assert "pg_advisory_xact_lock(hashtext(" in sql
        assert db.execute.await_count == 2  # advisory lock, then the row lock

    @pytest.mark.asyncio
    async def test_sqlite_only_locks_the_row(self) -> None:
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "sqlite"
        db.execute = AsyncMock()

        await _lock_wallet(db, WALLET)

        assert db.execute.await_count == 1
        assert "pg_advisory_xact_lock" not in str(db.execute.await_args.args[0])

    @pytest.mark.asyncio
    async def test_unseen_wallet_is_locked_before_checks(self, db_session: AsyncSession) -> None:
        order: list[str] = []

        async def locking(db, wallet_address):
            order.append("lock")
            await _lock_wallet(db, wallet_address)

        async def capping(db, wallet_address, amount, now):
            order.append("cap")
            return await _apply_daily_cap(db, wallet_address, amount, now)

        with patch("hoodie.xp.award_service._lock_wallet", side_effect=locking) as lock, patch(
            "hoodie.xp.award_service._apply_daily_cap", side_effect=capping
        ):
            result = await award_xp(db_session, WALLET, "FEEDBACK_SUBMITTED", now=NOW)

        assert isinstance(result, Success)
        assert order == ["lock", "cap"]
        lock.assert_awaited_once_with(db_session, WALLET)

    @pytest.mark.asyncio
    async def test_manual_award_locks_unseen_wallet(self, db_session: AsyncSession) -> None:
        with patch("hoodie.xp.award_service._lock_wallet", AsyncMock(wraps=_lock_wallet)) as lock:
            result = await award_manual_xp(db_session, WALLET, 300, "other", "Bulk", now=NOW)

        assert isinstance(result, Success)
        lock.assert_awaited_once_with(db_session, WALLET)
