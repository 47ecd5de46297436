"""Pydantic request/response models for the XP endpoints.

Wire format is camelCase to match the academy frontend; fields can also be
populated by their Python names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hoodie.xp.rewards import DAILY_XP_CAP, RewardConfig

# Caller metadata is a flat map of JSON scalars.
MetadataValue = str | int | float | bool | None

ManualSource = Literal["course", "bounty", "daily_login", "admin", "other"]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# --- Daily progress ---


class DailyProgress(CamelModel):
    """Today's XP against the global daily cap.

    ``degraded`` is set when the activity log could not be read and the
    zero-state default is being reported instead of real numbers.
    """

    earned_today: int = 0
    daily_cap: int = DAILY_XP_CAP
    remaining: int = DAILY_XP_CAP
    percent_used: int = 0
    cap_reached: bool = False
    degraded: bool = False

    @classmethod
    def from_earned(cls, earned_today: int, daily_cap: int = DAILY_XP_CAP) -> DailyProgress:
        return cls(
            earned_today=earned_today,
            daily_cap=daily_cap,
            remaining=max(0, daily_cap - earned_today),
            percent_used=round(earned_today / daily_cap * 100),
            cap_reached=earned_today >= daily_cap,
        )


class RecentActivity(CamelModel):
    action: str | None = None
    xp_amount: int
    reason: str | None = None
    timestamp: datetime


class DailyProgressResponse(CamelModel):
    success: bool = True
    daily_progress: DailyProgress
    recent_activities: list[RecentActivity] = []


# --- Reward catalogue ---


class RewardConfigResponse(CamelModel):
    action: str
    slug: str
    xp_amount: int
    category: str
    description: str
    enabled: bool
    max_per_day: int | None = None
    cooldown: float | None = None

    @classmethod
    def from_config(cls, config: RewardConfig) -> RewardConfigResponse:
        return cls(
            action=config.key,
            slug=config.action,
            xp_amount=config.xp_amount,
            category=config.category,
            description=config.description,
            enabled=config.enabled,
            max_per_day=config.max_per_day,
            cooldown=config.cooldown_hours,
        )


class RewardCatalogResponse(CamelModel):
    actions: list[RewardConfigResponse]
    total_actions: int
    daily_xp_cap: int = Field(DAILY_XP_CAP, alias="dailyXPCap")
    max_daily_limited_xp: int = Field(alias="maxDailyLimitedXP")
    message: str = f"Maximum {DAILY_XP_CAP} XP can be earned per day from all activities"


# --- Award requests ---


class AwardRequest(CamelModel):
    """Body of POST /api/xp/auto-reward."""

    wallet_address: str = Field(min_length=1)
    action: str = Field(min_length=1)
    reference_id: str | None = None
    custom_xp_amount: int | None = Field(None, alias="customXPAmount")
    metadata: dict[str, MetadataValue] = {}
    skip_duplicate_check: bool = False


class ManualAwardRequest(CamelModel):
    """Body of POST /api/xp."""

    target_wallet: str = Field(min_length=1)
    xp_amount: int
    source: ManualSource
    reason: str = Field(min_length=1)
    awarded_by: str | None = None
    metadata: dict[str, MetadataValue] = {}


class DailyLoginRequest(CamelModel):
    wallet_address: str = Field(min_length=1)


class CourseCompletionRequest(CamelModel):
    wallet_address: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    course_title: str | None = None
    custom_xp: int | None = Field(None, alias="customXP")


# --- Award responses ---


class AwardResponse(CamelModel):
    success: bool = True
    target_wallet: str
    xp_awarded: int
    requested_xp: int = Field(alias="requestedXP")
    capped: bool = False
    action: str | None = None
    source: str | None = None
    reason: str
    reference_id: str | None = None
    previous_xp: int = Field(alias="previousXP")
    new_total_xp: int = Field(alias="newTotalXP")
    previous_level: int
    new_level: int
    level_up: bool
    xp_in_current_level: int
    xp_to_next_level: int
    progress_to_next_level: float
    message: str
    daily_progress: DailyProgress
    warnings: list[str] = []


class DailyLoginResponse(CamelModel):
    success: bool
    already_claimed: bool = False
    message: str
    today: str
    next_available: datetime
    xp_awarded: int | None = None
    new_total_xp: int | None = Field(None, alias="newTotalXP")
    new_level: int | None = None
    level_up: bool | None = None
    daily_progress: DailyProgress | None = None


class DailyLoginStatusResponse(CamelModel):
    wallet_address: str
    today: str
    already_claimed: bool
    last_claimed: datetime | None = None
    next_available: datetime
    daily_bonus_xp: int = Field(alias="dailyBonusXP")


class CourseCompletionResponse(CamelModel):
    success: bool
    already_completed: bool = False
    course_id: str
    message: str
    completed_at: datetime | None = None
    award: AwardResponse | None = None


# --- XP summary ---


class XPBreakdown(CamelModel):
    course_xp: int = Field(0, alias="courseXP")
    bounty_xp: int = Field(0, alias="bountyXP")
    daily_login_xp: int = Field(0, alias="dailyLoginXP")
    admin_award_xp: int = Field(0, alias="adminAwardXP")
    other_xp: int = Field(0, alias="otherXP")


class XPHistoryEntry(CamelModel):
    type: str
    source: str
    xp_amount: int
    reason: str
    date: datetime
    metadata: dict[str, Any] = {}


class CourseCompletionEntry(CamelModel):
    course_id: str
    course_title: str | None = None
    xp_earned: int
    completed_at: datetime


class BountyCompletionEntry(CamelModel):
    xp_earned: int
    reason: str | None = None
    bounty_type: str | None = None
    completed_at: datetime


class XPSummaryResponse(CamelModel):
    wallet_address: str
    exists: bool
    display_name: str | None = None
    squad: str | None = None
    total_xp: int = Field(alias="totalXP")
    level: int
    xp_in_current_level: int
    xp_to_next_level: int
    progress_to_next_level: float
    created_at: datetime | None = None
    updated_at: datetime | None = None
    message: str | None = None
    breakdown: XPBreakdown = XPBreakdown()
    xp_history: list[XPHistoryEntry] | None = None
    course_completions: list[CourseCompletionEntry] | None = None
    total_courses_completed: int | None = None
    total_course_xp: int | None = Field(None, alias="totalCourseXP")
    bounty_completions: list[BountyCompletionEntry] | None = None
    total_bounty_xp: int | None = Field(None, alias="totalBountyXP")
