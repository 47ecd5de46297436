"""XP reward configuration table.

One entry per configured action. The table is built once at import time and
exposed read-only; lookups are case-insensitive on the action key.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

DAILY_XP_CAP = 300
XP_PER_LEVEL = 1000

REWARD_CATEGORIES = ("engagement", "contribution", "achievement", "social", "learning")


@dataclass(frozen=True)
class RewardConfig:
    """Policy for one configured action."""

    key: str
    xp_amount: int
    category: str
    description: str
    enabled: bool = True
    max_per_day: int | None = None
    cooldown_hours: float | None = None

    @property
    def action(self) -> str:
        """Lower-case action slug (``DAILY_LOGIN`` -> ``daily_login``)."""
        return self.key.lower()


_REWARD_TABLE: list[RewardConfig] = [
    # Feedback & contributions
    RewardConfig("FEEDBACK_SUBMITTED", 10, "contribution", "Submitting valuable feedback", max_per_day=5),
    RewardConfig("FEEDBACK_APPROVED", 50, "contribution", "Your feedback was approved by admins"),
    RewardConfig("FEEDBACK_IMPLEMENTED", 100, "contribution", "Your feedback was implemented"),
    RewardConfig("FEEDBACK_UPVOTED", 2, "engagement", "Someone upvoted your feedback", max_per_day=20),
    # Learning
    RewardConfig("COURSE_STARTED", 5, "learning", "Starting a new course"),
    RewardConfig("COURSE_COMPLETED", 100, "learning", "Completing a course"),
    RewardConfig("EXAM_PASSED", 150, "achievement", "Passing an exam"),
    RewardConfig("EXAM_PERFECT_SCORE", 50, "achievement", "Getting 100% on an exam"),
    # Bounties
    RewardConfig("BOUNTY_SUBMITTED", 10, "contribution", "Submitting a bounty submission"),
    RewardConfig("BOUNTY_WINNER_FIRST", 250, "achievement", "Winning 1st place in a bounty competition"),
    RewardConfig("BOUNTY_WINNER_SECOND", 100, "achievement", "Winning 2nd place in a bounty competition"),
    RewardConfig("BOUNTY_WINNER_THIRD", 50, "achievement", "Winning 3rd place in a bounty competition"),
    # Engagement
    RewardConfig("DAILY_LOGIN", 5, "engagement", "Logging in daily", max_per_day=1),
    RewardConfig("FIRST_LOGIN", 25, "engagement", "First time logging in"),
    RewardConfig("STREAK_7_DAYS", 50, "engagement", "7-day login streak"),
    RewardConfig("STREAK_30_DAYS", 200, "engagement", "30-day login streak"),
    RewardConfig("PROFILE_COMPLETED", 20, "engagement", "Completing your profile"),
    RewardConfig("REFERRAL_SIGNUP", 100, "social", "Someone signed up using your referral"),
    RewardConfig("SQUAD_JOINED", 30, "social", "Joining a squad"),
    # Community
    RewardConfig("CHAT_MESSAGE_SENT", 1, "engagement", "Sending a message in squad chat", max_per_day=50),
    RewardConfig("HELPFUL_VOTE", 3, "social", "Your message was marked as helpful", max_per_day=10),
    # Social feed
    RewardConfig("SOCIAL_POST_CREATED", 1, "engagement", "Creating a post on the social feed", max_per_day=10),
    RewardConfig("SOCIAL_COMMENT_POSTED", 3, "engagement", "Commenting on a post", max_per_day=20),
    RewardConfig("SOCIAL_POST_LIKED", 1, "social", "Someone liked your post or comment", max_per_day=50),
    # Special events
    RewardConfig("EVENT_PARTICIPATION", 75, "engagement", "Participating in a special event"),
    RewardConfig("SPECIAL_ACHIEVEMENT", 250, "achievement", "Earning a special achievement"),
    # Admin awards: amount is always supplied by the caller
    RewardConfig("ADMIN_BONUS", 0, "achievement", "Admin discretionary award"),
]

XP_REWARDS: Mapping[str, RewardConfig] = MappingProxyType({r.key: r for r in _REWARD_TABLE})


def get_xp_reward(action: str) -> RewardConfig | None:
    """Look up the config for an action key, ignoring case."""
    return XP_REWARDS.get(action.strip().upper())


def is_xp_reward_enabled(action: str) -> bool:
    config = get_xp_reward(action)
    return config.enabled if config else False


def get_xp_amount(action: str) -> int:
    config = get_xp_reward(action)
    return config.xp_amount if config else 0


def get_enabled_rewards() -> list[RewardConfig]:
    """All enabled actions, in table order."""
    return [r for r in XP_REWARDS.values() if r.enabled]


def get_xp_rewards_by_category() -> dict[str, list[RewardConfig]]:
    """Enabled actions grouped by category (every category present, possibly empty)."""
    grouped: dict[str, list[RewardConfig]] = {c: [] for c in REWARD_CATEGORIES}
    for reward in get_enabled_rewards():
        grouped.setdefault(reward.category, []).append(reward)
    return grouped


def calculate_max_daily_xp() -> int:
    """Upper bound of XP earnable per day from actions that carry a daily limit."""
    return sum(r.xp_amount * r.max_per_day for r in get_enabled_rewards() if r.max_per_day)
