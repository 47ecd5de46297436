"""Result variants returned by the XP award engine.

Every award call returns exactly one of these. ``Success`` carries the grant;
the rest are rejections, each with a distinct message so callers can tell
"wait" (limits, cooldown, cap) from "already done" (duplicate) from "retry"
(storage). No rejection is ever produced after a mutation was committed.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar

from pydantic.alias_generators import to_camel

from hoodie.xp.schemas import DailyProgress


@dataclass(frozen=True)
class Success:
    kind: ClassVar[str] = "success"

    wallet_address: str
    xp_awarded: int
    requested_xp: int
    previous_xp: int
    new_total_xp: int
    previous_level: int
    new_level: int
    level_up: bool
    reason: str
    daily_progress: DailyProgress
    action: str | None = None
    source: str | None = None
    reference_id: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def capped(self) -> bool:
        """True when the daily cap reduced the grant below the requested amount."""
        return self.xp_awarded < self.requested_xp

    @property
    def message(self) -> str:
        return f"{self.xp_awarded} XP awarded for {self.reason}"


class _Rejection:
    kind: ClassVar[str]

    @property
    def message(self) -> str:
        raise NotImplementedError

    def to_detail(self) -> dict[str, Any]:
        """JSON-ready error body: kind, message and the variant's own fields in camelCase."""
        detail: dict[str, Any] = {"success": False, "kind": self.kind, "message": self.message}
        for f in dataclasses.fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            detail[to_camel(f.name)] = value
        return detail


@dataclass(frozen=True)
class Duplicate(_Rejection):
    kind: ClassVar[str] = "duplicate"

    action: str | None
    reference_id: str | None
    previous_award: datetime | None = None

    @property
    def message(self) -> str:
        return f"XP already awarded for {self.action} (reference: {self.reference_id})"


@dataclass(frozen=True)
class LimitReached(_Rejection):
    kind: ClassVar[str] = "limit_reached"

    action: str
    current_count: int
    max_per_day: int

    @property
    def message(self) -> str:
        return f"Daily limit reached for {self.action} ({self.max_per_day} per day)"


@dataclass(frozen=True)
class CooldownActive(_Rejection):
    kind: ClassVar[str] = "cooldown_active"

    action: str
    remaining_hours: int

    @property
    def message(self) -> str:
        return f"Cooldown active for {self.action}. Try again in {self.remaining_hours} hours."


@dataclass(frozen=True)
class DailyCapReached(_Rejection):
    kind: ClassVar[str] = "daily_cap_reached"

    total_xp_today: int
    daily_cap: int

    @property
    def message(self) -> str:
        return f"Daily XP cap reached ({self.daily_cap} XP/day). Come back tomorrow!"


@dataclass(frozen=True)
class UnknownAction(_Rejection):
    kind: ClassVar[str] = "unknown_action"

    action: str

    @property
    def message(self) -> str:
        return f"Unknown action: {self.action}"


@dataclass(frozen=True)
class ActionDisabled(_Rejection):
    kind: ClassVar[str] = "action_disabled"

    action: str

    @property
    def message(self) -> str:
        return f"Action {self.action} is currently disabled"


@dataclass(frozen=True)
class InvalidAmount(_Rejection):
    kind: ClassVar[str] = "invalid_amount"

    amount: int

    @property
    def message(self) -> str:
        return "XP amount must be greater than 0"


@dataclass(frozen=True)
class InvalidWallet(_Rejection):
    kind: ClassVar[str] = "invalid_wallet"

    wallet_address: str

    @property
    def message(self) -> str:
        return "Wallet address is required"


@dataclass(frozen=True)
class InvalidSource(_Rejection):
    kind: ClassVar[str] = "invalid_source"

    source: str

    @property
    def message(self) -> str:
        return f"Invalid source: {self.source}. Must be one of: course, bounty, daily_login, admin, other"


@dataclass(frozen=True)
class Unauthorized(_Rejection):
    kind: ClassVar[str] = "unauthorized"

    awarded_by: str | None

    @property
    def message(self) -> str:
        if not self.awarded_by:
            return "awardedBy is required for admin XP awards"
        return "Unauthorized: Admin access required"


@dataclass(frozen=True)
class StorageError(_Rejection):
    kind: ClassVar[str] = "storage_error"

    error: str

    @property
    def message(self) -> str:
        return "XP store unavailable, please retry"


Rejection = (
    Duplicate
    | LimitReached
    | CooldownActive
    | DailyCapReached
    | UnknownAction
    | ActionDisabled
    | InvalidAmount
    | InvalidSource
    | InvalidWallet
    | Unauthorized
    | StorageError
)
AwardResult = Success | Rejection
