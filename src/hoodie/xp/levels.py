"""Level computation.

Levels are flat 1000 XP bands: level = total_xp // 1000 + 1.
"""

from __future__ import annotations

from hoodie.xp.rewards import XP_PER_LEVEL


def compute_level(total_xp: int) -> int:
    """Level for a cumulative XP total."""
    return max(total_xp, 0) // XP_PER_LEVEL + 1


def level_progress(total_xp: int) -> dict:
    """Level plus progress within the current band."""
    xp_in_current_level = max(total_xp, 0) % XP_PER_LEVEL
    return {
        "level": compute_level(total_xp),
        "xp_in_current_level": xp_in_current_level,
        "xp_to_next_level": XP_PER_LEVEL - xp_in_current_level,
        "progress_to_next_level": xp_in_current_level / XP_PER_LEVEL * 100,
    }
