"""Canonical level curve: XP thresholds, titles and level-up detection."""

from __future__ import annotations

from dataclasses import dataclass

MAX_LEVEL = 100

# XP required to *reach* levels 1..6; beyond 6 each level costs a flat step.
_THRESHOLDS = (0, 0, 100, 250, 450, 700, 1000)
_STEP_AFTER_6 = 350

_TITLES: list[tuple[int, str]] = [
    (91, "Flash Master"),
    (76, "Flash Disciplinado"),
    (51, "Flash Responsável"),
    (26, "Flash Júnior"),
    (11, "Flash Aprendiz"),
    (1, "Flash Iniciante"),
]


def xp_for_level(level: int) -> int:
    """Total XP needed to reach *level*."""
    if level <= 1:
        return 0
    if level <= 6:
        return _THRESHOLDS[level]
    return _THRESHOLDS[6] + (level - 6) * _STEP_AFTER_6


def level_for_xp(total_xp: int) -> int:
    """Level for a total XP value (1..MAX_LEVEL)."""
    xp = max(0, int(total_xp))
    if xp >= _THRESHOLDS[6]:
        return min(MAX_LEVEL, 6 + (xp - _THRESHOLDS[6]) // _STEP_AFTER_6)
    level = 1
    for lvl in range(2, 6):
        if xp >= _THRESHOLDS[lvl]:
            level = lvl
    return level


def level_title(level: int) -> str:
    for min_level, title in _TITLES:
        if level >= min_level:
            return title
    return _TITLES[-1][1]


@dataclass(frozen=True)
class LevelUp:
    leveled_up: bool
    previous_level: int
    new_level: int
    levels_gained: int


def check_level_up(previous_xp: int, current_xp: int) -> LevelUp:
    """Compare levels before and after an XP change."""
    before = level_for_xp(previous_xp)
    after = level_for_xp(current_xp)
    return LevelUp(
        leveled_up=after > before,
        previous_level=before,
        new_level=after,
        levels_gained=after - before,
    )
