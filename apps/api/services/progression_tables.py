"""
Progression tables and novelty variants.

Habit difficulty is a signed level rendered through a per-identity-type
frame table; level 0 is the wording produced at onboarding. Novelty
variants reword a habit without changing its tier or level.
"""

from typing import Dict, Optional, Tuple

PROGRESSION_TABLES: Dict[str, Dict[int, str]] = {
    "SKILL": {
        -2: "Set up for it: {habit}",
        -1: "Short version: {habit}",
        0: "{habit}",
        1: "{habit}, then one extra round",
        2: "{habit}, twice through",
        3: "{habit}, full session with a stretch goal",
    },
    "CHARACTER": {
        -2: "Notice one chance to: {habit}",
        -1: "Once today: {habit}",
        0: "{habit}",
        1: "{habit}, even when it's inconvenient",
        2: "{habit}, and tell someone about it",
    },
    "RECOVERY": {
        -2: "Just get ready: {habit}",
        -1: "Gently: {habit}",
        0: "{habit}",
        1: "{habit}, at the hardest time of day",
    },
}

# Identity type not detected yet
DEFAULT_PROGRESSION = "SKILL"

NOVELTY_VARIANTS = [
    "{habit}",
    "{habit} somewhere new",
    "{habit} at a different time of day",
    "{habit}, with a fresh twist",
    "{habit}, with someone else in mind",
]


def _table(progression: Optional[str]) -> Dict[int, str]:
    return PROGRESSION_TABLES.get(progression or DEFAULT_PROGRESSION, PROGRESSION_TABLES[DEFAULT_PROGRESSION])


def level_bounds(progression: Optional[str]) -> Tuple[int, int]:
    table = _table(progression)
    return min(table), max(table)


def clamp_level(level: int, progression: Optional[str]) -> int:
    lo, hi = level_bounds(progression)
    return max(lo, min(hi, level))


def render_habit(text: str, level: int = 0, progression: Optional[str] = None, variant: int = 0) -> str:
    """Apply the novelty variant, then the difficulty frame."""
    if 0 < variant < len(NOVELTY_VARIANTS):
        text = NOVELTY_VARIANTS[variant].format(habit=text)
    frame = _table(progression)[clamp_level(level, progression)]
    return frame.format(habit=text)
