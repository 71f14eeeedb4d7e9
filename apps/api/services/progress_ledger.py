"""
Progress Ledger

Per-day completion records and the aggregates derived from them
(streak, total completions, resilience score, persisted daily scores).

Every function here is pure: it takes an AppState and returns a new one
(or the same object when nothing changes). `now` is always passed in;
the ledger never reads the wall clock.

Scoring:
    dailyScore = (sum of tier weights of completed habits) / 3, capped at 3.0
    HIGH=3, MEDIUM=2, LOW=1
A persisted dailyScore is ground truth for every downstream aggregate.
Only repair_daily_scores() recomputes an existing score.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from core.exceptions import HabitEngineError
from services.habit_state import (
    MAX_RESILIENCE_SCORE,
    MAX_SHIELDS,
    TIER_ORDER,
    AppState,
    DailyLog,
    EnergyTier,
    HabitSet,
    ResilienceStatus,
    UndoSnapshot,
    date_key,
)
from services.habit_templates import initiation_habit_set

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COMPLETION_BONUS = 5
BOUNCE_BONUS = 15          # completing while CRACKED or RECOVERING
SHIELD_STREAK_INTERVAL = 7
EXPECTED_DAILY_HABITS = 3
MAX_DAILY_SCORE = 3.0

TIER_WEIGHTS = {
    EnergyTier.HIGH: 3,
    EnergyTier.MEDIUM: 2,
    EnergyTier.LOW: 1,
}
UNKNOWN_HABIT_WEIGHT = 1


@dataclass(frozen=True)
class Badge:
    id: str
    label: str
    requirement: int


BADGES = [
    Badge("spark", "Spark", 1),
    Badge("flame", "Flame", 3),
    Badge("beacon", "Beacon", 7),
    Badge("star", "Star", 14),
    Badge("nova", "Nova", 30),
    Badge("luminary", "Luminary", 100),
]


# ---------------------------------------------------------------------------
# Habit repository guard
# ---------------------------------------------------------------------------

def ensure_habit_set(state: AppState) -> AppState:
    """
    Self-heal a missing or partial habit set by regenerating the default
    INITIATION-level set for the current identity.
    """
    if not state.onboarding_complete or state.habit_set.is_complete():
        return state
    logger.warning(
        f"Habit set incomplete for '{state.identity}', regenerating initiation-level defaults"
    )
    new_state = state.clone()
    new_state.habit_set = initiation_habit_set(state.identity, state.identity_profile.type)
    return new_state


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def record_completion(state: AppState, habit_index: int, now: datetime) -> Tuple[AppState, bool]:
    """
    Mark a habit in the active energy tier complete for today.

    Returns (new_state, accepted). An index already completed today is a
    no-op and returns the input state with accepted=False.
    """
    state = ensure_habit_set(state)
    today = date_key(now)
    indices = state.today_indices(now)
    if habit_index in indices:
        return state, False

    tier = state.active_tier()
    habit_name = state.habit_set.habit_name(tier, habit_index)
    if habit_name is None:
        raise HabitEngineError(f"No habit at index {habit_index} in {tier.value} tier")

    new_state = state.clone()
    previous_log = state.history.get(today)
    new_state.undo = UndoSnapshot(
        date=today,
        resilience=copy.deepcopy(state.resilience),
        completed_indices=list(state.daily_completed_indices),
        log=copy.deepcopy(previous_log),
    )

    r = new_state.resilience
    is_first_today = r.last_completed_at is None or date_key(r.last_completed_at) != today

    if r.status in (ResilienceStatus.CRACKED, ResilienceStatus.RECOVERING):
        r.score = min(MAX_RESILIENCE_SCORE, r.score + BOUNCE_BONUS)
        r.status = ResilienceStatus.BOUNCED
    else:
        r.score = min(MAX_RESILIENCE_SCORE, r.score + COMPLETION_BONUS)
        r.status = ResilienceStatus.ACTIVE

    if is_first_today:
        r.streak += 1
        if r.streak % SHIELD_STREAK_INTERVAL == 0:
            r.shields = min(MAX_SHIELDS, r.shields + 1)

    r.total_completions += 1
    r.last_completed_at = now
    r.recovery_mode = False
    r.missed_yesterday = False
    # Completing ends a freeze early
    r.is_frozen = False
    r.freeze_expiry = None

    new_indices = indices + [habit_index]
    new_state.daily_completed_indices = new_indices

    log = copy.deepcopy(previous_log) if previous_log else DailyLog(date=today)
    log.completed_indices = list(new_indices)
    if habit_name not in log.completed_habit_names:
        log.completed_habit_names.append(habit_name)
    if log.energy is None:
        log.energy = tier
    new_state.history[today] = log

    logger.debug(
        f"Completion recorded: {habit_name!r} ({tier.value}) streak={r.streak} score={r.score}"
    )
    return new_state, True


# ---------------------------------------------------------------------------
# Day rollover and scoring
# ---------------------------------------------------------------------------

def compute_daily_score(log: DailyLog, habit_set: HabitSet) -> float:
    """Weighted-tier score for one log against the given habit set."""
    if log.completed_habit_names:
        weights = {}
        for tier in TIER_ORDER:
            for name in habit_set.display(tier):
                weights.setdefault(name, TIER_WEIGHTS[tier])
        fallback = TIER_WEIGHTS.get(log.energy, UNKNOWN_HABIT_WEIGHT)
        total = sum(weights.get(name, fallback) for name in dict.fromkeys(log.completed_habit_names))
    elif log.completed_indices:
        # Legacy logs carry indices only; map them onto the current set
        tier = log.energy or EnergyTier.HIGH
        available = len(habit_set.base(tier))
        matched = [i for i in dict.fromkeys(log.completed_indices) if 0 <= i < available]
        logger.warning(
            f"Scoring legacy index-only log {log.date} against the current "
            f"{tier.value} tier ({len(matched)}/{len(log.completed_indices)} indices matched)"
        )
        total = len(matched) * TIER_WEIGHTS[tier]
    else:
        total = 0
    return min(MAX_DAILY_SCORE, total / EXPECTED_DAILY_HABITS)


def rollover_day(state: AppState, now: datetime) -> Tuple[AppState, bool]:
    """
    Day-boundary processing. Safe to call any number of times per day.

    Scores every elapsed day that has completions but no persisted score,
    then, on the first call of a new day, clears today's index set and
    the undo slot. Returns (new_state, is_new_day).
    """
    today = date_key(now)
    new_state: Optional[AppState] = None

    for key in sorted(state.history):
        if key >= today:
            continue
        log = state.history[key]
        if log.daily_score is not None or not log.has_completions():
            continue
        if new_state is None:
            new_state = state.clone()
        new_state.history[key].daily_score = compute_daily_score(log, state.habit_set)
        logger.info(f"Persisted daily score for {key}: {new_state.history[key].daily_score:.2f}")

    is_new_day = state.last_rollover_date != today
    if is_new_day:
        if new_state is None:
            new_state = state.clone()
        new_state.last_rollover_date = today
        new_state.undo = None
        new_state.daily_completed_indices = new_state.today_indices(now)

    return (new_state if new_state is not None else state), is_new_day


def repair_daily_scores(state: AppState, dates: List[str], now: datetime) -> Tuple[AppState, List[str]]:
    """Explicitly recompute persisted scores for elapsed dates."""
    today = date_key(now)
    targets = [d for d in dates if d < today and d in state.history]
    if not targets:
        return state, []
    new_state = state.clone()
    for key in targets:
        old = new_state.history[key].daily_score
        new_state.history[key].daily_score = compute_daily_score(new_state.history[key], state.habit_set)
        logger.info(f"Repaired daily score for {key}: {old} -> {new_state.history[key].daily_score:.2f}")
    return new_state, targets


# ---------------------------------------------------------------------------
# Day annotations
# ---------------------------------------------------------------------------

def _with_log(state: AppState, day: str) -> Tuple[AppState, DailyLog]:
    new_state = state.clone()
    log = new_state.history.get(day)
    if log is None:
        log = DailyLog(date=day)
        new_state.history[day] = log
    return new_state, log


def log_reflection(state: AppState, day: str, energy: Optional[EnergyTier], note: Optional[str]) -> AppState:
    new_state, log = _with_log(state, day)
    log.energy = energy
    log.note = note
    return new_state


def set_daily_intention(state: AppState, day: str, intention: str) -> AppState:
    new_state, log = _with_log(state, day)
    log.intention = intention
    return new_state


def set_energy_level(state: AppState, tier: EnergyTier) -> AppState:
    new_state = state.clone()
    new_state.current_energy = tier
    return new_state


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------

def earned_badges(total_completions: int) -> List[Badge]:
    return [b for b in BADGES if total_completions >= b.requirement]


def next_badge(total_completions: int) -> Optional[Badge]:
    return next((b for b in BADGES if total_completions < b.requirement), None)
