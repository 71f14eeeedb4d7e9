"""
Resilience State Machine

Status transitions outside of completions:

    ACTIVE/BOUNCED --missed day, no shield--> CRACKED
    ACTIVE/BOUNCED --missed day, shield-----> (unchanged, shield consumed)
    CRACKED --open recovery flow-----------> RECOVERING
    CRACKED/RECOVERING --remedy------------> ACTIVE
    any --freeze---------------------------> FROZEN (24h, missed days suspended)

Completion transitions (ACTIVE / BOUNCED) live in progress_ledger.
Missed-day detection is idempotent per calendar day: last_missed_date is
the idempotency key, so repeated checks on the same day change nothing.
"""

import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from core.exceptions import RecoveryOptionUnavailableError
from services.habit_state import (
    MAX_RESILIENCE_SCORE,
    AppState,
    EnergyTier,
    ResilienceStatus,
    date_key,
)

logger = logging.getLogger(__name__)

MISSED_DAY_PENALTY = 10
FREEZE_DURATION = timedelta(hours=24)
LOW_ENERGY_RESET_BONUS = 5
SHIELD_RECOVERY_BONUS = 10

_BROKEN = (ResilienceStatus.CRACKED, ResilienceStatus.RECOVERING)


class RecoveryOption(str, Enum):
    ONE_MINUTE_RESET = "one-minute-reset"
    USE_SHIELD = "use-shield"
    GENTLE_RESTART = "gentle-restart"


def _latest_anchor(state: AppState, lifted_freeze_day: Optional[str]) -> Optional[date]:
    r = state.resilience
    candidates = [
        date_key(r.last_completed_at) if r.last_completed_at else None,
        r.gap_anchor,
        lifted_freeze_day,
    ]
    present = [date.fromisoformat(c) for c in candidates if c]
    return max(present) if present else None


def detect_missed_day(state: AppState, now: datetime) -> AppState:
    """
    Apply the missed-day rule once per calendar day.

    The gap is measured from the latest of: last completion, last remedy
    or lifted freeze. A gap of more than one day either consumes a shield
    (status unchanged) or cracks the streak with a modest score penalty.
    An already broken streak is not penalised again.
    """
    r = state.resilience
    today = date_key(now)
    lifted_freeze_day = None
    new_state: Optional[AppState] = None

    if r.is_frozen:
        if r.freeze_expiry is not None and now < r.freeze_expiry:
            return state
        # Freeze ran out; the frozen window does not count as missed
        new_state = state.clone()
        nr = new_state.resilience
        lifted_freeze_day = date_key(nr.freeze_expiry) if nr.freeze_expiry else today
        nr.is_frozen = False
        nr.freeze_expiry = None
        if nr.status == ResilienceStatus.FROZEN:
            nr.status = ResilienceStatus.ACTIVE
        nr.gap_anchor = lifted_freeze_day
        logger.info(f"Freeze expired, lifted on {today}")

    base = new_state or state
    anchor = _latest_anchor(base, lifted_freeze_day)
    if anchor is None:
        return base

    gap = (now.date() - anchor).days
    if gap <= 1 or base.resilience.last_missed_date == today:
        return base

    if new_state is None:
        new_state = state.clone()
    nr = new_state.resilience
    nr.last_missed_date = today

    if nr.status in _BROKEN:
        logger.debug(f"Missed day on {today} while {nr.status.value}; no further penalty")
    elif nr.shields > 0:
        nr.shields -= 1
        nr.missed_yesterday = False
        logger.info(f"Missed day on {today} absorbed by shield ({nr.shields} left)")
    else:
        nr.status = ResilienceStatus.CRACKED
        nr.score = max(0, nr.score - MISSED_DAY_PENALTY)
        nr.recovery_mode = True
        nr.missed_yesterday = True
        logger.info(f"Missed day on {today}: streak cracked, score {nr.score}")

    return new_state


def toggle_freeze(state: AppState, active: bool, now: datetime) -> AppState:
    new_state = state.clone()
    r = new_state.resilience
    if active:
        r.is_frozen = True
        r.freeze_expiry = now + FREEZE_DURATION
        r.status = ResilienceStatus.FROZEN
    else:
        r.is_frozen = False
        r.freeze_expiry = None
        r.status = ResilienceStatus.ACTIVE
        # Manual unfreeze restarts the missed-day clock today
        r.gap_anchor = date_key(now)
    return new_state


def activate_recovery_mode(state: AppState) -> AppState:
    """User opened the recovery flow on a cracked streak."""
    if state.resilience.status != ResilienceStatus.CRACKED:
        return state
    new_state = state.clone()
    new_state.resilience.status = ResilienceStatus.RECOVERING
    return new_state


def apply_recovery_option(state: AppState, option: RecoveryOption, now: datetime) -> AppState:
    """
    Resolve a broken streak with one of three remedies; all end ACTIVE.

    one-minute-reset  switch to LOW energy habits, small score bonus
    use-shield        spend a shield, larger score bonus, streak intact
    gentle-restart    streak back to zero; badges derive from total
                      completions so they are kept
    """
    r = state.resilience
    if r.status not in _BROKEN:
        raise RecoveryOptionUnavailableError(f"Nothing to recover from (status {r.status.value})")
    if option == RecoveryOption.USE_SHIELD and r.shields <= 0:
        raise RecoveryOptionUnavailableError("No shield available")

    new_state = state.clone()
    nr = new_state.resilience

    if option == RecoveryOption.ONE_MINUTE_RESET:
        new_state.current_energy = EnergyTier.LOW
        nr.score = min(MAX_RESILIENCE_SCORE, nr.score + LOW_ENERGY_RESET_BONUS)
    elif option == RecoveryOption.USE_SHIELD:
        nr.shields -= 1
        nr.score = min(MAX_RESILIENCE_SCORE, nr.score + SHIELD_RECOVERY_BONUS)
    elif option == RecoveryOption.GENTLE_RESTART:
        nr.streak = 0

    nr.status = ResilienceStatus.ACTIVE
    nr.recovery_mode = False
    nr.missed_yesterday = False
    nr.gap_anchor = date_key(now)
    logger.info(f"Recovery option {option.value} applied: streak={nr.streak} shields={nr.shields}")
    return new_state


def undo_last_completion(state: AppState) -> Tuple[AppState, bool]:
    """
    Restore the single undo snapshot verbatim and clear the slot.
    A second call finds the slot empty and is a no-op.
    """
    if state.undo is None:
        return state, False

    new_state = state.clone()
    snapshot = new_state.undo
    new_state.resilience = snapshot.resilience
    new_state.daily_completed_indices = list(snapshot.completed_indices)
    if snapshot.log is None:
        new_state.history.pop(snapshot.date, None)
    else:
        new_state.history[snapshot.date] = snapshot.log
    new_state.undo = None
    return new_state, True
