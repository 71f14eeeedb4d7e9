"""
Resilience State Machine Tests

Missed-day detection, shields, freeze, recovery remedies and undo.
"""

import random
import sys
import os
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.exceptions import RecoveryOptionUnavailableError
from services.habit_state import MAX_SHIELDS, EnergyTier, ResilienceStatus, date_key
from services.progress_ledger import earned_badges, record_completion, rollover_day
from services.resilience_engine import (
    FREEZE_DURATION,
    LOW_ENERGY_RESET_BONUS,
    MISSED_DAY_PENALTY,
    SHIELD_RECOVERY_BONUS,
    RecoveryOption,
    activate_recovery_mode,
    apply_recovery_option,
    detect_missed_day,
    toggle_freeze,
    undo_last_completion,
)


@pytest.fixture
def lapsed(state, now):
    """Last completion three days ago, no shields."""
    state.resilience.last_completed_at = now - timedelta(days=3)
    state.resilience.streak = 4
    return state


class TestDetectMissedDay:

    def test_gap_cracks_streak(self, lapsed, now):
        new_state = detect_missed_day(lapsed, now)
        r = new_state.resilience
        assert r.status == ResilienceStatus.CRACKED
        assert r.score == 50 - MISSED_DAY_PENALTY
        assert r.recovery_mode is True
        assert r.missed_yesterday is True
        assert r.last_missed_date == date_key(now)

    def test_idempotent_per_day(self, lapsed, now):
        once = detect_missed_day(lapsed, now)
        twice = detect_missed_day(once, now + timedelta(hours=6))
        assert twice is once
        assert twice.resilience.score == once.resilience.score

    def test_shield_absorbs_miss(self, lapsed, now):
        lapsed.resilience.shields = 2
        new_state = detect_missed_day(lapsed, now)
        r = new_state.resilience
        assert r.shields == 1
        assert r.status == ResilienceStatus.ACTIVE
        assert r.score == 50
        assert r.streak == 4

    def test_broken_streak_not_penalised_again(self, lapsed, now):
        lapsed.resilience.status = ResilienceStatus.RECOVERING
        new_state = detect_missed_day(lapsed, now)
        assert new_state.resilience.score == 50
        assert new_state.resilience.status == ResilienceStatus.RECOVERING
        assert new_state.resilience.last_missed_date == date_key(now)

    def test_completed_yesterday_is_not_a_miss(self, state, now):
        state.resilience.last_completed_at = now - timedelta(days=1)
        assert detect_missed_day(state, now) is state

    def test_never_completed_is_not_a_miss(self, state, now):
        assert detect_missed_day(state, now) is state

    def test_remedy_restarts_clock(self, lapsed, now):
        lapsed.resilience.gap_anchor = date_key(now - timedelta(days=1))
        assert detect_missed_day(lapsed, now) is lapsed

    def test_active_freeze_suspends_detection(self, lapsed, now):
        frozen = toggle_freeze(lapsed, True, now - timedelta(hours=2))
        assert detect_missed_day(frozen, now) is frozen

    def test_expired_freeze_lifted_without_penalty(self, lapsed, now):
        frozen = toggle_freeze(lapsed, True, now - timedelta(hours=26))
        new_state = detect_missed_day(frozen, now)
        r = new_state.resilience
        assert r.is_frozen is False
        assert r.freeze_expiry is None
        assert r.status == ResilienceStatus.ACTIVE
        assert r.score == 50

    def test_long_expired_freeze_counts_gap_after_expiry(self, lapsed, now):
        frozen = toggle_freeze(lapsed, True, now - timedelta(days=4))
        new_state = detect_missed_day(frozen, now)
        assert new_state.resilience.status == ResilienceStatus.CRACKED


class TestFreeze:

    def test_freeze_sets_window(self, state, now):
        frozen = toggle_freeze(state, True, now)
        assert frozen.resilience.status == ResilienceStatus.FROZEN
        assert frozen.resilience.freeze_expiry == now + FREEZE_DURATION

    def test_unfreeze_restarts_clock(self, state, now):
        frozen = toggle_freeze(state, True, now)
        thawed = toggle_freeze(frozen, False, now)
        assert thawed.resilience.status == ResilienceStatus.ACTIVE
        assert thawed.resilience.gap_anchor == date_key(now)


class TestRecovery:

    def test_open_recovery_flow(self, lapsed, now):
        cracked = detect_missed_day(lapsed, now)
        recovering = activate_recovery_mode(cracked)
        assert recovering.resilience.status == ResilienceStatus.RECOVERING

    def test_open_recovery_flow_when_not_cracked(self, state):
        assert activate_recovery_mode(state) is state

    def test_one_minute_reset(self, lapsed, now):
        cracked = detect_missed_day(lapsed, now)
        fixed = apply_recovery_option(cracked, RecoveryOption.ONE_MINUTE_RESET, now)
        assert fixed.current_energy == EnergyTier.LOW
        assert fixed.resilience.score == cracked.resilience.score + LOW_ENERGY_RESET_BONUS
        assert fixed.resilience.status == ResilienceStatus.ACTIVE
        assert fixed.resilience.recovery_mode is False

    def test_use_shield(self, lapsed, now):
        cracked = detect_missed_day(lapsed, now)
        cracked.resilience.shields = 1
        fixed = apply_recovery_option(cracked, RecoveryOption.USE_SHIELD, now)
        assert fixed.resilience.shields == 0
        assert fixed.resilience.score == cracked.resilience.score + SHIELD_RECOVERY_BONUS
        assert fixed.resilience.streak == 4

    def test_use_shield_without_shield(self, lapsed, now):
        cracked = detect_missed_day(lapsed, now)
        with pytest.raises(RecoveryOptionUnavailableError):
            apply_recovery_option(cracked, RecoveryOption.USE_SHIELD, now)

    def test_gentle_restart_keeps_badges(self, lapsed, now):
        lapsed.resilience.total_completions = 8
        cracked = detect_missed_day(lapsed, now)
        fixed = apply_recovery_option(cracked, RecoveryOption.GENTLE_RESTART, now)
        assert fixed.resilience.streak == 0
        assert fixed.resilience.total_completions == 8
        assert len(earned_badges(fixed.resilience.total_completions)) == 3

    def test_remedy_needs_broken_streak(self, state, now):
        with pytest.raises(RecoveryOptionUnavailableError):
            apply_recovery_option(state, RecoveryOption.GENTLE_RESTART, now)

    def test_no_second_penalty_same_day_after_remedy(self, lapsed, now):
        cracked = detect_missed_day(lapsed, now)
        fixed = apply_recovery_option(cracked, RecoveryOption.GENTLE_RESTART, now)
        assert detect_missed_day(fixed, now) is fixed


class TestUndo:

    def test_undo_restores_pre_completion_values(self, state, now):
        before_resilience = state.resilience.to_dict()
        before_indices = state.today_indices(now)
        done, _ = record_completion(state, 1, now)
        undone, restored = undo_last_completion(done)
        assert restored is True
        assert undone.resilience.to_dict() == before_resilience
        assert undone.today_indices(now) == before_indices
        assert date_key(now) not in undone.history

    def test_undo_twice_is_noop(self, state, now):
        done, _ = record_completion(state, 1, now)
        undone, _ = undo_last_completion(done)
        again, restored = undo_last_completion(undone)
        assert restored is False
        assert again is undone

    def test_undo_restores_previous_log(self, state, now):
        first, _ = record_completion(state, 0, now)
        second, _ = record_completion(first, 2, now)
        undone, _ = undo_last_completion(second)
        assert undone.history[date_key(now)].to_dict() == first.history[date_key(now)].to_dict()
        assert undone.daily_completed_indices == [0]

    def test_undo_does_not_touch_source_state(self, state, now):
        done, _ = record_completion(state, 0, now)
        snapshot = done.to_local_dict()
        undo_last_completion(done)
        assert done.to_local_dict() == snapshot
        assert done.undo is not None


class TestShieldBounds:

    def test_shields_stay_in_range_over_random_sequences(self, state, now):
        rng = random.Random(7)
        current = now
        s = state
        for _ in range(400):
            action = rng.choice(["complete", "skip", "recover", "freeze"])
            if action == "complete":
                s, _ = rollover_day(s, current)
                s, _ = record_completion(s, rng.randrange(3), current)
                current += timedelta(days=1)
            elif action == "skip":
                current += timedelta(days=rng.randint(2, 4))
                s, _ = rollover_day(s, current)
                s = detect_missed_day(s, current)
            elif action == "recover":
                if s.resilience.status in (ResilienceStatus.CRACKED, ResilienceStatus.RECOVERING):
                    option = rng.choice(list(RecoveryOption))
                    if option == RecoveryOption.USE_SHIELD and s.resilience.shields == 0:
                        option = RecoveryOption.GENTLE_RESTART
                    s = apply_recovery_option(s, option, current)
            else:
                s = toggle_freeze(s, rng.random() < 0.5, current)
            assert 0 <= s.resilience.shields <= MAX_SHIELDS
            assert 0 <= s.resilience.score <= 100
