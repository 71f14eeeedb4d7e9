"""
Stage & Persona Classifier

Weekly review pipeline:

    should_run_review()      Sunday/Monday only, once per cooldown window
    compute_weekly_stats()   last N weeks ending yesterday, newest first
    classify_persona()       momentum (sum of persisted daily scores, 0-21)
    evaluate_stage()         regression > GHOST suppression > gates
    classify_week()          builds the ReviewDrafted read-model (pure)
    apply_review_draft()     commits stage clock and weekly counters
    accept_stage_promotion() resonance-gated acceptance of a suggestion
    seal_weekly_review()     records the user's choice, novelty, cycle

Stage advancement is two-tier: INITIATION -> INTEGRATION is applied
automatically, everything above is only suggested and needs the user to
affirm enough resonance statements. A GHOST week suppresses every advance.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.config import settings
from core.exceptions import NoPendingReviewError, StagePromotionError
from services.evolution_engine import (
    compute_identity_progress,
    detect_identity_branching,
    generate_evolution_options,
    generate_evolution_suggestion,
    maybe_apply_novelty,
    next_escalation_count,
)
from services.habit_state import (
    STAGE_ORDER,
    AppState,
    DailyLog,
    EnergyTier,
    EvolutionOptionId,
    HabitSet,
    IdentityProfile,
    IdentityStage,
    IdentityType,
    MaintenancePath,
    Persona,
    ReviewDrafted,
    ReviewSealed,
    StageDecision,
    WeeklyStats,
    date_key,
)
from services.reflection_templates import (
    RESONANCE_MIN_AFFIRMED,
    count_affirmed,
    select_resonance_statements,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REVIEW_WEEKDAYS = (6, 0)  # Sunday, Monday

TITAN_THRESHOLD = 18
GRINDER_THRESHOLD = 12
SURVIVOR_THRESHOLD = 6

REGRESSION_RATE = 0.40
INITIATION_MIN_WEEKS = 3
INITIATION_MIN_RATE = 0.30
GOOD_STATS_RATE = 0.60
MAINTENANCE_COMPLETE_WEEKS = 6


@dataclass(frozen=True)
class StageGate:
    min_weeks: int
    min_rate: float
    max_zero_days: int
    streak_alternative: Optional[int] = None

    def passes(self, weeks_in_stage: int, stats: WeeklyStats, streak: int) -> bool:
        if self.streak_alternative is not None and streak >= self.streak_alternative:
            return True
        return (
            weeks_in_stage >= self.min_weeks
            and stats.completion_rate >= self.min_rate
            and stats.zero_count <= self.max_zero_days
        )


# Keyed by the stage being left
STAGE_GATES: Dict[IdentityStage, Dict[IdentityType, StageGate]] = {
    IdentityStage.INTEGRATION: {
        IdentityType.SKILL: StageGate(0, 0.60, 3, streak_alternative=10),
        IdentityType.CHARACTER: StageGate(0, 0.50, 4, streak_alternative=14),
        IdentityType.RECOVERY: StageGate(6, 0.40, 4),
    },
    IdentityStage.EXPANSION: {
        IdentityType.SKILL: StageGate(8, 0.55, 3),
        IdentityType.CHARACTER: StageGate(8, 0.50, 3),
        IdentityType.RECOVERY: StageGate(12, 0.45, 4),
    },
}

AUTO_PROMOTION_MESSAGE = "You've built a foundation. Things should feel lighter now."
SUGGESTED_UPGRADE_MESSAGES = {
    IdentityStage.EXPANSION: "You're ready to grow. Ready to level up?",
    IdentityStage.MAINTENANCE: "This identity feels stable. Ready to lock it in?",
}
REGRESSION_MESSAGES = {
    IdentityType.SKILL: "Activity dropped significantly. Let's simplify and rebuild.",
    IdentityType.CHARACTER: "Character building takes time. Let's reconnect with the basics.",
    IdentityType.RECOVERY: "Recovery has ups and downs. Let's go back to what felt steady.",
}


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def review_week_key(now: datetime) -> str:
    """ISO week of the reviewed window (which ends yesterday), e.g. 2026-W41."""
    year, week, _ = (now.date() - timedelta(days=1)).isocalendar()
    return f"{year}-W{week:02d}"


def should_run_review(state: AppState, now: datetime) -> bool:
    if not state.onboarding_complete:
        return False
    if now.weekday() not in REVIEW_WEEKDAYS:
        return False
    review = state.weekly_review
    if isinstance(review, ReviewDrafted) and review.week_key == review_week_key(now):
        return False
    if state.last_weekly_review_date:
        last = datetime.fromisoformat(state.last_weekly_review_date).date()
        if (now.date() - last).days < settings.WEEKLY_REVIEW_COOLDOWN_DAYS:
            return False
    return True


# ---------------------------------------------------------------------------
# Weekly stats and persona
# ---------------------------------------------------------------------------

def compute_weekly_stats(
    history: Dict[str, DailyLog], now: datetime, weeks_back: Optional[int] = None
) -> List[WeeklyStats]:
    """
    Aggregates for the last `weeks_back` 7-day windows, newest first.
    Week 0 ends yesterday. Persisted daily scores are summed as-is.
    """
    weeks_back = weeks_back or settings.WEEKLY_REVIEW_WEEKS_BACK
    yesterday = now.date() - timedelta(days=1)
    stats = []
    for week in range(weeks_back):
        week_end = yesterday - timedelta(days=7 * week)
        week_start = week_end - timedelta(days=6)
        days_active = 0
        total_completions = 0
        score_sum = 0.0
        high_energy_days = 0
        for offset in range(7):
            log = history.get(date_key(week_start + timedelta(days=offset)))
            if log is None:
                continue
            completions = log.completion_count()
            if completions > 0:
                days_active += 1
                total_completions += completions
            score_sum += log.daily_score or 0.0
            if log.energy == EnergyTier.HIGH:
                high_energy_days += 1
        stats.append(
            WeeklyStats(
                week_start=date_key(week_start),
                days_active=days_active,
                score_sum=round(score_sum, 4),
                zero_count=7 - days_active,
                high_energy_days=high_energy_days,
                total_completions=total_completions,
            )
        )
    return stats


def classify_persona(momentum: float) -> Persona:
    if momentum > TITAN_THRESHOLD:
        return Persona.TITAN
    if momentum > GRINDER_THRESHOLD:
        return Persona.GRINDER
    if momentum > SURVIVOR_THRESHOLD:
        return Persona.SURVIVOR
    return Persona.GHOST


def detect_overreach(last_option_id: Optional[EvolutionOptionId], persona: Persona) -> bool:
    """Pushed harder last week, then dropped to SURVIVOR or GHOST."""
    return last_option_id == EvolutionOptionId.INCREASE_DIFFICULTY and persona in (
        Persona.SURVIVOR,
        Persona.GHOST,
    )


def missed_habit_counts(state: AppState, now: datetime) -> Dict[str, int]:
    """How often each habit in the day's tier went undone over the last 7 days."""
    yesterday = now.date() - timedelta(days=1)
    counts: Dict[str, int] = {}
    for offset in range(7):
        log = state.history.get(date_key(yesterday - timedelta(days=offset)))
        tier = (log.energy if log else None) or EnergyTier.HIGH
        done = set(log.completed_indices) if log else set()
        done_names = set(log.completed_habit_names) if log else set()
        for idx, name in enumerate(state.habit_set.display(tier)):
            if idx in done or name in done_names:
                continue
            counts[name] = counts.get(name, 0) + 1
    return counts


# ---------------------------------------------------------------------------
# Stage gating
# ---------------------------------------------------------------------------

def _next_stage(stage: IdentityStage) -> Optional[IdentityStage]:
    position = STAGE_ORDER.index(stage)
    return STAGE_ORDER[position + 1] if position + 1 < len(STAGE_ORDER) else None


def regression_target(identity_type: IdentityType, stage: IdentityStage) -> IdentityStage:
    if identity_type == IdentityType.SKILL:
        return IdentityStage.INITIATION
    if identity_type == IdentityType.CHARACTER:
        return STAGE_ORDER[max(0, STAGE_ORDER.index(stage) - 1)]
    # RECOVERY: one stage at most, never below INTEGRATION
    if stage == IdentityStage.MAINTENANCE:
        return IdentityStage.EXPANSION
    return stage


def evaluate_stage(
    profile: IdentityProfile,
    stats: List[WeeklyStats],
    streak: int,
    persona: Persona,
    seed: str,
) -> StageDecision:
    identity_type = profile.type or IdentityType.SKILL
    stage = profile.stage
    this_week = stats[0]

    if len(stats) >= 2 and all(s.completion_rate < REGRESSION_RATE for s in stats[:2]):
        target = regression_target(identity_type, stage)
        if target != stage:
            logger.info(f"Stage regression {stage.value} -> {target.value} ({identity_type.value})")
            return StageDecision(regressed_to=target, message=REGRESSION_MESSAGES[identity_type])

    if persona == Persona.GHOST:
        return StageDecision()

    if stage == IdentityStage.INITIATION:
        if profile.weeks_in_stage >= INITIATION_MIN_WEEKS or this_week.completion_rate >= INITIATION_MIN_RATE:
            logger.info(f"Auto-promotion INITIATION -> INTEGRATION (weeks={profile.weeks_in_stage})")
            return StageDecision(auto_promoted_to=IdentityStage.INTEGRATION, message=AUTO_PROMOTION_MESSAGE)
        return StageDecision()

    gate = STAGE_GATES.get(stage, {}).get(identity_type)
    if gate is None or not gate.passes(profile.weeks_in_stage, this_week, streak):
        return StageDecision()

    target = _next_stage(stage)
    return StageDecision(
        suggested_stage=target,
        message=SUGGESTED_UPGRADE_MESSAGES[target],
        resonance_statements=select_resonance_statements(target, seed),
    )


def _effective_stage(profile: IdentityProfile, decision: StageDecision) -> IdentityStage:
    return decision.auto_promoted_to or decision.regressed_to or profile.stage


def _stage_changed(decision: StageDecision) -> bool:
    return bool(decision.auto_promoted_to or decision.regressed_to)


def is_maintenance_complete(stage: IdentityStage, weeks_in_stage: int) -> bool:
    return stage == IdentityStage.MAINTENANCE and weeks_in_stage >= MAINTENANCE_COMPLETE_WEEKS


# ---------------------------------------------------------------------------
# Review lifecycle
# ---------------------------------------------------------------------------

def classify_week(state: AppState, now: datetime) -> ReviewDrafted:
    """Build the weekly review read-model. Does not touch `state`."""
    week_key = review_week_key(now)
    stats = compute_weekly_stats(state.history, now)
    this_week = stats[0]
    momentum = this_week.score_sum
    persona = classify_persona(momentum)

    tracker = state.evolution
    overreach_count = (
        tracker.consecutive_overreach + 1 if detect_overreach(tracker.last_option_id, persona) else 0
    )
    ghost_weeks = tracker.consecutive_ghost_weeks + 1 if persona == Persona.GHOST else 0

    profile = state.identity_profile
    decision = evaluate_stage(
        profile, stats, state.resilience.streak, persona, seed=f"{state.user_id}:{week_key}"
    )
    stage = _effective_stage(profile, decision)
    weeks = 0 if _stage_changed(decision) else profile.weeks_in_stage + 1

    suggestion = None
    if persona != Persona.GHOST:
        suggestion = generate_evolution_suggestion(
            profile.type, stage, this_week.completion_rate, state.resilience.streak, momentum
        )

    maintenance_complete = is_maintenance_complete(stage, weeks)
    draft = ReviewDrafted(
        week_key=week_key,
        generated_on=date_key(now),
        stats=stats,
        momentum_score=momentum,
        persona=persona,
        missed_habits=missed_habit_counts(state, now),
        options=generate_evolution_options(
            persona,
            tracker.consecutive_increases,
            overreach_count,
            tracker.consecutive_overreach,
            ghost_weeks,
        ),
        stage_decision=decision,
        suggestion=suggestion,
        identity_progress=compute_identity_progress(
            profile.type, stage, weeks, this_week.completion_rate >= GOOD_STATS_RATE
        ),
        branching_options=detect_identity_branching(state.identity, profile.type, stage, weeks),
        maintenance_complete=maintenance_complete,
        maintenance_paths=list(MaintenancePath) if maintenance_complete else [],
        novelty_due=tracker.reviews_since_novelty + 1 >= settings.NOVELTY_REVIEW_INTERVAL,
        ghost_weeks=ghost_weeks,
        overreach_count=overreach_count,
    )
    logger.info(
        f"Weekly review {week_key} for {state.user_id or 'local user'}: "
        f"momentum={momentum:.2f} persona={persona.value} stage={stage.value}",
        extra={"user_id": state.user_id or None, "week_key": week_key},
    )
    return draft


def apply_review_draft(state: AppState, draft: ReviewDrafted, now: datetime) -> AppState:
    """
    Commit what the classifier decided on its own: automatic stage moves,
    the stage clock and the weekly counters. The draft becomes the pending
    review.
    """
    today = date_key(now)
    new_state = state.clone()
    profile = new_state.identity_profile
    decision = draft.stage_decision

    if _stage_changed(decision):
        profile.stage = _effective_stage(profile, decision)
        profile.weeks_in_stage = 0
        profile.stage_entered_at = today
    else:
        profile.weeks_in_stage += 1

    tracker = new_state.evolution
    tracker.last_persona = draft.persona
    tracker.consecutive_ghost_weeks = draft.ghost_weeks
    tracker.consecutive_overreach = draft.overreach_count

    new_state.last_weekly_review_date = today
    new_state.weekly_review = draft
    return new_state


def _pending_review(state: AppState) -> ReviewDrafted:
    if not isinstance(state.weekly_review, ReviewDrafted):
        raise NoPendingReviewError("No weekly review is waiting for a decision")
    return state.weekly_review


def accept_stage_promotion(state: AppState, affirmed: List[str], now: datetime) -> AppState:
    """Apply a suggested promotion once enough resonance statements are affirmed."""
    review = _pending_review(state)
    decision = review.stage_decision
    if decision.suggested_stage is None:
        raise StagePromotionError("No stage promotion was suggested this week")

    affirmed_count = count_affirmed(decision.resonance_statements, affirmed)
    if affirmed_count < RESONANCE_MIN_AFFIRMED:
        raise StagePromotionError(
            f"Affirm at least {RESONANCE_MIN_AFFIRMED} statements to move on ({affirmed_count} affirmed)"
        )

    new_state = state.clone()
    new_decision = new_state.weekly_review.stage_decision
    profile = new_state.identity_profile
    profile.stage = new_decision.suggested_stage
    profile.weeks_in_stage = 0
    profile.stage_entered_at = date_key(now)
    new_decision.accepted = True
    new_decision.suggested_stage = None
    logger.info(f"Stage promotion accepted: now {profile.stage.value}")
    return new_state


def dismiss_stage_suggestion(state: AppState) -> AppState:
    _pending_review(state)
    new_state = state.clone()
    decision = new_state.weekly_review.stage_decision
    decision.suggested_stage = None
    decision.resonance_statements = []
    return new_state


def seal_weekly_review(
    state: AppState,
    now: datetime,
    chosen_option: Optional[EvolutionOptionId] = None,
    force_novelty: bool = False,
) -> AppState:
    """
    Close the pending review: record the chosen option, advance the review
    cycle and inject novelty when it is due. Habit changes for the option
    itself are applied by the caller before sealing.
    """
    review = _pending_review(state)
    new_state = state.clone()
    tracker = new_state.evolution

    tracker.consecutive_increases = next_escalation_count(tracker.consecutive_increases, chosen_option)
    tracker.last_option_id = chosen_option
    tracker.review_cycle += 1
    tracker.reviews_since_novelty += 1

    habit_set, applied = maybe_apply_novelty(
        new_state.habit_set,
        cycle=tracker.review_cycle,
        last_novelty_cycle=tracker.last_novelty_cycle,
        reviews_since_novelty=tracker.reviews_since_novelty,
        interval=settings.NOVELTY_REVIEW_INTERVAL,
        force=force_novelty,
    )
    if applied:
        new_state.habit_set = habit_set
        tracker.last_novelty_cycle = tracker.review_cycle
        tracker.reviews_since_novelty = 0

    new_state.weekly_review = ReviewSealed(
        week_key=review.week_key,
        sealed_on=date_key(now),
        chosen_option=chosen_option,
    )
    return new_state


def apply_maintenance_path(
    state: AppState,
    path: MaintenancePath,
    now: datetime,
    new_identity: Optional[str] = None,
    new_habit_set: Optional[HabitSet] = None,
    new_identity_type: Optional[IdentityType] = None,
) -> AppState:
    """
    Terminal continuation after a completed MAINTENANCE stage.

    DEEPEN   same identity, stage clock restarts
    EVOLVE   new identity string with a habit set generated for it
    RESTART  back to onboarding
    """
    review = _pending_review(state)
    if not review.maintenance_complete:
        raise StagePromotionError("Maintenance is not complete yet")

    new_state = state.clone()
    today = date_key(now)
    if path == MaintenancePath.DEEPEN:
        new_state.identity_profile.weeks_in_stage = 0
        new_state.identity_profile.stage_entered_at = today
    elif path == MaintenancePath.EVOLVE:
        if not new_identity or new_habit_set is None:
            raise StagePromotionError("Evolving needs a new identity and its habits")
        new_state.identity = new_identity
        new_state.habit_set = new_habit_set
        new_state.identity_profile = IdentityProfile(
            type=new_identity_type, stage=IdentityStage.INITIATION, stage_entered_at=today
        )
    else:
        new_state.identity = ""
        new_state.habit_set = HabitSet()
        new_state.onboarding_complete = False
        new_state.identity_profile = IdentityProfile()
        new_state.current_energy = None

    logger.info(f"Maintenance path {path.value} chosen")
    return seal_weekly_review(new_state, now)
