"""
Evolution Rules Engine

Turns a weekly persona into a short list of evolution options, and turns
the chosen option into concrete habit changes:

    harder   +1 level on every habit in every tier
    easier   -1 level
    minimal  -2 levels
    fresh    discard the set, regenerate INITIATION-level habits
    change   flag only; the caller routes the user back to onboarding

Levels are clamped to the per-identity-type progression table. Novelty
injection rewords a bounded subset of habits (one per tier) without
touching the level, keyed by the review cycle so a second application in
the same cycle changes nothing.

Also carries the stage-appropriate suggestion tables, the identity
progress estimate and identity branching options shown in the review.
"""

import copy
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from services.habit_state import (
    TIER_ORDER,
    DifficultyLevel,
    EvolutionImpact,
    EvolutionOption,
    EvolutionOptionId,
    HabitSet,
    IdentityProfile,
    IdentityStage,
    IdentityType,
    Persona,
    Suggestion,
)
from services.habit_templates import initiation_habit_set
from services.progression_tables import NOVELTY_VARIANTS, clamp_level

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Option catalogue
# ---------------------------------------------------------------------------

SATURATION_THRESHOLD = 2   # consecutive INCREASE_DIFFICULTY choices
GHOST_LOOP_THRESHOLD = 2   # consecutive GHOST weeks

LEVEL_SHIFT = {
    DifficultyLevel.HARDER: 1,
    DifficultyLevel.EASIER: -1,
    DifficultyLevel.MINIMAL: -2,
    DifficultyLevel.SAME: 0,
}

OPTION_CATALOGUE: Dict[EvolutionOptionId, EvolutionOption] = {
    EvolutionOptionId.INCREASE_DIFFICULTY: EvolutionOption(
        id=EvolutionOptionId.INCREASE_DIFFICULTY,
        title="Push Harder",
        description="Shift every habit up one level.",
        impact=EvolutionImpact(difficulty=DifficultyLevel.HARDER),
    ),
    EvolutionOptionId.ADD_VARIATION: EvolutionOption(
        id=EvolutionOptionId.ADD_VARIATION,
        title="Add Variety",
        description="Keep the intensity, freshen up a few habits.",
    ),
    EvolutionOptionId.TECHNIQUE_WEEK: EvolutionOption(
        id=EvolutionOptionId.TECHNIQUE_WEEK,
        title="Refine Technique",
        description="Same habits, done with more care.",
    ),
    EvolutionOptionId.MAINTAIN: EvolutionOption(
        id=EvolutionOptionId.MAINTAIN,
        title="Keep Going",
        description="Keep your current habits as they are.",
    ),
    EvolutionOptionId.SOFTER_HABIT: EvolutionOption(
        id=EvolutionOptionId.SOFTER_HABIT,
        title="Make It Easier",
        description="Shift every habit down one level.",
        impact=EvolutionImpact(difficulty=DifficultyLevel.EASIER),
    ),
    EvolutionOptionId.STABILIZATION_WEEK: EvolutionOption(
        id=EvolutionOptionId.STABILIZATION_WEEK,
        title="Stabilize",
        description="Keep next week soft and predictable.",
    ),
    EvolutionOptionId.FRESH_START: EvolutionOption(
        id=EvolutionOptionId.FRESH_START,
        title="Fresh Start",
        description="Go back to Initiation habits for the same identity.",
        impact=EvolutionImpact(stage_change=IdentityStage.INITIATION, is_fresh_start=True),
    ),
    EvolutionOptionId.FRICTION_REMOVAL: EvolutionOption(
        id=EvolutionOptionId.FRICTION_REMOVAL,
        title="Minimal Effort",
        description="Strip every habit down to its smallest form.",
        impact=EvolutionImpact(difficulty=DifficultyLevel.MINIMAL),
    ),
    EvolutionOptionId.REST_WEEK: EvolutionOption(
        id=EvolutionOptionId.REST_WEEK,
        title="Rest Week",
        description="Step back one level and recover.",
        impact=EvolutionImpact(difficulty=DifficultyLevel.EASIER),
    ),
    EvolutionOptionId.CHANGE_IDENTITY: EvolutionOption(
        id=EvolutionOptionId.CHANGE_IDENTITY,
        title="Change Identity",
        description="Pick a new identity and start again from onboarding.",
    ),
}

PERSONA_OPTIONS: Dict[Persona, List[EvolutionOptionId]] = {
    Persona.TITAN: [
        EvolutionOptionId.INCREASE_DIFFICULTY,
        EvolutionOptionId.ADD_VARIATION,
        EvolutionOptionId.MAINTAIN,
    ],
    Persona.GRINDER: [
        EvolutionOptionId.TECHNIQUE_WEEK,
        EvolutionOptionId.ADD_VARIATION,
        EvolutionOptionId.MAINTAIN,
    ],
    Persona.SURVIVOR: [
        EvolutionOptionId.SOFTER_HABIT,
        EvolutionOptionId.STABILIZATION_WEEK,
        EvolutionOptionId.MAINTAIN,
    ],
    Persona.GHOST: [
        EvolutionOptionId.FRESH_START,
        EvolutionOptionId.FRICTION_REMOVAL,
        EvolutionOptionId.STABILIZATION_WEEK,
    ],
}

NARRATIVES = {
    EvolutionOptionId.INCREASE_DIFFICULTY: "You've outgrown last week's habits. Time to raise the bar a little.",
    EvolutionOptionId.ADD_VARIATION: "Same intensity, new angles. A little novelty keeps the habit alive.",
    EvolutionOptionId.TECHNIQUE_WEEK: "This week is about quality. Do the same things, but do them well.",
    EvolutionOptionId.MAINTAIN: "Keep the rhythm. Nothing needs to change right now.",
    EvolutionOptionId.SOFTER_HABIT: "Softer habits this week. Showing up matters more than intensity.",
    EvolutionOptionId.STABILIZATION_WEEK: "A steady, predictable week. Stability is the goal.",
    EvolutionOptionId.FRESH_START: "A fresh start. Back to the smallest version of who you're becoming.",
    EvolutionOptionId.FRICTION_REMOVAL: "Minimal effort, maximum ease. Just keep the thread unbroken.",
    EvolutionOptionId.REST_WEEK: "You've pushed hard. A lighter week keeps the progress sustainable.",
    EvolutionOptionId.CHANGE_IDENTITY: "Maybe this identity isn't the right fit. Let's choose a new one.",
}


@dataclass
class EvolutionEffects:
    new_habit_set: HabitSet
    new_stage: Optional[IdentityStage]
    narrative_message: str
    triggers_identity_change: bool
    difficulty_level: DifficultyLevel
    force_novelty: bool = False


def get_option(option_id: EvolutionOptionId) -> EvolutionOption:
    return copy.deepcopy(OPTION_CATALOGUE[option_id])


def generate_evolution_options(
    persona: Persona,
    consecutive_increases: int,
    overreach_count: int,
    previous_overreach_count: int,
    ghost_weeks: int,
) -> List[EvolutionOption]:
    """
    Options offered for a persona, adjusted for escalation saturation,
    recent overreach and repeated GHOST weeks.
    """
    ids = list(PERSONA_OPTIONS[persona])

    saturated = consecutive_increases >= SATURATION_THRESHOLD
    overreached = overreach_count > 0 or previous_overreach_count > 0
    if (saturated or overreached) and EvolutionOptionId.INCREASE_DIFFICULTY in ids:
        ids[ids.index(EvolutionOptionId.INCREASE_DIFFICULTY)] = EvolutionOptionId.REST_WEEK
        logger.info(
            f"Escalation withheld (saturated={saturated}, overreached={overreached}); offering rest week"
        )

    if ghost_weeks >= GHOST_LOOP_THRESHOLD and EvolutionOptionId.CHANGE_IDENTITY not in ids:
        ids.append(EvolutionOptionId.CHANGE_IDENTITY)
        logger.info(f"Ghost loop detected ({ghost_weeks} weeks); offering identity change")

    return [get_option(i) for i in ids]


# ---------------------------------------------------------------------------
# Applying an option
# ---------------------------------------------------------------------------

def adjust_habit_level(habit_set: HabitSet, shift: int) -> HabitSet:
    adjusted = copy.deepcopy(habit_set)
    adjusted.level = clamp_level(habit_set.level + shift, habit_set.progression)
    return adjusted


def apply_evolution_option(
    option_id: EvolutionOptionId,
    habit_set: HabitSet,
    profile: IdentityProfile,
    identity: str,
) -> EvolutionEffects:
    """Pure: (option, habit set, profile) -> effects. Inputs are not modified."""
    option = OPTION_CATALOGUE[option_id]
    narrative = NARRATIVES[option_id]

    if option_id == EvolutionOptionId.CHANGE_IDENTITY:
        return EvolutionEffects(
            new_habit_set=copy.deepcopy(habit_set),
            new_stage=None,
            narrative_message=narrative,
            triggers_identity_change=True,
            difficulty_level=DifficultyLevel.SAME,
        )

    if option.impact.is_fresh_start:
        return EvolutionEffects(
            new_habit_set=initiation_habit_set(identity, profile.type),
            new_stage=IdentityStage.INITIATION,
            narrative_message=narrative,
            triggers_identity_change=False,
            difficulty_level=option.impact.difficulty,
        )

    difficulty = option.impact.difficulty
    new_set = adjust_habit_level(habit_set, LEVEL_SHIFT[difficulty])
    if new_set.level == habit_set.level and difficulty != DifficultyLevel.SAME:
        logger.debug(f"{option_id.value}: level already at bound {habit_set.level}")

    return EvolutionEffects(
        new_habit_set=new_set,
        new_stage=option.impact.stage_change,
        narrative_message=narrative,
        triggers_identity_change=False,
        difficulty_level=difficulty,
        force_novelty=option_id == EvolutionOptionId.ADD_VARIATION,
    )


def next_escalation_count(previous: int, option_id: Optional[EvolutionOptionId]) -> int:
    """Rolling count of consecutive INCREASE_DIFFICULTY choices."""
    if option_id == EvolutionOptionId.INCREASE_DIFFICULTY:
        return previous + 1
    return 0


# ---------------------------------------------------------------------------
# Novelty
# ---------------------------------------------------------------------------

def apply_novelty(habit_set: HabitSet, cycle: int) -> HabitSet:
    """
    Reword one habit per tier with a pre-seeded variant. The overlay is a
    pure function of the cycle index, so re-applying it is a no-op.
    """
    new_set = copy.deepcopy(habit_set)
    variant = cycle % (len(NOVELTY_VARIANTS) - 1) + 1
    overlay = {}
    for tier in TIER_ORDER:
        habits = habit_set.base(tier)
        if habits:
            overlay[f"{tier.value}:{cycle % len(habits)}"] = variant
    new_set.novelty = overlay
    return new_set


def maybe_apply_novelty(
    habit_set: HabitSet,
    cycle: int,
    last_novelty_cycle: Optional[int],
    reviews_since_novelty: int,
    interval: int,
    force: bool = False,
) -> Tuple[HabitSet, bool]:
    """Returns (habit_set, applied)."""
    if last_novelty_cycle == cycle:
        return habit_set, False
    if not force and reviews_since_novelty < interval:
        return habit_set, False
    logger.info(f"Novelty injected for review cycle {cycle}")
    return apply_novelty(habit_set, cycle), True


# ---------------------------------------------------------------------------
# Stage-appropriate suggestions
# ---------------------------------------------------------------------------

def _skill_suggestion(stage: IdentityStage, rate: float, streak: int, momentum: float) -> Suggestion:
    if stage == IdentityStage.INITIATION:
        return Suggestion("MAINTAIN", "Keep habits tiny for now. Consistency beats intensity at this stage.")
    if stage == IdentityStage.INTEGRATION:
        if rate >= 0.70:
            return Suggestion("ADD_VARIATION", "You're stable! Consider adding a small variation to keep things fresh.")
        return Suggestion("MAINTAIN", "Focus on making this feel automatic before adding more.")
    if stage == IdentityStage.EXPANSION:
        if rate >= 0.80:
            return Suggestion(
                "INCREASE_DIFFICULTY",
                "Your current habits look too easy now. That means you've grown. Want to raise the bar gently?",
            )
        if streak >= 14:
            return Suggestion("SHIFT_IDENTITY", "You've mastered the basics. Ready to evolve your identity scope?")
        return Suggestion("TECHNIQUE_WEEK", "This week, focus on quality over quantity. Refine your technique.")
    if momentum > 15:
        return Suggestion("REST_WEEK", "High momentum maintained! Consider a lighter week to sustain long-term.")
    return Suggestion("MAINTAIN", "You've arrived. Keep the rhythm, no need to push harder.")


def _character_suggestion(stage: IdentityStage, rate: float, streak: int, momentum: float) -> Suggestion:
    if stage == IdentityStage.INITIATION:
        return Suggestion("MAINTAIN", "Character builds slowly. Stay gentle with yourself this week.")
    if stage == IdentityStage.INTEGRATION:
        return Suggestion("ADD_REFLECTION", "Add a moment of reflection to your practice. How does this identity feel?")
    if stage == IdentityStage.EXPANSION:
        if rate >= 0.65:
            return Suggestion(
                "DEEPEN_CONTEXT",
                "This identity is stabilizing. Want to bring it into harder moments, like stress or social situations?",
            )
        return Suggestion("EMOTIONAL_WEEK", "This week, notice the emotions that arise. Character growth lives in awareness.")
    return Suggestion("MAINTAIN", "You've become this person. Just maintain the essence.")


def _recovery_suggestion(stage: IdentityStage, rate: float, streak: int, momentum: float) -> Suggestion:
    if stage == IdentityStage.INITIATION:
        if rate < 0.50:
            return Suggestion("SOFTER_HABIT", "Recovery is hard. Make your habits even softer this week.")
        return Suggestion("STABILIZATION_WEEK", "Keep next week soft and predictable. Stability is the goal.")
    if stage == IdentityStage.INTEGRATION:
        if streak >= 7:
            return Suggestion("FRICTION_REMOVAL", "Good rhythm! Identify one friction point to remove this week.")
        return Suggestion(
            "STABILIZATION_WEEK", "Your recovery rhythm is forming. Let's keep next week soft and predictable."
        )
    if stage == IdentityStage.EXPANSION:
        if rate >= 0.70:
            return Suggestion("RELAPSE_PATTERN", "You're stable. Let's identify patterns that might trigger setbacks.")
        return Suggestion("STABILIZATION_WEEK", "Continue the gentle pace. Recovery doesn't need to rush.")
    return Suggestion("MAINTAIN", "You've built lasting change. Focus on sustaining, not expanding.")


_SUGGESTERS = {
    IdentityType.SKILL: _skill_suggestion,
    IdentityType.CHARACTER: _character_suggestion,
    IdentityType.RECOVERY: _recovery_suggestion,
}


def generate_evolution_suggestion(
    identity_type: Optional[IdentityType],
    stage: IdentityStage,
    completion_rate: float,
    streak: int,
    momentum: float,
) -> Suggestion:
    """completion_rate is 0..1, momentum is the 0-21 weekly score."""
    suggester = _SUGGESTERS.get(identity_type)
    if suggester is None:
        return Suggestion("MAINTAIN", "Keep doing what you're doing.")
    return suggester(stage, completion_rate, streak, momentum)


SUGGESTION_TITLES = {
    "INCREASE_DIFFICULTY": "Level Up",
    "ADD_VARIATION": "Add Variety",
    "SHIFT_IDENTITY": "Evolve Identity",
    "TECHNIQUE_WEEK": "Refine Technique",
    "ADD_REFLECTION": "Add Reflection",
    "DEEPEN_CONTEXT": "Deepen Practice",
    "EMOTIONAL_WEEK": "Emotional Awareness",
    "SOFTER_HABIT": "Soften Habits",
    "FRICTION_REMOVAL": "Remove Friction",
    "STABILIZATION_WEEK": "Stabilize",
    "RELAPSE_PATTERN": "Pattern Analysis",
    "REST_WEEK": "Rest Week",
    "MAINTAIN": "Keep Going",
}


def suggestion_title(suggestion_type: str) -> str:
    return SUGGESTION_TITLES.get(suggestion_type, "Keep Going")


# ---------------------------------------------------------------------------
# Identity progress and branching
# ---------------------------------------------------------------------------

STAGE_BASE_PROGRESS = {
    IdentityStage.INITIATION: 0,
    IdentityStage.INTEGRATION: 25,
    IdentityStage.EXPANSION: 50,
    IdentityStage.MAINTENANCE: 75,
}

EXPECTED_WEEKS = {
    IdentityType.SKILL: {
        IdentityStage.INITIATION: 2,
        IdentityStage.INTEGRATION: 4,
        IdentityStage.EXPANSION: 6,
        IdentityStage.MAINTENANCE: 8,
    },
    IdentityType.CHARACTER: {
        IdentityStage.INITIATION: 3,
        IdentityStage.INTEGRATION: 5,
        IdentityStage.EXPANSION: 8,
        IdentityStage.MAINTENANCE: 10,
    },
    IdentityType.RECOVERY: {
        IdentityStage.INITIATION: 4,
        IdentityStage.INTEGRATION: 6,
        IdentityStage.EXPANSION: 10,
        IdentityStage.MAINTENANCE: 12,
    },
}
DEFAULT_EXPECTED_WEEKS = 4
GOOD_STATS_BONUS = 5
BRANCHING_MIN_WEEKS = 3


def compute_identity_progress(
    identity_type: Optional[IdentityType],
    stage: IdentityStage,
    weeks_in_stage: int,
    has_good_stats: bool,
) -> int:
    """Identity progress as a percentage (0-100)."""
    expected = EXPECTED_WEEKS.get(identity_type, {}).get(stage, DEFAULT_EXPECTED_WEEKS)
    within_stage = min(25.0, (weeks_in_stage / expected) * 25)
    bonus = GOOD_STATS_BONUS if has_good_stats else 0
    return min(100, int(round(STAGE_BASE_PROGRESS[stage] + within_stage + bonus)))


def detect_identity_branching(
    identity: str,
    identity_type: Optional[IdentityType],
    stage: IdentityStage,
    weeks_in_stage: int,
) -> List[str]:
    """Branching options, shown at EXPANSION after a few weeks. Empty otherwise."""
    if stage != IdentityStage.EXPANSION or weeks_in_stage < BRANCHING_MIN_WEEKS:
        return []
    if identity_type == IdentityType.CHARACTER:
        return [f"Apply {identity} in harder contexts", "Add complementary trait", "Lead by example"]
    if identity_type == IdentityType.RECOVERY:
        return ["Strengthen daily rituals", "Build support network", "Help others in recovery"]
    return [f"Deepen {identity} (Mastery path)", "Expand to related skill", f"Teach {identity} to others"]
