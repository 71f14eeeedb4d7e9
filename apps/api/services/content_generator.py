"""
Generative Content Boundary

Every piece of generated text (habit sets, daily adaptations, evolution
plans, weekly review reflections) comes through a ContentGenerator:

    GeminiContentGenerator     google-genai client, entitled users only
    TemplateContentGenerator   deterministic, always succeeds
    FallbackContentGenerator   primary first, template on GenerationError

The Gemini generator never lets a malformed response through: anything
that is not valid JSON of the expected shape raises GenerationError, which
the fallback wrapper turns into a template result. Callers therefore always
receive a structurally valid value.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from google import genai
from google.genai import types as genai_types

from core.config import settings
from core.exceptions import GenerationError
from services.entitlements import is_entitlement_valid
from services.evolution_engine import NARRATIVES
from services.habit_state import (
    AppState,
    EvolutionOptionId,
    HabitSet,
    IdentityStage,
    IdentityType,
    Persona,
    WeeklyContent,
    date_key,
    to_epoch_ms,
)
from services.habit_templates import habits_from_template
from services.reflection_templates import archetype_name, free_user_reflection

logger = logging.getLogger(__name__)

HABITS_PER_TIER = 3


class AdaptationMode(str, Enum):
    GROWTH = "GROWTH"
    STEADY = "STEADY"
    RECOVERY = "RECOVERY"


GROWTH_SCORE = 2.0
STEADY_SCORE = 1.0

ADAPTATION_TOASTS = {
    AdaptationMode.GROWTH: "Strong day yesterday. Today's habits lean a little bolder.",
    AdaptationMode.STEADY: "Steady progress. Today's habits keep the same rhythm.",
    AdaptationMode.RECOVERY: "Yesterday was light. Today's habits are gentle on purpose.",
}


@dataclass
class DailyAdaptation:
    habit_set: HabitSet
    mode: AdaptationMode
    toast: str


@dataclass
class EvolutionPlan:
    habit_set: HabitSet
    narrative: str


@dataclass
class WeeklyReviewContext:
    identity: str
    identity_type: Optional[IdentityType]
    stage: IdentityStage
    persona: Persona
    momentum_score: float
    week_key: str
    habit_set: HabitSet
    missed_habits: Dict[str, int] = field(default_factory=dict)


def adaptation_mode(yesterday_score: Optional[float]) -> AdaptationMode:
    score = yesterday_score or 0.0
    if score >= GROWTH_SCORE:
        return AdaptationMode.GROWTH
    if score >= STEADY_SCORE:
        return AdaptationMode.STEADY
    return AdaptationMode.RECOVERY


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ContentGenerator(ABC):
    """Fallible, latency-bearing content source."""

    @abstractmethod
    def generate_habit_set(self, identity: str, identity_type: Optional[IdentityType]) -> HabitSet:
        ...

    @abstractmethod
    def generate_daily_adaptation(
        self, identity: str, mode: AdaptationMode, habit_set: HabitSet
    ) -> DailyAdaptation:
        ...

    @abstractmethod
    def generate_evolution_plan(
        self,
        identity: str,
        identity_type: Optional[IdentityType],
        stage: IdentityStage,
        option_id: EvolutionOptionId,
        habit_set: HabitSet,
    ) -> EvolutionPlan:
        ...

    @abstractmethod
    def generate_weekly_review_content(self, context: WeeklyReviewContext) -> WeeklyContent:
        ...


# ---------------------------------------------------------------------------
# Template generator
# ---------------------------------------------------------------------------

class TemplateContentGenerator(ContentGenerator):
    """Deterministic local path. Used for free users and every failure."""

    def generate_habit_set(self, identity: str, identity_type: Optional[IdentityType]) -> HabitSet:
        return habits_from_template(identity, identity_type).habit_set

    def generate_daily_adaptation(
        self, identity: str, mode: AdaptationMode, habit_set: HabitSet
    ) -> DailyAdaptation:
        return DailyAdaptation(habit_set=habit_set, mode=mode, toast=ADAPTATION_TOASTS[mode])

    def generate_evolution_plan(
        self,
        identity: str,
        identity_type: Optional[IdentityType],
        stage: IdentityStage,
        option_id: EvolutionOptionId,
        habit_set: HabitSet,
    ) -> EvolutionPlan:
        return EvolutionPlan(habit_set=habit_set, narrative=NARRATIVES[option_id])

    def generate_weekly_review_content(self, context: WeeklyReviewContext) -> WeeklyContent:
        return WeeklyContent(
            reflection=free_user_reflection(context.persona, context.stage, context.identity_type),
            archetype=archetype_name(context.persona, context.identity, context.identity_type),
            narrative="",
        )


# ---------------------------------------------------------------------------
# Gemini generator
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are Bounce, a gentle identity-based habit coach.

RULES:
- Habits are tiny, concrete and doable in a few minutes.
- HIGH energy habits are the fullest version, LOW energy habits take under two minutes.
- Never shame the user. Missed days are normal.
- Respond with JSON only. No markdown, no commentary."""

HABIT_SET_SHAPE = '{"high": [3 strings], "medium": [3 strings], "low": [3 strings]}'


def _strip_fences(raw_text: str) -> str:
    text = raw_text.strip()
    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines).strip()
    return text


def _parse_json_object(raw_text: str) -> Dict[str, Any]:
    if not raw_text:
        raise GenerationError("Empty response from model")
    text = _strip_fences(raw_text)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Model returned invalid JSON: {text[:200]}") from e
    if not isinstance(parsed, dict):
        raise GenerationError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def _parse_habit_set(
    parsed: Dict[str, Any],
    progression: Optional[str],
    level: int = 0,
    novelty: Optional[Dict[str, int]] = None,
) -> HabitSet:
    tiers = {}
    for tier in ("high", "medium", "low"):
        habits = parsed.get(tier)
        if not isinstance(habits, list):
            raise GenerationError(f"Missing '{tier}' habit list")
        cleaned = [h.strip() for h in habits if isinstance(h, str) and h.strip()]
        if len(cleaned) < HABITS_PER_TIER:
            raise GenerationError(f"'{tier}' needs {HABITS_PER_TIER} habits, got {len(cleaned)}")
        tiers[tier] = cleaned[:HABITS_PER_TIER]
    return HabitSet(
        high=tiers["high"],
        medium=tiers["medium"],
        low=tiers["low"],
        level=level,
        progression=progression,
        novelty=dict(novelty or {}),
    )


def _format_habits(habit_set: HabitSet) -> str:
    return json.dumps({"high": habit_set.high, "medium": habit_set.medium, "low": habit_set.low})


class GeminiContentGenerator(ContentGenerator):
    """Gemini Flash with tightly scoped JSON prompts."""

    def __init__(self, client, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.GEMINI_MODEL

    def _call_llm(self, user_prompt: str) -> str:
        if self.client is None:
            raise GenerationError("No Gemini client configured")

        contents = [
            genai_types.Content(
                role="user",
                parts=[genai_types.Part(text=user_prompt)],
            )
        ]
        config = genai_types.GenerateContentConfig(
            system_instruction=SYSTEM_PROMPT,
            max_output_tokens=settings.GEMINI_MAX_OUTPUT_TOKENS,
            temperature=settings.GEMINI_TEMPERATURE,
        )

        start = time.monotonic()
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            )
        except Exception as e:
            raise GenerationError(f"Gemini call failed: {e}") from e
        latency_ms = int((time.monotonic() - start) * 1000)

        text = ""
        if response.candidates:
            candidate = response.candidates[0]
            if candidate.content and candidate.content.parts:
                text = candidate.content.parts[0].text or ""

        output_tokens = 0
        if getattr(response, "usage_metadata", None):
            output_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0
        logger.debug(f"Gemini responded in {latency_ms}ms ({output_tokens} output tokens)")
        return text

    def generate_habit_set(self, identity: str, identity_type: Optional[IdentityType]) -> HabitSet:
        prompt = (
            f'The user wants to become: "{identity}".\n'
            f"Identity type: {identity_type.value if identity_type else 'unknown'}.\n"
            f"Create three habits per energy tier. Respond as {HABIT_SET_SHAPE}."
        )
        parsed = _parse_json_object(self._call_llm(prompt))
        return _parse_habit_set(parsed, identity_type.value if identity_type else None)

    def generate_daily_adaptation(
        self, identity: str, mode: AdaptationMode, habit_set: HabitSet
    ) -> DailyAdaptation:
        prompt = (
            f'Identity: "{identity}". Performance mode for today: {mode.value}.\n'
            f"Current habits: {_format_habits(habit_set)}\n"
            "GROWTH: slightly bolder. STEADY: same difficulty, fresh wording. "
            "RECOVERY: gentler and smaller.\n"
            f'Respond as {{"habits": {HABIT_SET_SHAPE}, "toast": "one short encouraging sentence"}}.'
        )
        parsed = _parse_json_object(self._call_llm(prompt))
        habits = parsed.get("habits")
        if not isinstance(habits, dict):
            raise GenerationError("Missing 'habits' object")
        toast = parsed.get("toast")
        return DailyAdaptation(
            # Base wording only; the difficulty level and novelty overlay carry over
            habit_set=_parse_habit_set(
                habits, habit_set.progression, level=habit_set.level, novelty=habit_set.novelty
            ),
            mode=mode,
            toast=toast if isinstance(toast, str) and toast.strip() else ADAPTATION_TOASTS[mode],
        )

    def generate_evolution_plan(
        self,
        identity: str,
        identity_type: Optional[IdentityType],
        stage: IdentityStage,
        option_id: EvolutionOptionId,
        habit_set: HabitSet,
    ) -> EvolutionPlan:
        prompt = (
            f'Generate a weekly evolution plan.\nIdentity: "{identity}"\n'
            f"Type: {identity_type.value if identity_type else 'unknown'}\n"
            f"Stage: {stage.value}\nEvolution: {option_id.value}\n"
            f"Current habits (already adjusted for the evolution): {_format_habits(habit_set)}\n"
            f'Respond as {{"habits": {HABIT_SET_SHAPE}, "narrative": "two sentences"}}.'
        )
        parsed = _parse_json_object(self._call_llm(prompt))
        habits = parsed.get("habits")
        narrative = parsed.get("narrative")
        if not isinstance(habits, dict) or not isinstance(narrative, str) or not narrative.strip():
            raise GenerationError("Evolution plan missing habits or narrative")
        return EvolutionPlan(
            habit_set=_parse_habit_set(
                habits, habit_set.progression, level=habit_set.level, novelty=habit_set.novelty
            ),
            narrative=narrative.strip(),
        )

    def generate_weekly_review_content(self, context: WeeklyReviewContext) -> WeeklyContent:
        missed = ", ".join(f"{name} ({count}x)" for name, count in context.missed_habits.items()) or "none"
        prompt = (
            f'Weekly review for someone becoming "{context.identity}".\n'
            f"Stage: {context.stage.value}. Persona: {context.persona.value}. "
            f"Momentum: {context.momentum_score:.1f}/21.\n"
            f"Most missed habits: {missed}\n"
            'Respond as {"reflection": "2-3 sentences", "archetype": "The <Adjective> <Noun>", '
            '"narrative": "one sentence about next week"}.'
        )
        parsed = _parse_json_object(self._call_llm(prompt))
        reflection = parsed.get("reflection")
        archetype = parsed.get("archetype")
        if not isinstance(reflection, str) or not reflection.strip():
            raise GenerationError("Weekly content missing reflection")
        if not isinstance(archetype, str) or not archetype.strip():
            raise GenerationError("Weekly content missing archetype")
        narrative = parsed.get("narrative")
        return WeeklyContent(
            reflection=reflection.strip(),
            archetype=archetype.strip(),
            narrative=narrative.strip() if isinstance(narrative, str) else "",
        )


# ---------------------------------------------------------------------------
# Fallback wrapper
# ---------------------------------------------------------------------------

class FallbackContentGenerator(ContentGenerator):
    """Primary generator with a deterministic fallback for every call."""

    def __init__(self, primary: ContentGenerator, fallback: Optional[ContentGenerator] = None):
        self.primary = primary
        self.fallback = fallback or TemplateContentGenerator()

    def _attempt(self, operation: str, *args):
        try:
            return getattr(self.primary, operation)(*args)
        except GenerationError as e:
            logger.warning(f"{operation} failed, using template fallback: {e}")
            return getattr(self.fallback, operation)(*args)

    def generate_habit_set(self, identity, identity_type):
        return self._attempt("generate_habit_set", identity, identity_type)

    def generate_daily_adaptation(self, identity, mode, habit_set):
        return self._attempt("generate_daily_adaptation", identity, mode, habit_set)

    def generate_evolution_plan(self, identity, identity_type, stage, option_id, habit_set):
        return self._attempt("generate_evolution_plan", identity, identity_type, stage, option_id, habit_set)

    def generate_weekly_review_content(self, context):
        return self._attempt("generate_weekly_review_content", context)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def get_gemini_client():
    """Gemini client instance, or None if no API key is configured."""
    if not settings.GOOGLE_API_KEY:
        return None
    return genai.Client(api_key=settings.GOOGLE_API_KEY)


def generator_for(state: AppState, now: datetime, client=None) -> ContentGenerator:
    """Entitled users get Gemini with a template fallback; everyone else templates."""
    if not is_entitlement_valid(state.entitlement, to_epoch_ms(now)):
        return TemplateContentGenerator()
    client = client if client is not None else get_gemini_client()
    if client is None:
        logger.info("Premium user but no Gemini client configured; using templates")
        return TemplateContentGenerator()
    return FallbackContentGenerator(GeminiContentGenerator(client))


def yesterday_score(state: AppState, now: datetime) -> Optional[float]:
    log = state.history.get(date_key(now - timedelta(days=1)))
    return log.daily_score if log else None


def weekly_review_context(state: AppState, persona: Persona, momentum: float, week_key: str,
                          missed_habits: Optional[Dict[str, int]] = None) -> WeeklyReviewContext:
    return WeeklyReviewContext(
        identity=state.identity,
        identity_type=state.identity_profile.type,
        stage=state.identity_profile.stage,
        persona=persona,
        momentum_score=momentum,
        week_key=week_key,
        habit_set=state.habit_set,
        missed_habits=dict(missed_habits or {}),
    )
