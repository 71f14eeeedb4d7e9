"""
Habit State Model

The single application-state object the rules engine operates on, plus
the value types it is made of:

    HabitSet         three ordered habit lists keyed by energy tier
    DailyLog         one calendar date of completions (names are authoritative)
    ResilienceState  score / status / streak / shields
    UndoSnapshot     single-slot capture taken before a completion
    IdentityProfile  identity type + stage clock
    WeeklyReview     NoReviewPending | ReviewDrafted | ReviewSealed
    AppState         everything above plus sync bookkeeping

Engine functions never mutate an AppState in place: they clone, change the
clone, and return it. The command surface (habit_store) swaps the whole
object in one assignment.

Persistence shapes:
    to_profile_document()   profile-scope document (no history)
    day_log_documents()     one sub-document per date
    to_local_dict()         local durable blob (profile + history)
The weekly review travels with the profile so a pending draft survives a
restart together with the counters it committed. The undo slot is
ephemeral and never persisted.
"""

import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from services.progression_tables import render_habit


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EnergyTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResilienceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BOUNCED = "BOUNCED"
    CRACKED = "CRACKED"
    RECOVERING = "RECOVERING"
    FROZEN = "FROZEN"


class IdentityType(str, Enum):
    SKILL = "SKILL"
    CHARACTER = "CHARACTER"
    RECOVERY = "RECOVERY"


class IdentityStage(str, Enum):
    INITIATION = "INITIATION"
    INTEGRATION = "INTEGRATION"
    EXPANSION = "EXPANSION"
    MAINTENANCE = "MAINTENANCE"


STAGE_ORDER = [
    IdentityStage.INITIATION,
    IdentityStage.INTEGRATION,
    IdentityStage.EXPANSION,
    IdentityStage.MAINTENANCE,
]


class Persona(str, Enum):
    TITAN = "TITAN"
    GRINDER = "GRINDER"
    SURVIVOR = "SURVIVOR"
    GHOST = "GHOST"


class EvolutionOptionId(str, Enum):
    INCREASE_DIFFICULTY = "INCREASE_DIFFICULTY"
    ADD_VARIATION = "ADD_VARIATION"
    TECHNIQUE_WEEK = "TECHNIQUE_WEEK"
    MAINTAIN = "MAINTAIN"
    SOFTER_HABIT = "SOFTER_HABIT"
    STABILIZATION_WEEK = "STABILIZATION_WEEK"
    FRESH_START = "FRESH_START"
    FRICTION_REMOVAL = "FRICTION_REMOVAL"
    REST_WEEK = "REST_WEEK"
    CHANGE_IDENTITY = "CHANGE_IDENTITY"


class DifficultyLevel(str, Enum):
    HARDER = "harder"
    EASIER = "easier"
    MINIMAL = "minimal"
    SAME = "same"


class MaintenancePath(str, Enum):
    DEEPEN = "DEEPEN"
    EVOLVE = "EVOLVE"
    RESTART = "RESTART"


TIER_ORDER = [EnergyTier.HIGH, EnergyTier.MEDIUM, EnergyTier.LOW]

INITIAL_RESILIENCE_SCORE = 50
MAX_RESILIENCE_SCORE = 100
MAX_SHIELDS = 3


def date_key(value: Union[date, datetime]) -> str:
    """Calendar-date key (YYYY-MM-DD) in the capture time zone."""
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def to_epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _enum_or_none(enum_cls, value):
    if value is None or value == "":
        return None
    return enum_cls(value)


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Habit set
# ---------------------------------------------------------------------------

@dataclass
class HabitSet:
    """
    Base habit text per tier plus two overlays that change wording only:
    a difficulty level (rendered through the per-type progression table)
    and a novelty map "tier:index" -> variant index.
    """
    high: List[str] = field(default_factory=list)
    medium: List[str] = field(default_factory=list)
    low: List[str] = field(default_factory=list)
    level: int = 0
    progression: Optional[str] = None
    novelty: Dict[str, int] = field(default_factory=dict)

    def base(self, tier: EnergyTier) -> List[str]:
        return getattr(self, tier.value)

    def display(self, tier: EnergyTier) -> List[str]:
        """Habit text as the user sees it today."""
        return [
            render_habit(
                text,
                level=self.level,
                progression=self.progression,
                variant=self.novelty.get(f"{tier.value}:{idx}", 0),
            )
            for idx, text in enumerate(self.base(tier))
        ]

    def habit_name(self, tier: EnergyTier, index: int) -> Optional[str]:
        names = self.display(tier)
        if 0 <= index < len(names):
            return names[index]
        return None

    def is_complete(self) -> bool:
        return all(len(self.base(t)) > 0 for t in TIER_ORDER)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "high": list(self.high),
            "medium": list(self.medium),
            "low": list(self.low),
            "level": self.level,
            "progression": self.progression,
            "novelty": dict(self.novelty),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HabitSet":
        data = data or {}
        return cls(
            high=list(data.get("high") or []),
            medium=list(data.get("medium") or []),
            low=list(data.get("low") or []),
            level=int(data.get("level", 0)),
            progression=data.get("progression"),
            novelty={k: int(v) for k, v in (data.get("novelty") or {}).items()},
        )


# ---------------------------------------------------------------------------
# Daily log
# ---------------------------------------------------------------------------

@dataclass
class DailyLog:
    date: str
    completed_indices: List[int] = field(default_factory=list)
    # Authoritative for retrospective scoring; survives habit set regeneration
    completed_habit_names: List[str] = field(default_factory=list)
    energy: Optional[EnergyTier] = None
    note: Optional[str] = None
    intention: Optional[str] = None
    daily_score: Optional[float] = None

    def has_completions(self) -> bool:
        return bool(self.completed_indices or self.completed_habit_names)

    def completion_count(self) -> int:
        return max(len(self.completed_indices), len(self.completed_habit_names))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "completed_indices": list(self.completed_indices),
            "completed_habit_names": list(self.completed_habit_names),
            "energy": self.energy.value if self.energy else None,
            "note": self.note,
            "intention": self.intention,
            "daily_score": self.daily_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyLog":
        score = data.get("daily_score")
        return cls(
            date=data["date"],
            completed_indices=[int(i) for i in data.get("completed_indices") or []],
            completed_habit_names=list(data.get("completed_habit_names") or []),
            energy=_enum_or_none(EnergyTier, data.get("energy")),
            note=data.get("note"),
            intention=data.get("intention"),
            daily_score=float(score) if score is not None else None,
        )


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

@dataclass
class ResilienceState:
    score: int = INITIAL_RESILIENCE_SCORE
    status: ResilienceStatus = ResilienceStatus.ACTIVE
    streak: int = 0
    shields: int = 0
    total_completions: int = 0
    last_completed_at: Optional[datetime] = None
    is_frozen: bool = False
    freeze_expiry: Optional[datetime] = None
    recovery_mode: bool = False
    missed_yesterday: bool = False
    # Idempotency key for missed-day detection
    last_missed_date: Optional[str] = None
    # Day a remedy or lifted freeze restarted the missed-day clock
    gap_anchor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "status": self.status.value,
            "streak": self.streak,
            "shields": self.shields,
            "total_completions": self.total_completions,
            "last_completed_at": _iso_or_none(self.last_completed_at),
            "is_frozen": self.is_frozen,
            "freeze_expiry": _iso_or_none(self.freeze_expiry),
            "recovery_mode": self.recovery_mode,
            "missed_yesterday": self.missed_yesterday,
            "last_missed_date": self.last_missed_date,
            "gap_anchor": self.gap_anchor,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResilienceState":
        data = data or {}
        return cls(
            score=int(data.get("score", INITIAL_RESILIENCE_SCORE)),
            status=ResilienceStatus(data.get("status", ResilienceStatus.ACTIVE.value)),
            streak=int(data.get("streak", 0)),
            shields=int(data.get("shields", 0)),
            total_completions=int(data.get("total_completions", 0)),
            last_completed_at=_parse_dt(data.get("last_completed_at")),
            is_frozen=bool(data.get("is_frozen", False)),
            freeze_expiry=_parse_dt(data.get("freeze_expiry")),
            recovery_mode=bool(data.get("recovery_mode", False)),
            missed_yesterday=bool(data.get("missed_yesterday", False)),
            last_missed_date=data.get("last_missed_date"),
            gap_anchor=data.get("gap_anchor"),
        )


@dataclass
class UndoSnapshot:
    """Pre-completion capture. One slot, consumed by a single undo."""
    date: str
    resilience: ResilienceState
    completed_indices: List[int]
    log: Optional[DailyLog]


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

@dataclass
class IdentityProfile:
    type: Optional[IdentityType] = None
    stage: IdentityStage = IdentityStage.INITIATION
    stage_entered_at: Optional[str] = None
    weeks_in_stage: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value if self.type else None,
            "stage": self.stage.value,
            "stage_entered_at": self.stage_entered_at,
            "weeks_in_stage": self.weeks_in_stage,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IdentityProfile":
        data = data or {}
        return cls(
            type=_enum_or_none(IdentityType, data.get("type")),
            stage=IdentityStage(data.get("stage", IdentityStage.INITIATION.value)),
            stage_entered_at=data.get("stage_entered_at"),
            weeks_in_stage=int(data.get("weeks_in_stage", 0)),
        )


# ---------------------------------------------------------------------------
# Weekly review read-model
# ---------------------------------------------------------------------------

@dataclass
class WeeklyStats:
    week_start: str
    days_active: int
    score_sum: float
    zero_count: int
    high_energy_days: int
    total_completions: int

    @property
    def completion_rate(self) -> float:
        """Share of the 7 days with at least one completion (0..1)."""
        return self.days_active / 7

    @property
    def had_zero_day(self) -> bool:
        return self.zero_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week_start": self.week_start,
            "days_active": self.days_active,
            "score_sum": self.score_sum,
            "zero_count": self.zero_count,
            "high_energy_days": self.high_energy_days,
            "total_completions": self.total_completions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeeklyStats":
        return cls(
            week_start=data["week_start"],
            days_active=int(data.get("days_active", 0)),
            score_sum=float(data.get("score_sum", 0.0)),
            zero_count=int(data.get("zero_count", 0)),
            high_energy_days=int(data.get("high_energy_days", 0)),
            total_completions=int(data.get("total_completions", 0)),
        )


@dataclass
class EvolutionImpact:
    difficulty: DifficultyLevel = DifficultyLevel.SAME
    stage_change: Optional[IdentityStage] = None
    is_fresh_start: bool = False


@dataclass
class EvolutionOption:
    id: EvolutionOptionId
    title: str
    description: str
    impact: EvolutionImpact = field(default_factory=EvolutionImpact)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "title": self.title,
            "description": self.description,
            "difficulty": self.impact.difficulty.value,
            "stage_change": self.impact.stage_change.value if self.impact.stage_change else None,
            "is_fresh_start": self.impact.is_fresh_start,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvolutionOption":
        return cls(
            id=EvolutionOptionId(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
            impact=EvolutionImpact(
                difficulty=DifficultyLevel(data.get("difficulty") or DifficultyLevel.SAME.value),
                stage_change=_enum_or_none(IdentityStage, data.get("stage_change")),
                is_fresh_start=bool(data.get("is_fresh_start", False)),
            ),
        )


@dataclass
class StageDecision:
    """Outcome of stage gating for one review."""
    auto_promoted_to: Optional[IdentityStage] = None
    regressed_to: Optional[IdentityStage] = None
    suggested_stage: Optional[IdentityStage] = None
    message: str = ""
    resonance_statements: List[str] = field(default_factory=list)
    accepted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_promoted_to": self.auto_promoted_to.value if self.auto_promoted_to else None,
            "regressed_to": self.regressed_to.value if self.regressed_to else None,
            "suggested_stage": self.suggested_stage.value if self.suggested_stage else None,
            "message": self.message,
            "resonance_statements": list(self.resonance_statements),
            "accepted": self.accepted,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StageDecision":
        data = data or {}
        return cls(
            auto_promoted_to=_enum_or_none(IdentityStage, data.get("auto_promoted_to")),
            regressed_to=_enum_or_none(IdentityStage, data.get("regressed_to")),
            suggested_stage=_enum_or_none(IdentityStage, data.get("suggested_stage")),
            message=data.get("message") or "",
            resonance_statements=list(data.get("resonance_statements") or []),
            accepted=bool(data.get("accepted", False)),
        )


@dataclass
class WeeklyContent:
    reflection: str
    archetype: str
    narrative: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"reflection": self.reflection, "archetype": self.archetype, "narrative": self.narrative}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["WeeklyContent"]:
        if not data:
            return None
        return cls(
            reflection=data.get("reflection") or "",
            archetype=data.get("archetype") or "",
            narrative=data.get("narrative") or "",
        )


@dataclass
class Suggestion:
    type: str
    message: str


@dataclass
class NoReviewPending:
    pass


@dataclass
class ReviewDrafted:
    week_key: str
    generated_on: str
    stats: List[WeeklyStats]
    momentum_score: float
    persona: Persona
    missed_habits: Dict[str, int]
    options: List[EvolutionOption]
    stage_decision: StageDecision
    suggestion: Optional[Suggestion] = None
    identity_progress: int = 0
    branching_options: List[str] = field(default_factory=list)
    maintenance_complete: bool = False
    maintenance_paths: List[MaintenancePath] = field(default_factory=list)
    novelty_due: bool = False
    ghost_weeks: int = 0
    overreach_count: int = 0
    content: Optional[WeeklyContent] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": "drafted",
            "week_key": self.week_key,
            "generated_on": self.generated_on,
            "stats": [s.to_dict() for s in self.stats],
            "momentum_score": self.momentum_score,
            "persona": self.persona.value,
            "missed_habits": dict(self.missed_habits),
            "options": [o.to_dict() for o in self.options],
            "stage_decision": self.stage_decision.to_dict(),
            "suggestion": (
                {"type": self.suggestion.type, "message": self.suggestion.message}
                if self.suggestion else None
            ),
            "identity_progress": self.identity_progress,
            "branching_options": list(self.branching_options),
            "maintenance_complete": self.maintenance_complete,
            "maintenance_paths": [p.value for p in self.maintenance_paths],
            "novelty_due": self.novelty_due,
            "ghost_weeks": self.ghost_weeks,
            "overreach_count": self.overreach_count,
            "content": self.content.to_dict() if self.content else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewDrafted":
        suggestion = data.get("suggestion")
        return cls(
            week_key=data["week_key"],
            generated_on=data["generated_on"],
            stats=[WeeklyStats.from_dict(s) for s in data.get("stats") or []],
            momentum_score=float(data.get("momentum_score", 0.0)),
            persona=Persona(data["persona"]),
            missed_habits={k: int(v) for k, v in (data.get("missed_habits") or {}).items()},
            options=[EvolutionOption.from_dict(o) for o in data.get("options") or []],
            stage_decision=StageDecision.from_dict(data.get("stage_decision")),
            suggestion=Suggestion(suggestion["type"], suggestion["message"]) if suggestion else None,
            identity_progress=int(data.get("identity_progress", 0)),
            branching_options=list(data.get("branching_options") or []),
            maintenance_complete=bool(data.get("maintenance_complete", False)),
            maintenance_paths=[MaintenancePath(p) for p in data.get("maintenance_paths") or []],
            novelty_due=bool(data.get("novelty_due", False)),
            ghost_weeks=int(data.get("ghost_weeks", 0)),
            overreach_count=int(data.get("overreach_count", 0)),
            content=WeeklyContent.from_dict(data.get("content")),
        )


@dataclass
class ReviewSealed:
    week_key: str
    sealed_on: str
    chosen_option: Optional[EvolutionOptionId] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": "sealed",
            "week_key": self.week_key,
            "sealed_on": self.sealed_on,
            "chosen_option": self.chosen_option.value if self.chosen_option else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReviewSealed":
        return cls(
            week_key=data["week_key"],
            sealed_on=data["sealed_on"],
            chosen_option=_enum_or_none(EvolutionOptionId, data.get("chosen_option")),
        )


WeeklyReview = Union[NoReviewPending, ReviewDrafted, ReviewSealed]


def weekly_review_to_dict(review: WeeklyReview) -> Optional[Dict[str, Any]]:
    if isinstance(review, (ReviewDrafted, ReviewSealed)):
        return review.to_dict()
    return None


def weekly_review_from_dict(data: Optional[Dict[str, Any]]) -> WeeklyReview:
    phase = (data or {}).get("phase")
    if phase == "drafted":
        return ReviewDrafted.from_dict(data)
    if phase == "sealed":
        return ReviewSealed.from_dict(data)
    return NoReviewPending()


@dataclass
class EvolutionTracker:
    """Counters the classifier and evolution engine carry between weeks."""
    consecutive_increases: int = 0
    last_option_id: Optional[EvolutionOptionId] = None
    last_persona: Optional[Persona] = None
    consecutive_ghost_weeks: int = 0
    consecutive_overreach: int = 0
    review_cycle: int = 0
    last_novelty_cycle: Optional[int] = None
    reviews_since_novelty: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutive_increases": self.consecutive_increases,
            "last_option_id": self.last_option_id.value if self.last_option_id else None,
            "last_persona": self.last_persona.value if self.last_persona else None,
            "consecutive_ghost_weeks": self.consecutive_ghost_weeks,
            "consecutive_overreach": self.consecutive_overreach,
            "review_cycle": self.review_cycle,
            "last_novelty_cycle": self.last_novelty_cycle,
            "reviews_since_novelty": self.reviews_since_novelty,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EvolutionTracker":
        data = data or {}
        return cls(
            consecutive_increases=int(data.get("consecutive_increases", 0)),
            last_option_id=_enum_or_none(EvolutionOptionId, data.get("last_option_id")),
            last_persona=_enum_or_none(Persona, data.get("last_persona")),
            consecutive_ghost_weeks=int(data.get("consecutive_ghost_weeks", 0)),
            consecutive_overreach=int(data.get("consecutive_overreach", 0)),
            review_cycle=int(data.get("review_cycle", 0)),
            last_novelty_cycle=data.get("last_novelty_cycle"),
            reviews_since_novelty=int(data.get("reviews_since_novelty", 0)),
        )


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------

@dataclass
class Entitlement:
    is_premium: bool = False
    expiry: Optional[int] = None  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"is_premium": self.is_premium, "expiry": self.expiry}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Entitlement":
        data = data or {}
        expiry = data.get("expiry")
        return cls(
            is_premium=bool(data.get("is_premium", False)),
            expiry=int(expiry) if expiry is not None else None,
        )


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------

@dataclass
class AppState:
    user_id: str = ""
    identity: str = ""
    habit_set: HabitSet = field(default_factory=HabitSet)
    current_energy: Optional[EnergyTier] = None
    onboarding_complete: bool = False

    resilience: ResilienceState = field(default_factory=ResilienceState)
    daily_completed_indices: List[int] = field(default_factory=list)
    history: Dict[str, DailyLog] = field(default_factory=dict)

    identity_profile: IdentityProfile = field(default_factory=IdentityProfile)
    last_weekly_review_date: Optional[str] = None
    evolution: EvolutionTracker = field(default_factory=EvolutionTracker)

    entitlement: Entitlement = field(default_factory=Entitlement)
    has_ever_been_premium: bool = False

    preferences: Dict[str, Any] = field(default_factory=dict)
    last_rollover_date: Optional[str] = None
    last_adaptation_date: Optional[str] = None
    last_updated: int = 0

    weekly_review: WeeklyReview = field(default_factory=NoReviewPending)

    # Ephemeral
    undo: Optional[UndoSnapshot] = None

    def clone(self) -> "AppState":
        return copy.deepcopy(self)

    def bump(self, now: datetime) -> None:
        """Advance the logical timestamp; strictly monotonic per replica."""
        self.last_updated = max(to_epoch_ms(now), self.last_updated + 1)

    def today_indices(self, now: datetime) -> List[int]:
        last = self.resilience.last_completed_at
        if last is None or date_key(last) != date_key(now):
            return []
        return list(self.daily_completed_indices)

    def active_tier(self) -> EnergyTier:
        return self.current_energy or EnergyTier.HIGH

    # -- persistence -------------------------------------------------------

    def to_profile_document(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "identity": self.identity,
            "habit_set": self.habit_set.to_dict(),
            "current_energy": self.current_energy.value if self.current_energy else None,
            "onboarding_complete": self.onboarding_complete,
            "resilience": self.resilience.to_dict(),
            "daily_completed_indices": list(self.daily_completed_indices),
            "identity_profile": self.identity_profile.to_dict(),
            "last_weekly_review_date": self.last_weekly_review_date,
            "evolution": self.evolution.to_dict(),
            "entitlement": self.entitlement.to_dict(),
            "has_ever_been_premium": self.has_ever_been_premium,
            "preferences": copy.deepcopy(self.preferences),
            "last_rollover_date": self.last_rollover_date,
            "last_adaptation_date": self.last_adaptation_date,
            "weekly_review": weekly_review_to_dict(self.weekly_review),
            "last_updated": self.last_updated,
        }

    def day_log_documents(self, dates: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        keys = self.history.keys() if dates is None else [d for d in dates if d in self.history]
        return {k: self.history[k].to_dict() for k in sorted(keys)}

    def to_local_dict(self) -> Dict[str, Any]:
        data = self.to_profile_document()
        data["history"] = self.day_log_documents()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppState":
        energy = data.get("current_energy")
        return cls(
            user_id=data.get("user_id") or "",
            identity=data.get("identity") or "",
            habit_set=HabitSet.from_dict(data.get("habit_set")),
            current_energy=_enum_or_none(EnergyTier, energy),
            onboarding_complete=bool(data.get("onboarding_complete", False)),
            resilience=ResilienceState.from_dict(data.get("resilience")),
            daily_completed_indices=[int(i) for i in data.get("daily_completed_indices") or []],
            history={
                k: DailyLog.from_dict(v) for k, v in (data.get("history") or {}).items()
            },
            identity_profile=IdentityProfile.from_dict(data.get("identity_profile")),
            last_weekly_review_date=data.get("last_weekly_review_date"),
            evolution=EvolutionTracker.from_dict(data.get("evolution")),
            entitlement=Entitlement.from_dict(data.get("entitlement")),
            has_ever_been_premium=bool(data.get("has_ever_been_premium", False)),
            preferences=copy.deepcopy(data.get("preferences") or {}),
            last_rollover_date=data.get("last_rollover_date"),
            last_adaptation_date=data.get("last_adaptation_date"),
            last_updated=int(data.get("last_updated", 0)),
            weekly_review=weekly_review_from_dict(data.get("weekly_review")),
        )

    @classmethod
    def from_remote(
        cls, profile: Dict[str, Any], day_logs: Dict[str, Dict[str, Any]]
    ) -> "AppState":
        data = dict(profile)
        data["history"] = day_logs
        return cls.from_dict(data)
