"""
Habit Store

The single command surface over the application state. Every mutation
follows the same path:

    1. run a pure engine function on the current AppState (it returns a new one)
    2. bump last_updated and persist the new state locally
    3. swap it in with one assignment
    4. mark changed day logs dirty and ask the synchronizer to push

A command that raises leaves the previous state in place, so no reader
ever observes a half-applied change. Commands are expected to be called
from one owner (single writer per replica).
"""

import copy
import json
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set

from core.config import settings
from core.exceptions import HabitEngineError, NoPendingReviewError, OnboardingRequiredError
from services import progress_ledger, resilience_engine, stage_classifier
from services.content_generator import (
    ContentGenerator,
    adaptation_mode,
    generator_for,
    weekly_review_context,
    yesterday_score,
)
from services.entitlements import check_local_expiry, is_entitlement_valid, set_entitlement
from services.evolution_engine import EvolutionEffects, apply_evolution_option
from services.habit_state import (
    AppState,
    Entitlement,
    EnergyTier,
    EvolutionOptionId,
    IdentityProfile,
    IdentityStage,
    MaintenancePath,
    NoReviewPending,
    ReviewDrafted,
    date_key,
    to_epoch_ms,
)
from services.identity_detector import detect_identity_type
from services.local_storage import LocalStorage
from services.progress_ledger import Badge
from services.replica_sync import ReplicaSynchronizer
from services.resilience_engine import RecoveryOption
from services.weekly_review_cache import (
    invalidate_weekly_content,
    read_weekly_content,
    write_weekly_content,
)

logger = logging.getLogger(__name__)

GeneratorFactory = Callable[[AppState, datetime], ContentGenerator]


def _changed_dates(old: AppState, new: AppState) -> Set[str]:
    keys = set(old.history) | set(new.history)
    return {k for k in keys if old.history.get(k) != new.history.get(k)}


class HabitStore:
    """
    Args:
        storage: local durable key-value storage
        synchronizer: remote replica sync, or None for a local-only store
        generator_factory: picks the content generator for a state (defaults
            to Gemini for entitled users, templates otherwise)
        cache_client: Redis client for weekly review content (None = default client)
        clock: wall clock used when a command is called without `now`
    """

    def __init__(
        self,
        storage: LocalStorage,
        synchronizer: Optional[ReplicaSynchronizer] = None,
        generator_factory: Optional[GeneratorFactory] = None,
        cache_client=None,
        storage_key: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
        user_id: str = "",
    ):
        self.storage = storage
        self.synchronizer = synchronizer
        self.generator_factory = generator_factory or generator_for
        self.cache_client = cache_client
        self.storage_key = storage_key or settings.LOCAL_STATE_KEY
        self.clock = clock
        self.user_id = user_id or (synchronizer.user_id if synchronizer else "")
        self.state = AppState(user_id=self.user_id)
        self.last_toast: Optional[str] = None

    # -- plumbing ------------------------------------------------------------

    def snapshot(self) -> AppState:
        return self.state

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self.clock()

    def _replace_state(self, new_state: AppState) -> None:
        """Persist then swap. No bump: used for states that came from elsewhere."""
        self.storage.set(self.storage_key, new_state.to_local_dict())
        self.state = new_state

    def _commit(self, new_state: AppState, now: datetime) -> AppState:
        if new_state is self.state:
            return self.state
        dirty = _changed_dates(self.state, new_state)
        new_state.bump(now)
        self._replace_state(new_state)
        if self.synchronizer is not None:
            self.synchronizer.mark_dirty(dirty)
            self.synchronizer.request_push(self.snapshot)
        return self.state

    def _commit_sealed(self, new_state: AppState, review: ReviewDrafted, now: datetime) -> AppState:
        committed = self._commit(new_state, now)
        # A sealed week never redrafts
        invalidate_weekly_content(committed.user_id, review.week_key, client=self.cache_client)
        return committed

    def _require_onboarding(self) -> None:
        if not self.state.onboarding_complete:
            raise OnboardingRequiredError("Complete onboarding first")

    def _generator(self, state: AppState, now: datetime) -> ContentGenerator:
        return self.generator_factory(state, now)

    # -- lifecycle -----------------------------------------------------------

    def load(self, now: Optional[datetime] = None) -> AppState:
        """Hydrate from local storage, then reconcile with the remote replica."""
        now = self._now(now)
        data = self.storage.get(self.storage_key)
        if data:
            state = AppState.from_dict(data)
            state.user_id = state.user_id or self.user_id
        else:
            state = AppState(user_id=self.user_id)
        self.state = state
        logger.info(f"Loaded local state for {state.user_id or 'local user'} (last_updated={state.last_updated})")
        self._reconcile(now)
        return self.state

    def _reconcile(self, now: datetime) -> None:
        if self.synchronizer is None:
            return
        self.synchronizer.reconcile(
            self.state, now, adopt=self._replace_state, snapshot_provider=self.snapshot
        )

    def pull(self, now: Optional[datetime] = None) -> AppState:
        if self.synchronizer is None:
            return self.state
        pulled = self.synchronizer.pull(self.state)
        if pulled is not self.state:
            self._replace_state(pulled)
        return self.state

    def check_in(self, now: Optional[datetime] = None) -> AppState:
        """
        App-open / periodic processing. Idempotent per calendar day:
        rollover, local entitlement expiry, missed-day detection, the
        entitled daily adaptation and the weekly review draft.
        """
        now = self._now(now)
        if self.synchronizer is not None and not self.synchronizer.initial_load_complete:
            self._reconcile(now)

        state = progress_ledger.ensure_habit_set(self.state)
        state, is_new_day = progress_ledger.rollover_day(state, now)

        checked = check_local_expiry(state.entitlement, to_epoch_ms(now))
        if checked != state.entitlement:
            logger.info(
                f"Premium expired locally for {state.user_id or 'local user'}",
                extra={"user_id": state.user_id or None},
            )
            state = set_entitlement(state, checked, grant_bonus=False)

        state = resilience_engine.detect_missed_day(state, now)

        if is_new_day:
            state = self._daily_adaptation(state, now)

        if stage_classifier.should_run_review(state, now):
            state = self._draft_weekly_review(state, now)

        return self._commit(state, now)

    def _daily_adaptation(self, state: AppState, now: datetime) -> AppState:
        today = date_key(now)
        if (
            not state.onboarding_complete
            or state.last_adaptation_date == today
            or not is_entitlement_valid(state.entitlement, to_epoch_ms(now))
        ):
            return state
        mode = adaptation_mode(yesterday_score(state, now))
        adaptation = self._generator(state, now).generate_daily_adaptation(state.identity, mode, state.habit_set)
        new_state = state.clone()
        new_state.habit_set = adaptation.habit_set
        new_state.last_adaptation_date = today
        self.last_toast = adaptation.toast
        logger.info(f"Daily adaptation applied ({mode.value})")
        return new_state

    def _draft_weekly_review(self, state: AppState, now: datetime) -> AppState:
        draft = stage_classifier.classify_week(state, now)
        content = read_weekly_content(state.user_id, draft.week_key, client=self.cache_client)
        if content is None:
            context = weekly_review_context(
                state, draft.persona, draft.momentum_score, draft.week_key, draft.missed_habits
            )
            content = self._generator(state, now).generate_weekly_review_content(context)
            write_weekly_content(state.user_id, draft.week_key, content, client=self.cache_client)
        draft.content = content
        return stage_classifier.apply_review_draft(state, draft, now)

    # -- onboarding ----------------------------------------------------------

    def complete_onboarding(self, identity: str, now: Optional[datetime] = None) -> AppState:
        now = self._now(now)
        identity = (identity or "").strip()
        if not identity:
            raise HabitEngineError("An identity is required")

        identity_type = detect_identity_type(identity)
        habit_set = self._generator(self.state, now).generate_habit_set(identity, identity_type)

        new_state = self.state.clone()
        new_state.identity = identity
        new_state.habit_set = habit_set
        new_state.onboarding_complete = True
        new_state.identity_profile = IdentityProfile(
            type=identity_type,
            stage=IdentityStage.INITIATION,
            stage_entered_at=date_key(now),
        )
        new_state.weekly_review = NoReviewPending()
        logger.info(
            f"Onboarding complete: '{identity}' ({identity_type.value if identity_type else 'untyped'})"
        )
        return self._commit(new_state, now)

    # -- daily habits --------------------------------------------------------

    def record_completion(self, habit_index: int, now: Optional[datetime] = None) -> bool:
        now = self._now(now)
        self._require_onboarding()
        new_state, accepted = progress_ledger.record_completion(self.state, habit_index, now)
        if accepted:
            self._commit(new_state, now)
        return accepted

    def undo(self, now: Optional[datetime] = None) -> bool:
        now = self._now(now)
        new_state, restored = resilience_engine.undo_last_completion(self.state)
        if restored:
            self._commit(new_state, now)
        return restored

    def set_energy_level(self, tier: EnergyTier, now: Optional[datetime] = None) -> AppState:
        return self._commit(progress_ledger.set_energy_level(self.state, tier), self._now(now))

    def log_reflection(
        self, day: str, energy: Optional[EnergyTier], note: Optional[str], now: Optional[datetime] = None
    ) -> AppState:
        return self._commit(progress_ledger.log_reflection(self.state, day, energy, note), self._now(now))

    def set_daily_intention(self, day: str, intention: str, now: Optional[datetime] = None) -> AppState:
        return self._commit(progress_ledger.set_daily_intention(self.state, day, intention), self._now(now))

    def today_habits(self) -> List[str]:
        return self.state.habit_set.display(self.state.active_tier())

    def badges(self) -> List[Badge]:
        return progress_ledger.earned_badges(self.state.resilience.total_completions)

    def repair_daily_scores(self, dates: List[str], now: Optional[datetime] = None) -> List[str]:
        now = self._now(now)
        new_state, repaired = progress_ledger.repair_daily_scores(self.state, dates, now)
        self._commit(new_state, now)
        return repaired

    # -- resilience ----------------------------------------------------------

    def toggle_freeze(self, active: bool, now: Optional[datetime] = None) -> AppState:
        now = self._now(now)
        return self._commit(resilience_engine.toggle_freeze(self.state, active, now), now)

    def activate_recovery_mode(self, now: Optional[datetime] = None) -> AppState:
        return self._commit(resilience_engine.activate_recovery_mode(self.state), self._now(now))

    def apply_recovery_option(self, option: RecoveryOption, now: Optional[datetime] = None) -> AppState:
        now = self._now(now)
        return self._commit(resilience_engine.apply_recovery_option(self.state, option, now), now)

    # -- weekly review -------------------------------------------------------

    def _pending_review(self) -> ReviewDrafted:
        review = self.state.weekly_review
        if not isinstance(review, ReviewDrafted):
            raise NoPendingReviewError("No weekly review is waiting for a decision")
        return review

    def accept_stage_promotion(self, affirmed: List[str], now: Optional[datetime] = None) -> AppState:
        now = self._now(now)
        return self._commit(stage_classifier.accept_stage_promotion(self.state, affirmed, now), now)

    def dismiss_stage_suggestion(self, now: Optional[datetime] = None) -> AppState:
        return self._commit(stage_classifier.dismiss_stage_suggestion(self.state), self._now(now))

    def choose_evolution_option(
        self, option_id: EvolutionOptionId, now: Optional[datetime] = None
    ) -> EvolutionEffects:
        """Apply the chosen option and seal the pending review in one step."""
        now = self._now(now)
        review = self._pending_review()
        if option_id not in [o.id for o in review.options]:
            raise HabitEngineError(f"{option_id.value} was not offered this week")

        state = self.state
        effects = apply_evolution_option(option_id, state.habit_set, state.identity_profile, state.identity)
        new_state = state.clone()

        if effects.triggers_identity_change:
            new_state = stage_classifier.seal_weekly_review(new_state, now, option_id)
            # Route back to onboarding; habits stay until a new identity is chosen
            new_state.onboarding_complete = False
            self._commit_sealed(new_state, review, now)
            return effects

        plan = self._generator(state, now).generate_evolution_plan(
            state.identity,
            state.identity_profile.type,
            effects.new_stage or state.identity_profile.stage,
            option_id,
            effects.new_habit_set,
        )
        new_state.habit_set = plan.habit_set
        effects.narrative_message = plan.narrative

        profile = new_state.identity_profile
        if effects.new_stage is not None and effects.new_stage != profile.stage:
            profile.stage = effects.new_stage
            profile.weeks_in_stage = 0
            profile.stage_entered_at = date_key(now)

        new_state = stage_classifier.seal_weekly_review(
            new_state, now, option_id, force_novelty=effects.force_novelty
        )
        self._commit_sealed(new_state, review, now)
        return effects

    def seal_weekly_review(self, now: Optional[datetime] = None) -> AppState:
        """Close the review without choosing an option."""
        now = self._now(now)
        review = self._pending_review()
        return self._commit_sealed(stage_classifier.seal_weekly_review(self.state, now), review, now)

    def choose_maintenance_path(
        self, path: MaintenancePath, new_identity: Optional[str] = None, now: Optional[datetime] = None
    ) -> AppState:
        now = self._now(now)
        review = self._pending_review()
        habit_set = None
        identity_type = None
        if path == MaintenancePath.EVOLVE:
            new_identity = (new_identity or "").strip()
            if not new_identity:
                raise HabitEngineError("Evolving needs a new identity")
            identity_type = detect_identity_type(new_identity)
            habit_set = self._generator(self.state, now).generate_habit_set(new_identity, identity_type)
        new_state = stage_classifier.apply_maintenance_path(
            self.state,
            path,
            now,
            new_identity=new_identity,
            new_habit_set=habit_set,
            new_identity_type=identity_type,
        )
        return self._commit_sealed(new_state, review, now)

    # -- entitlement ---------------------------------------------------------

    def apply_verified_entitlement(self, entitlement: Entitlement, now: Optional[datetime] = None) -> AppState:
        """Result of the trusted verification step. The only entitlement entry point."""
        now = self._now(now)
        return self._commit(set_entitlement(self.state, entitlement, grant_bonus=True), now)

    # -- data management -----------------------------------------------------

    def export_json(self) -> str:
        return json.dumps(self.state.to_local_dict(), indent=2, sort_keys=True)

    def import_json(self, raw: str, now: Optional[datetime] = None) -> bool:
        """
        Replace the state with an exported snapshot. Entitlement is never
        imported: it keeps coming from the verification path only.
        """
        now = self._now(now)
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("snapshot must be a JSON object")
            imported = AppState.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Import rejected: {e}")
            return False

        imported.user_id = self.state.user_id
        imported.entitlement = copy.deepcopy(self.state.entitlement)
        imported.has_ever_been_premium = self.state.has_ever_been_premium
        imported.last_updated = self.state.last_updated
        self._commit(imported, now)
        logger.info(f"Imported snapshot with {len(imported.history)} day logs")
        return True

    def reset_progress(self, now: Optional[datetime] = None) -> AppState:
        """Back to a fresh profile. Account and entitlement survive."""
        now = self._now(now)
        fresh = AppState(
            user_id=self.state.user_id,
            entitlement=copy.deepcopy(self.state.entitlement),
            has_ever_been_premium=self.state.has_ever_been_premium,
            last_updated=self.state.last_updated,
        )
        logger.info(f"Progress reset for {self.state.user_id or 'local user'}")
        return self._commit(fresh, now)
