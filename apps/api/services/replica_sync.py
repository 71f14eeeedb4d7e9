"""
Replica Synchronizer

Keeps the local AppState and the remote replica converged.

    Reconcile   cold start / sign-in; three-way merge, opens the push guard
    Push        after local mutations; coalesced by last_updated vs last_synced
    Pull        explicit full refresh; adopts the remote wholesale

Reconcile decision (reconcile_records):

    no remote record                         -> PUSH_FIRST_WRITE
    remote newer                             -> DOWNLOAD
    local newer, remote entitlement valid,
      local entitlement not valid            -> OVERRIDE_ENTITLEMENT_AND_PUSH
    local newer otherwise                    -> PUSH
    equal                                    -> NOOP

The override is the single exception to last-writer-wins: a cleared or
stale local replica must never silently revoke a paid entitlement.

Until Reconcile has completed once, every automatic push is refused so an
unreconciled replica cannot stomp the remote before reading it. Pushes run
on an executor and re-read the latest snapshot at commit time; last_synced
only advances after the remote accepted the batch.
"""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional, Set

from core.exceptions import RemoteStoreError, StaleWriteError
from services.entitlements import is_entitlement_valid, set_entitlement
from services.habit_state import AppState, Entitlement, to_epoch_ms
from services.remote_store import RemoteSnapshot, RemoteStore

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], AppState]


class SyncAction(str, Enum):
    PUSH_FIRST_WRITE = "push_first_write"
    DOWNLOAD = "download"
    OVERRIDE_ENTITLEMENT_AND_PUSH = "override_entitlement_and_push"
    PUSH = "push"
    NOOP = "noop"


def reconcile_records(
    local_last_updated: int,
    local_entitlement: Entitlement,
    remote: Optional[RemoteSnapshot],
    now_ms: int,
) -> SyncAction:
    if remote is None:
        return SyncAction.PUSH_FIRST_WRITE
    if remote.last_updated > local_last_updated:
        return SyncAction.DOWNLOAD
    if local_last_updated > remote.last_updated:
        if is_entitlement_valid(remote.entitlement, now_ms) and not is_entitlement_valid(
            local_entitlement, now_ms
        ):
            return SyncAction.OVERRIDE_ENTITLEMENT_AND_PUSH
        return SyncAction.PUSH
    return SyncAction.NOOP


def _adopt_remote(remote: RemoteSnapshot, user_id: str) -> AppState:
    state = AppState.from_remote(remote.profile, remote.day_logs)
    state.user_id = state.user_id or user_id
    state.entitlement = Entitlement(is_premium=remote.entitlement.is_premium, expiry=remote.entitlement.expiry)
    state.last_updated = remote.last_updated
    return state


class ReplicaSynchronizer:
    """One instance per signed-in user session."""

    def __init__(self, store: RemoteStore, user_id: str, executor: Optional[Executor] = None):
        self.store = store
        self.user_id = user_id
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="replica-push")
        self.initial_load_complete = False
        self.last_synced = 0
        self._dirty_dates: Set[str] = set()
        self._full_push_pending = False

    # -- reconcile / pull ----------------------------------------------------

    def reconcile(
        self,
        local: AppState,
        now: datetime,
        adopt: Optional[Callable[[AppState], None]] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
    ) -> AppState:
        """
        Returns the state the caller should adopt. `adopt` is invoked with it
        before any follow-up push is scheduled, so a provider that reads the
        caller's current state sees the reconciled one. On a fetch failure the
        local state is returned unchanged and the push guard stays closed.
        """
        now_ms = to_epoch_ms(now)
        try:
            remote = self.store.fetch(self.user_id)
        except RemoteStoreError as e:
            logger.warning(f"Reconcile fetch failed for {self.user_id}, will retry: {e}")
            return local

        action = reconcile_records(local.last_updated, local.entitlement, remote, now_ms)
        logger.info(
            f"Reconcile {self.user_id}: {action.value} "
            f"(local={local.last_updated}, remote={remote.last_updated if remote else None})",
            extra={"user_id": self.user_id, "sync_action": action.value},
        )

        result = local
        if action == SyncAction.DOWNLOAD:
            result = _adopt_remote(remote, self.user_id)
            self.last_synced = remote.last_updated
        elif action == SyncAction.OVERRIDE_ENTITLEMENT_AND_PUSH:
            result = set_entitlement(local, remote.entitlement, grant_bonus=False)
            result.last_updated = max(now_ms, local.last_updated + 1, remote.last_updated + 1)
        elif action == SyncAction.NOOP:
            self.last_synced = local.last_updated

        self.initial_load_complete = True
        if adopt is not None:
            adopt(result)

        if action in (
            SyncAction.PUSH_FIRST_WRITE,
            SyncAction.PUSH,
            SyncAction.OVERRIDE_ENTITLEMENT_AND_PUSH,
        ):
            self._full_push_pending = True
            provider = snapshot_provider or (lambda: result)
            self.request_push(provider, force=True)
        return result

    def pull(self, local: AppState) -> AppState:
        """Explicit full refresh: the remote replaces the local state."""
        try:
            remote = self.store.fetch(self.user_id)
        except RemoteStoreError as e:
            logger.warning(f"Pull failed for {self.user_id}: {e}")
            return local
        if remote is None:
            logger.info(f"Pull for {self.user_id}: no remote record")
            return local
        self.last_synced = remote.last_updated
        self.initial_load_complete = True
        self._dirty_dates.clear()
        return _adopt_remote(remote, self.user_id)

    # -- push ----------------------------------------------------------------

    def mark_dirty(self, dates: Iterable[str]) -> None:
        self._dirty_dates.update(dates)

    def request_push(self, snapshot_provider: SnapshotProvider, force: bool = False) -> Optional[Future]:
        """
        Schedule a push. Refused before the first reconcile; skipped when
        nothing changed since the last successful sync unless forced.
        """
        if not self.initial_load_complete:
            logger.debug(f"Push for {self.user_id} held until initial reconcile")
            return None
        if not force and snapshot_provider().last_updated <= self.last_synced:
            return None

        dates, self._dirty_dates = self._dirty_dates, set()
        full, self._full_push_pending = self._full_push_pending, False
        return self.executor.submit(self._push, snapshot_provider, dates, full)

    def _push(self, snapshot_provider: SnapshotProvider, dates: Set[str], full: bool) -> bool:
        state = snapshot_provider()
        profile = state.to_profile_document()
        day_logs = state.day_log_documents() if full else {}
        # Dates whose log disappeared (undo, reset) are sent as deletions
        for d in sorted(dates):
            day_logs[d] = state.history[d].to_dict() if d in state.history else None

        try:
            self.store.commit_batch(self.user_id, profile, day_logs)
        except StaleWriteError as e:
            logger.warning(
                f"Push rejected for {self.user_id}, remote is newer; reconcile required: {e}",
                extra={"user_id": self.user_id},
            )
            self._requeue(dates, full)
            self.initial_load_complete = False
            return False
        except RemoteStoreError as e:
            logger.warning(
                f"Push failed for {self.user_id}, will retry on next change: {e}",
                extra={"user_id": self.user_id},
            )
            self._requeue(dates, full)
            return False

        self.last_synced = max(self.last_synced, state.last_updated)
        logger.debug(f"Pushed {self.user_id} at {state.last_updated} ({len(day_logs)} day logs)")
        return True

    def _requeue(self, dates: Set[str], full: bool) -> None:
        self._dirty_dates.update(dates)
        if full:
            self._full_push_pending = True

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
