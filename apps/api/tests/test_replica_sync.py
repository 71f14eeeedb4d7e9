"""
Replica Synchronizer Tests

Reconcile decisions, byte-identical downloads, the entitlement override,
the push guard, coalescing and stale-write handling. Runs against the
SQL replica store on in-memory SQLite with pushes executed inline.
"""

import sys
import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import onboarded_state
from core.exceptions import RemoteStoreError
from services.entitlements import DAY_MS
from services.habit_state import AppState, DailyLog, EnergyTier, Entitlement, date_key, to_epoch_ms
from services.remote_store import RemoteSnapshot, SqlRemoteStore
from services.replica_sync import ReplicaSynchronizer, SyncAction, reconcile_records

USER = "user-1"


@pytest.fixture
def store(remote_db):
    return SqlRemoteStore(remote_db)


@pytest.fixture
def sync(store, inline_executor):
    return ReplicaSynchronizer(store, USER, executor=inline_executor)


def _seed_remote(store, state):
    store.commit_batch(USER, state.to_profile_document(), state.day_log_documents())


def _with_history(state, now, days=3):
    for offset in range(1, days + 1):
        key = date_key(now - timedelta(days=offset))
        state.history[key] = DailyLog(
            date=key,
            completed_indices=[0],
            completed_habit_names=[state.habit_set.display(EnergyTier.HIGH)[0]],
            energy=EnergyTier.HIGH,
            daily_score=3.0,
        )
    return state


class TestReconcileRecords:

    NOW_MS = 1_000_000

    def _remote(self, last_updated, entitlement=None):
        return RemoteSnapshot(profile={}, last_updated=last_updated, entitlement=entitlement or Entitlement())

    def test_no_remote(self):
        assert reconcile_records(5, Entitlement(), None, self.NOW_MS) == SyncAction.PUSH_FIRST_WRITE

    def test_remote_newer(self):
        assert reconcile_records(5, Entitlement(), self._remote(6), self.NOW_MS) == SyncAction.DOWNLOAD

    def test_equal(self):
        assert reconcile_records(5, Entitlement(), self._remote(5), self.NOW_MS) == SyncAction.NOOP

    def test_local_newer(self):
        assert reconcile_records(7, Entitlement(), self._remote(5), self.NOW_MS) == SyncAction.PUSH

    def test_local_newer_remote_premium(self):
        premium = Entitlement(is_premium=True, expiry=self.NOW_MS + DAY_MS)
        assert (
            reconcile_records(7, Entitlement(), self._remote(5, premium), self.NOW_MS)
            == SyncAction.OVERRIDE_ENTITLEMENT_AND_PUSH
        )

    def test_expired_remote_premium_not_overridden(self):
        expired = Entitlement(is_premium=True, expiry=self.NOW_MS - 1)
        assert reconcile_records(7, Entitlement(), self._remote(5, expired), self.NOW_MS) == SyncAction.PUSH

    def test_both_premium(self):
        premium = Entitlement(is_premium=True, expiry=self.NOW_MS + DAY_MS)
        assert reconcile_records(7, premium, self._remote(5, premium), self.NOW_MS) == SyncAction.PUSH


class TestReconcile:

    def test_download_is_byte_identical(self, store, sync, inline_executor, now):
        remote_state = _with_history(onboarded_state(user_id=USER, now=now), now)
        remote_state.resilience.streak = 3
        remote_state.last_updated = 200
        _seed_remote(store, remote_state)

        local = AppState(user_id=USER, identity="something else", last_updated=100)
        adopted = []
        result = sync.reconcile(local, now, adopt=adopted.append)

        assert result.to_local_dict() == remote_state.to_local_dict()
        assert adopted == [result]
        assert sync.last_synced == 200
        assert sync.initial_load_complete is True
        assert inline_executor.submitted == 0

    def test_override_keeps_paid_entitlement(self, store, sync, inline_executor, now):
        now_ms = to_epoch_ms(now)
        premium = Entitlement(is_premium=True, expiry=now_ms + 10 * DAY_MS)
        remote_state = onboarded_state(user_id=USER, now=now)
        remote_state.entitlement = premium
        remote_state.last_updated = 100
        _seed_remote(store, remote_state)

        local = onboarded_state(identity="a writer", user_id=USER, now=now)
        local.last_updated = 200
        result = sync.reconcile(local, now)

        assert result.entitlement == premium
        assert result.has_ever_been_premium is True
        assert result.resilience.shields == 0
        assert result.identity == "a writer"
        assert result.last_updated > 200
        assert local.entitlement == Entitlement()

        assert inline_executor.submitted == 1
        remote = store.fetch(USER)
        assert remote.last_updated == result.last_updated
        assert remote.entitlement == premium
        assert remote.profile["identity"] == "a writer"
        assert sync.last_synced == result.last_updated

    def test_local_newer_pushes_everything(self, store, sync, now):
        stale = onboarded_state(user_id=USER, now=now)
        stale.last_updated = 100
        _seed_remote(store, stale)

        local = _with_history(onboarded_state(identity="a writer", user_id=USER, now=now), now)
        local.last_updated = 300
        result = sync.reconcile(local, now)

        assert result is local
        remote = store.fetch(USER)
        assert remote.last_updated == 300
        assert sorted(remote.day_logs) == sorted(local.history)

    def test_first_write(self, store, sync, now):
        local = _with_history(onboarded_state(user_id=USER, now=now), now, days=2)
        local.last_updated = 50
        sync.reconcile(local, now)

        remote = store.fetch(USER)
        assert remote is not None
        assert remote.last_updated == 50
        assert len(remote.day_logs) == 2

    def test_noop(self, store, sync, inline_executor, now):
        local = onboarded_state(user_id=USER, now=now)
        local.last_updated = 100
        _seed_remote(store, local)

        result = sync.reconcile(local, now)
        assert result is local
        assert sync.last_synced == 100
        assert inline_executor.submitted == 0

    def test_push_uses_latest_snapshot(self, store, sync, now):
        local = onboarded_state(user_id=USER, now=now)
        local.last_updated = 10
        newer = local.clone()
        newer.identity = "a writer"
        newer.last_updated = 20

        sync.reconcile(local, now, snapshot_provider=lambda: newer)
        assert store.fetch(USER).profile["identity"] == "a writer"
        assert sync.last_synced == 20

    def test_fetch_failure_keeps_guard_closed(self, inline_executor, now):
        failing = MagicMock()
        failing.fetch.side_effect = RemoteStoreError("offline")
        sync = ReplicaSynchronizer(failing, USER, executor=inline_executor)
        local = onboarded_state(user_id=USER, now=now)

        assert sync.reconcile(local, now) is local
        assert sync.initial_load_complete is False
        assert sync.request_push(lambda: local) is None
        failing.commit_batch.assert_not_called()


class TestPush:

    def _reconciled(self, store, sync, now):
        local = _with_history(onboarded_state(user_id=USER, now=now), now)
        local.last_updated = 100
        _seed_remote(store, local)
        sync.reconcile(local, now)
        return local

    def test_guard_blocks_before_reconcile(self, sync, inline_executor, now):
        local = onboarded_state(user_id=USER, now=now)
        local.last_updated = 100
        assert sync.request_push(lambda: local) is None
        assert sync.request_push(lambda: local, force=True) is None
        assert inline_executor.submitted == 0

    def test_coalesced_when_nothing_changed(self, store, sync, inline_executor, now):
        local = self._reconciled(store, sync, now)
        assert sync.request_push(lambda: local) is None
        assert inline_executor.submitted == 0

    def test_dirty_dates_pushed(self, store, sync, now):
        local = self._reconciled(store, sync, now)
        today = date_key(now)
        local.history[today] = DailyLog(date=today, completed_indices=[1], daily_score=3.0)
        local.last_updated = 150
        sync.mark_dirty({today})

        future = sync.request_push(lambda: local)
        assert future.result() is True
        remote = store.fetch(USER)
        assert remote.last_updated == 150
        assert remote.day_logs[today]["completed_indices"] == [1]
        assert sync.last_synced == 150

    def test_missing_log_pushed_as_deletion(self, store, sync, now):
        local = self._reconciled(store, sync, now)
        yesterday = date_key(now - timedelta(days=1))
        del local.history[yesterday]
        local.last_updated = 150
        sync.mark_dirty({yesterday})

        sync.request_push(lambda: local).result()
        remote = store.fetch(USER)
        assert yesterday not in remote.day_logs
        assert len(remote.day_logs) == 2

    def test_stale_push_closes_guard(self, store, sync, now):
        local = self._reconciled(store, sync, now)
        other_device = local.clone()
        other_device.last_updated = 500
        _seed_remote(store, other_device)

        today = date_key(now)
        local.history[today] = DailyLog(date=today, completed_indices=[0], daily_score=3.0)
        local.last_updated = 150
        sync.mark_dirty({today})

        assert sync.request_push(lambda: local).result() is False
        assert sync.initial_load_complete is False
        assert sync.last_synced == 100
        assert store.fetch(USER).last_updated == 500

        result = sync.reconcile(local, now)
        assert result.last_updated == 500
        assert sync.initial_load_complete is True

    def test_transient_failure_requeues(self, now, inline_executor):
        flaky = MagicMock()
        flaky.fetch.return_value = None
        flaky.commit_batch.side_effect = [RemoteStoreError("timeout"), None, None]
        sync = ReplicaSynchronizer(flaky, USER, executor=inline_executor)
        local = _with_history(onboarded_state(user_id=USER, now=now), now)
        local.last_updated = 10

        sync.reconcile(local, now)
        assert sync.last_synced == 0
        assert sync.initial_load_complete is True

        sync.request_push(lambda: local).result()
        assert sync.last_synced == 10
        _, _, day_logs = flaky.commit_batch.call_args.args
        assert day_logs == local.day_log_documents()


class TestPull:

    def test_pull_adopts_remote(self, store, sync, now):
        remote_state = _with_history(onboarded_state(identity="a writer", user_id=USER, now=now), now)
        remote_state.last_updated = 50
        _seed_remote(store, remote_state)

        local = onboarded_state(user_id=USER, now=now)
        local.last_updated = 900
        pulled = sync.pull(local)
        assert pulled.identity == "a writer"
        assert pulled.last_updated == 50
        assert sync.last_synced == 50
        assert sync.initial_load_complete is True

    def test_pull_without_remote(self, sync, now):
        local = onboarded_state(user_id=USER, now=now)
        assert sync.pull(local) is local
