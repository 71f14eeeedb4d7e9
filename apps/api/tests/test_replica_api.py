"""
Replica and Entitlement API Tests

Exercises the FastAPI routers through TestClient on the shared in-memory
SQLite database, including a full synchronizer round trip over HTTP.
"""

import sys
import os
import time
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import onboarded_state
from core.config import settings
from core.exceptions import RemoteStoreError
from main import app
from routers.replicas import get_replica_store
from services.entitlements import DAY_MS, ONE_TIME_PASS_DAYS
from services.habit_state import AppState, Entitlement
from services.remote_store import HttpRemoteStore
from services.replica_sync import ReplicaSynchronizer

USER = "user-1"
TOKEN = "test-entitlement-token"


@pytest.fixture
def client(remote_db):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_token(monkeypatch):
    monkeypatch.setattr(settings, "ENTITLEMENT_ADMIN_TOKEN", TOKEN)
    return TOKEN


def _batch(last_updated, identity="a runner", day_logs=None, entitlement=None):
    profile = {
        "user_id": USER,
        "identity": identity,
        "last_updated": last_updated,
        "entitlement": entitlement or {"is_premium": False, "expiry": None},
    }
    return {"profile": profile, "day_logs": day_logs or {}}


class TestHealth:

    def test_ping(self, client):
        assert client.get("/ping").json() == {"pong": True}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestReplicaEndpoints:

    def test_missing_replica_404(self, client):
        response = client.get(f"/v1/replicas/{USER}")
        assert response.status_code == 404
        assert "Replica not found" in response.json()["detail"]

    def test_write_then_read(self, client):
        log = {"date": "2026-10-13", "completed_indices": [0], "daily_score": 3.0}
        response = client.put(f"/v1/replicas/{USER}", json=_batch(100, day_logs={"2026-10-13": log}))
        assert response.status_code == 200
        assert response.json() == {"user_id": USER, "last_updated": 100, "day_logs_written": 1}

        body = client.get(f"/v1/replicas/{USER}").json()
        assert body["last_updated"] == 100
        assert body["profile"]["identity"] == "a runner"
        assert body["day_logs"] == {"2026-10-13": log}
        assert body["entitlement"] == {"is_premium": False, "expiry": None}

    def test_stale_write_409(self, client):
        client.put(f"/v1/replicas/{USER}", json=_batch(200))
        response = client.put(f"/v1/replicas/{USER}", json=_batch(100, identity="old"))
        assert response.status_code == 409
        assert client.get(f"/v1/replicas/{USER}").json()["profile"]["identity"] == "a runner"

    def test_pushed_entitlement_ignored(self, client):
        premium = {"is_premium": True, "expiry": int(time.time() * 1000) + DAY_MS}
        client.put(f"/v1/replicas/{USER}", json=_batch(100, entitlement=premium))
        body = client.get(f"/v1/replicas/{USER}").json()
        assert body["entitlement"]["is_premium"] is False

    def test_invalid_batch_422(self, client):
        response = client.put(f"/v1/replicas/{USER}", json={"day_logs": {}})
        assert response.status_code == 422

    def test_store_is_untrusted(self):
        assert get_replica_store().trust_client_entitlement is False

    def test_store_outage_503(self, client):
        failing = MagicMock()
        failing.fetch.side_effect = RemoteStoreError("connection refused")
        failing.commit_batch.side_effect = RemoteStoreError("connection refused")
        app.dependency_overrides[get_replica_store] = lambda: failing
        try:
            assert client.get(f"/v1/replicas/{USER}").status_code == 503
            response = client.put(f"/v1/replicas/{USER}", json=_batch(100))
            assert response.status_code == 503
            assert response.json() == {"detail": "Replica store unavailable"}
        finally:
            app.dependency_overrides.pop(get_replica_store, None)


class TestEntitlementEndpoint:

    def test_refused_without_configured_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENTITLEMENT_ADMIN_TOKEN", None)
        response = client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "payment.succeeded"},
            headers={"X-Entitlement-Token": "anything"},
        )
        assert response.status_code == 401

    def test_missing_header(self, client, admin_token):
        response = client.put(f"/v1/entitlements/{USER}", json={"type": "payment.succeeded"})
        assert response.status_code == 401

    def test_wrong_token(self, client, admin_token):
        response = client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "payment.succeeded"},
            headers={"X-Entitlement-Token": "wrong"},
        )
        assert response.status_code == 401

    def test_payment_grants_pass(self, client, admin_token):
        before = int(time.time() * 1000)
        response = client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "payment.succeeded"},
            headers={"X-Entitlement-Token": admin_token},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["changed"] is True
        assert body["entitlement"]["is_premium"] is True
        assert body["entitlement"]["expiry"] >= before + ONE_TIME_PASS_DAYS * DAY_MS

        replica = client.get(f"/v1/replicas/{USER}").json()
        assert replica["entitlement"] == body["entitlement"]

    def test_cancel_keeps_then_expire_revokes(self, client, admin_token):
        headers = {"X-Entitlement-Token": admin_token}
        client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "subscription.active", "billing_interval_count": 30},
            headers=headers,
        )
        cancelled = client.put(
            f"/v1/entitlements/{USER}", json={"type": "subscription.cancelled"}, headers=headers
        ).json()
        assert cancelled["subscription_status"] == "cancelled"
        assert cancelled["entitlement"]["is_premium"] is True
        assert cancelled["changed"] is False

        expired = client.put(
            f"/v1/entitlements/{USER}", json={"type": "subscription.expired"}, headers=headers
        ).json()
        assert expired["entitlement"] == {"is_premium": False, "expiry": None}

    def test_unknown_event_type_422(self, client, admin_token):
        response = client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "refund.issued"},
            headers={"X-Entitlement-Token": admin_token},
        )
        assert response.status_code == 422


class TestSyncOverHttp:

    def test_fresh_device_downloads_entitlement(self, client, admin_token, inline_executor, now):
        client.put(
            f"/v1/entitlements/{USER}",
            json={"type": "payment.succeeded"},
            headers={"X-Entitlement-Token": admin_token},
        )
        store = HttpRemoteStore(base_url="http://testserver", session=client)
        sync = ReplicaSynchronizer(store, USER, executor=inline_executor)

        result = sync.reconcile(AppState(user_id=USER), now)
        assert result.entitlement.is_premium is True
        assert inline_executor.submitted == 0

    def test_device_push_round_trip(self, client, inline_executor, now):
        store = HttpRemoteStore(base_url="http://testserver", session=client)
        sync = ReplicaSynchronizer(store, USER, executor=inline_executor)
        local = onboarded_state(user_id=USER, now=now)
        local.last_updated = 500

        sync.reconcile(local, now)
        body = client.get(f"/v1/replicas/{USER}").json()
        assert body["last_updated"] == 500
        assert body["profile"]["identity"] == "a runner"

        other = HttpRemoteStore(base_url="http://testserver", session=client)
        assert other.fetch(USER).profile["habit_set"] == local.habit_set.to_dict()

    def test_entitlement_survives_local_reset(self, client, admin_token, inline_executor):
        headers = {"X-Entitlement-Token": admin_token}
        client.put(f"/v1/entitlements/{USER}", json={"type": "payment.succeeded"}, headers=headers)
        client.put(f"/v1/replicas/{USER}", json=_batch(100))

        store = HttpRemoteStore(base_url="http://testserver", session=client)
        sync = ReplicaSynchronizer(store, USER, executor=inline_executor)
        cleared = AppState(user_id=USER, last_updated=int(time.time() * 1000))
        result = sync.reconcile(cleared, datetime.now())

        assert result.entitlement.is_premium is True
        assert client.get(f"/v1/replicas/{USER}").json()["entitlement"]["is_premium"] is True
        assert Entitlement.from_dict(client.get(f"/v1/replicas/{USER}").json()["entitlement"]) == result.entitlement
