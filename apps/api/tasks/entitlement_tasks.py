"""
Celery tasks for entitlement maintenance.

The remote store is authoritative for premium status; this sweep clears
isPremium on every row whose expiry has passed. It leaves last_updated
alone, so a device already in sync sees no newer replica and lapses through
its own check_local_expiry at check-in. Only a device that downloads the
row (fresh install, or behind on last_updated) picks up the cleared flag.
"""
import logging
import time
from typing import Dict

from celery import Task

from core.database import SessionLocal
from core.exceptions import RemoteStoreError
from services.remote_store import SqlRemoteStore
from tasks import celery_app

logger = logging.getLogger(__name__)


def sweep_expired_entitlements(store: SqlRemoteStore, now_ms: int) -> int:
    revoked = store.revoke_expired(now_ms)
    if revoked:
        logger.info(f"Entitlement sweep revoked {revoked} expired premium record(s)")
    return revoked


@celery_app.task(name="tasks.revoke_expired_entitlements", bind=True)
def revoke_expired_entitlements(self: Task) -> Dict:
    """Celery beat task: revoke premium on expired remote records."""
    try:
        revoked = sweep_expired_entitlements(SqlRemoteStore(SessionLocal), int(time.time() * 1000))
        return {"status": "success", "revoked": revoked}
    except RemoteStoreError as e:
        logger.error(f"Entitlement sweep failed: {e}")
        return {"status": "error", "error": str(e)}
