"""
Replica API Router

Remote side of the replica synchronizer. A device reads its whole replica
on reconcile and pushes batches (profile + changed day logs) after local
mutations. Entitlement fields in a pushed profile are ignored: only the
entitlement router writes them.
"""

import logging

from fastapi import APIRouter, Depends

from core.database import SessionLocal
from core.exceptions import ConflictError, NotFoundError, StaleWriteError
from schemas import EntitlementPayload, ReplicaBatch, ReplicaResponse, ReplicaWriteResponse
from services.remote_store import SqlRemoteStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/replicas", tags=["Replicas"])


def get_replica_store() -> SqlRemoteStore:
    return SqlRemoteStore(SessionLocal, trust_client_entitlement=False)


@router.get("/{user_id}", response_model=ReplicaResponse)
def read_replica(user_id: str, store: SqlRemoteStore = Depends(get_replica_store)):
    """Profile, every day log, last_updated and the authoritative entitlement."""
    snapshot = store.fetch(user_id)
    if snapshot is None:
        raise NotFoundError("Replica", user_id)
    return ReplicaResponse(
        profile=snapshot.profile,
        day_logs=snapshot.day_logs,
        last_updated=snapshot.last_updated,
        entitlement=EntitlementPayload(**snapshot.entitlement.to_dict()),
    )


@router.put("/{user_id}", response_model=ReplicaWriteResponse)
def write_replica(
    user_id: str,
    batch: ReplicaBatch,
    store: SqlRemoteStore = Depends(get_replica_store),
):
    """Atomic batch write. 409 when the stored replica is newer than the batch."""
    try:
        store.commit_batch(user_id, batch.profile, batch.day_logs)
    except StaleWriteError as e:
        logger.info(f"Stale replica push for {user_id}: {e}", extra={"user_id": user_id})
        raise ConflictError(str(e))
    return ReplicaWriteResponse(
        user_id=user_id,
        last_updated=int(batch.profile.get("last_updated", 0)),
        day_logs_written=len(batch.day_logs),
    )
