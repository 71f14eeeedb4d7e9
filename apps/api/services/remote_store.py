"""
Remote persistence boundary.

One profile-scope document per user plus one day-log document per date.
Writes arrive as a batch (profile + changed day logs) and commit in a
single transaction. Reads return the profile and the full day-log
collection.

    SqlRemoteStore    SQLAlchemy against the replica tables (server side,
                      and in-process use)
    HttpRemoteStore   requests client for the /v1/replicas API

Every I/O failure surfaces as RemoteStoreError so the synchronizer can
log it and retry on the next natural trigger.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import RemoteStoreError, StaleWriteError
from models import DayLogDocument, ProfileDocument
from services.habit_state import Entitlement

logger = logging.getLogger(__name__)

# Rows created by the entitlement path before the client ever pushed
PLACEHOLDER_LAST_UPDATED = 1


@dataclass
class RemoteSnapshot:
    profile: Dict[str, Any]
    day_logs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    last_updated: int = 0
    entitlement: Entitlement = field(default_factory=Entitlement)


class RemoteStore(ABC):
    @abstractmethod
    def fetch(self, user_id: str) -> Optional[RemoteSnapshot]:
        """Profile plus every day log, or None when the user has no record."""

    @abstractmethod
    def commit_batch(
        self, user_id: str, profile: Dict[str, Any], day_logs: Dict[str, Optional[Dict[str, Any]]]
    ) -> None:
        """Write the profile and the given day logs atomically. A None log deletes that date."""


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------

class SqlRemoteStore(RemoteStore):
    """
    Args:
        session_factory: callable returning a Session (SessionLocal in production)
        trust_client_entitlement: when False, entitlement in an incoming profile
            is ignored and the privileged columns are left untouched
    """

    def __init__(self, session_factory: Callable[[], Session], trust_client_entitlement: bool = True):
        self.session_factory = session_factory
        self.trust_client_entitlement = trust_client_entitlement

    @staticmethod
    def _snapshot(row: ProfileDocument, logs) -> RemoteSnapshot:
        entitlement = Entitlement(is_premium=bool(row.is_premium), expiry=row.premium_expiry)
        profile = dict(row.document or {})
        profile["entitlement"] = entitlement.to_dict()
        profile["last_updated"] = row.last_updated
        return RemoteSnapshot(
            profile=profile,
            day_logs={log.date: dict(log.document) for log in logs},
            last_updated=row.last_updated,
            entitlement=entitlement,
        )

    def fetch(self, user_id: str) -> Optional[RemoteSnapshot]:
        db = self.session_factory()
        try:
            row = db.get(ProfileDocument, user_id)
            if row is None:
                return None
            logs = (
                db.query(DayLogDocument)
                .filter(DayLogDocument.user_id == user_id)
                .order_by(DayLogDocument.date)
                .all()
            )
            return self._snapshot(row, logs)
        except SQLAlchemyError as e:
            raise RemoteStoreError(f"Fetch failed for {user_id}: {e}") from e
        finally:
            db.close()

    def commit_batch(
        self, user_id: str, profile: Dict[str, Any], day_logs: Dict[str, Optional[Dict[str, Any]]]
    ) -> None:
        incoming = int(profile.get("last_updated", 0))
        db = self.session_factory()
        try:
            row = db.get(ProfileDocument, user_id)
            if row is not None and row.last_updated > incoming:
                raise StaleWriteError(
                    f"Remote replica for {user_id} is newer ({row.last_updated} > {incoming})"
                )
            if row is None:
                row = ProfileDocument(user_id=user_id, is_premium=False)
                db.add(row)

            document = dict(profile)
            document.pop("entitlement", None)
            row.document = document
            row.last_updated = incoming
            if self.trust_client_entitlement:
                entitlement = Entitlement.from_dict(profile.get("entitlement"))
                row.is_premium = entitlement.is_premium
                row.premium_expiry = entitlement.expiry

            if day_logs:
                existing = {
                    log.date: log
                    for log in db.query(DayLogDocument).filter(
                        DayLogDocument.user_id == user_id,
                        DayLogDocument.date.in_(list(day_logs)),
                    )
                }
                for day, doc in day_logs.items():
                    if doc is None:
                        if day in existing:
                            db.delete(existing[day])
                    elif day in existing:
                        existing[day].document = doc
                    else:
                        db.add(DayLogDocument(user_id=user_id, date=day, document=doc))

            db.commit()
            logger.debug(f"Committed batch for {user_id}: last_updated={incoming}, {len(day_logs)} day logs")
        except StaleWriteError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise RemoteStoreError(f"Commit failed for {user_id}: {e}") from e
        finally:
            db.close()

    def set_entitlement(
        self, user_id: str, entitlement: Entitlement, subscription_status: Optional[str] = None
    ) -> None:
        """Privileged write. Leaves last_updated and the document alone."""
        db = self.session_factory()
        try:
            row = db.get(ProfileDocument, user_id)
            if row is None:
                row = ProfileDocument(
                    user_id=user_id,
                    document={"user_id": user_id},
                    last_updated=PLACEHOLDER_LAST_UPDATED,
                )
                db.add(row)
            row.is_premium = entitlement.is_premium
            row.premium_expiry = entitlement.expiry
            if subscription_status:
                row.subscription_status = subscription_status
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise RemoteStoreError(f"Entitlement write failed for {user_id}: {e}") from e
        finally:
            db.close()

    def get_entitlement(self, user_id: str) -> Optional[Entitlement]:
        db = self.session_factory()
        try:
            row = db.get(ProfileDocument, user_id)
            if row is None:
                return None
            return Entitlement(is_premium=bool(row.is_premium), expiry=row.premium_expiry)
        finally:
            db.close()

    def revoke_expired(self, now_ms: int) -> int:
        """Clear isPremium on every row whose expiry has passed. Returns the count."""
        db = self.session_factory()
        try:
            revoked = (
                db.query(ProfileDocument)
                .filter(
                    ProfileDocument.is_premium.is_(True),
                    ProfileDocument.premium_expiry.isnot(None),
                    ProfileDocument.premium_expiry < now_ms,
                )
                .update(
                    {ProfileDocument.is_premium: False, ProfileDocument.subscription_status: "expired"},
                    synchronize_session=False,
                )
            )
            db.commit()
            return revoked
        except SQLAlchemyError as e:
            db.rollback()
            raise RemoteStoreError(f"Entitlement sweep failed: {e}") from e
        finally:
            db.close()


# ---------------------------------------------------------------------------
# HTTP store
# ---------------------------------------------------------------------------

class HttpRemoteStore(RemoteStore):
    """Client for the replica API. Entitlement is read-only from this side."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.REMOTE_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.REMOTE_API_TIMEOUT
        self.session = session or requests.Session()

    def _url(self, user_id: str) -> str:
        return f"{self.base_url}/v1/replicas/{user_id}"

    def fetch(self, user_id: str) -> Optional[RemoteSnapshot]:
        try:
            r = self.session.get(self._url(user_id), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteStoreError(f"Replica fetch failed: {e}") from e

        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise RemoteStoreError(f"Replica fetch returned {r.status_code}: {r.text[:200]}")

        try:
            payload = r.json()
        except ValueError as e:
            raise RemoteStoreError("Replica fetch returned invalid JSON") from e
        entitlement = Entitlement.from_dict(payload.get("entitlement"))
        return RemoteSnapshot(
            profile=payload.get("profile") or {},
            day_logs=payload.get("day_logs") or {},
            last_updated=int(payload.get("last_updated", 0)),
            entitlement=entitlement,
        )

    def commit_batch(
        self, user_id: str, profile: Dict[str, Any], day_logs: Dict[str, Optional[Dict[str, Any]]]
    ) -> None:
        body = {"profile": profile, "day_logs": day_logs}
        try:
            r = self.session.put(self._url(user_id), json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteStoreError(f"Replica push failed: {e}") from e

        if r.status_code == 409:
            raise StaleWriteError(f"Replica push rejected as stale for {user_id}")
        if r.status_code >= 400:
            raise RemoteStoreError(f"Replica push returned {r.status_code}: {r.text[:200]}")
