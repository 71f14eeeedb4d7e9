"""
Entitlement API Router

Privileged write path for premium status. Called by the payment
verification service with the shared X-Entitlement-Token; refuses every
request while ENTITLEMENT_ADMIN_TOKEN is unset.
"""

import hmac
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header

from core.config import settings
from core.exceptions import UnauthorizedError
from routers.replicas import get_replica_store
from schemas import EntitlementEvent, EntitlementPayload, EntitlementResponse
from services.entitlements import WebhookEvent, compute_webhook_update
from services.habit_state import Entitlement
from services.remote_store import SqlRemoteStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/entitlements", tags=["Entitlements"])


def require_entitlement_token(x_entitlement_token: Optional[str] = Header(default=None)) -> None:
    expected = settings.ENTITLEMENT_ADMIN_TOKEN
    if not expected or not x_entitlement_token:
        raise UnauthorizedError("Entitlement token required")
    if not hmac.compare_digest(x_entitlement_token, expected):
        raise UnauthorizedError("Invalid entitlement token")


@router.put("/{user_id}", response_model=EntitlementResponse, dependencies=[Depends(require_entitlement_token)])
def apply_entitlement_event(
    user_id: str,
    event: EntitlementEvent,
    store: SqlRemoteStore = Depends(get_replica_store),
):
    """Apply a verified payment event to the user's remote entitlement."""
    now_ms = int(time.time() * 1000)
    current = store.get_entitlement(user_id) or Entitlement()
    update = compute_webhook_update(
        current,
        WebhookEvent(
            type=event.type,
            next_billing_date=event.next_billing_date,
            current_period_end=event.current_period_end,
            billing_interval_count=event.billing_interval_count,
        ),
        now_ms,
    )
    status = update.subscription_status.value if update.subscription_status else None
    store.set_entitlement(user_id, update.entitlement, subscription_status=status)
    logger.info(
        f"Entitlement event {event.type.value} applied for {user_id} (changed={update.changed})",
        extra={"user_id": user_id},
    )
    return EntitlementResponse(
        user_id=user_id,
        entitlement=EntitlementPayload(**update.entitlement.to_dict()),
        subscription_status=status,
        changed=update.changed,
    )
