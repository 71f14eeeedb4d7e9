"""
Entitlement logic.

Entitlement (is_premium, expiry) is read-mostly state. The only way to
change it on an AppState is set_entitlement(), called by the synchronizer
when it merges a remote entitlement and by the store when a trusted
verification result arrives. Webhook handling is pure and shared by the
privileged endpoint and the tests.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.config import settings
from services.habit_state import MAX_SHIELDS, AppState, Entitlement

logger = logging.getLogger(__name__)

ONE_TIME_PASS_DAYS = 30
DEFAULT_BILLING_DAYS = 30
DAY_MS = 24 * 60 * 60 * 1000


class WebhookEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass
class WebhookEvent:
    type: WebhookEventType
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    billing_interval_count: Optional[int] = None


@dataclass
class EntitlementUpdate:
    entitlement: Entitlement
    subscription_status: Optional[SubscriptionStatus]
    changed: bool


def is_entitlement_valid(entitlement: Entitlement, now_ms: int) -> bool:
    return bool(entitlement.is_premium and entitlement.expiry is not None and entitlement.expiry > now_ms)


def check_local_expiry(entitlement: Entitlement, now_ms: int) -> Entitlement:
    """Revoke a premium flag whose expiry has passed. Cancelled-but-paid stays premium."""
    if entitlement.is_premium and entitlement.expiry is not None and now_ms > entitlement.expiry:
        return Entitlement(is_premium=False, expiry=entitlement.expiry)
    return entitlement


def compute_webhook_update(current: Entitlement, event: WebhookEvent, now_ms: int) -> EntitlementUpdate:
    """New entitlement for a verified payment-provider event."""
    if event.type == WebhookEventType.PAYMENT_SUCCEEDED:
        new = Entitlement(is_premium=True, expiry=now_ms + ONE_TIME_PASS_DAYS * DAY_MS)
        status = None
    elif event.type in (WebhookEventType.SUBSCRIPTION_ACTIVE, WebhookEventType.SUBSCRIPTION_CREATED):
        if event.next_billing_date:
            expiry = int(event.next_billing_date.timestamp() * 1000)
        elif event.current_period_end:
            expiry = int(event.current_period_end.timestamp() * 1000)
        else:
            expiry = now_ms + (event.billing_interval_count or DEFAULT_BILLING_DAYS) * DAY_MS
        new = Entitlement(is_premium=True, expiry=expiry)
        status = SubscriptionStatus.ACTIVE
    elif event.type == WebhookEventType.SUBSCRIPTION_CANCELLED:
        # Paid period runs out on its own
        new = Entitlement(is_premium=current.is_premium, expiry=current.expiry)
        status = SubscriptionStatus.CANCELLED
    else:
        new = Entitlement(is_premium=False, expiry=None)
        status = SubscriptionStatus.EXPIRED

    changed = new != current
    if changed:
        logger.info(
            f"Entitlement update from {event.type.value}: "
            f"premium {current.is_premium}->{new.is_premium}, expiry {current.expiry}->{new.expiry}"
        )
    return EntitlementUpdate(entitlement=new, subscription_status=status, changed=changed)


def _bonus_shield_due(state: AppState, incoming: Entitlement) -> bool:
    if not incoming.is_premium or state.entitlement.is_premium:
        return False
    if settings.BONUS_SHIELD_REQUIRES_FIRST_EVER_PREMIUM:
        return not state.has_ever_been_premium
    return True


def set_entitlement(state: AppState, incoming: Entitlement, grant_bonus: bool = True) -> AppState:
    """
    The single privileged setter. Returns a new state; does not bump
    last_updated (callers decide whether the change is a local mutation).

    The first upgrade to premium grants one shield. By default this is
    guarded by the durable has_ever_been_premium flag so toggling the
    entitlement cannot farm shields.
    """
    new_state = state.clone()
    if grant_bonus and _bonus_shield_due(state, incoming):
        new_state.resilience.shields = min(MAX_SHIELDS, new_state.resilience.shields + 1)
        logger.info(f"First premium upgrade for {state.user_id or 'local user'}: bonus shield granted")
    new_state.entitlement = Entitlement(is_premium=incoming.is_premium, expiry=incoming.expiry)
    if incoming.is_premium:
        new_state.has_ever_been_premium = True
    return new_state
