"""
Entitlement Tests

Webhook-driven entitlement updates, local expiry and the first-upgrade
bonus shield.
"""

import sys
import os
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from services.entitlements import (
    DAY_MS,
    ONE_TIME_PASS_DAYS,
    SubscriptionStatus,
    WebhookEvent,
    WebhookEventType,
    check_local_expiry,
    compute_webhook_update,
    is_entitlement_valid,
    set_entitlement,
)
from services.habit_state import MAX_SHIELDS, Entitlement

NOW_MS = 1_790_000_000_000


class TestValidity:

    def test_valid_requires_future_expiry(self):
        assert is_entitlement_valid(Entitlement(True, NOW_MS + 1), NOW_MS) is True
        assert is_entitlement_valid(Entitlement(True, NOW_MS), NOW_MS) is False
        assert is_entitlement_valid(Entitlement(True, None), NOW_MS) is False
        assert is_entitlement_valid(Entitlement(False, NOW_MS + DAY_MS), NOW_MS) is False

    def test_local_expiry_revokes(self):
        expired = check_local_expiry(Entitlement(True, NOW_MS - 1), NOW_MS)
        assert expired == Entitlement(False, NOW_MS - 1)

    def test_local_expiry_keeps_running_period(self):
        current = Entitlement(True, NOW_MS + DAY_MS)
        assert check_local_expiry(current, NOW_MS) is current


class TestWebhooks:

    def test_one_time_pass(self):
        update = compute_webhook_update(Entitlement(), WebhookEvent(WebhookEventType.PAYMENT_SUCCEEDED), NOW_MS)
        assert update.entitlement == Entitlement(True, NOW_MS + ONE_TIME_PASS_DAYS * DAY_MS)
        assert update.subscription_status is None
        assert update.changed is True

    def test_subscription_uses_next_billing_date(self):
        billing = datetime(2026, 11, 14, 12, 0, 0)
        event = WebhookEvent(
            WebhookEventType.SUBSCRIPTION_ACTIVE,
            next_billing_date=billing,
            current_period_end=datetime(2026, 12, 1),
        )
        update = compute_webhook_update(Entitlement(), event, NOW_MS)
        assert update.entitlement == Entitlement(True, int(billing.timestamp() * 1000))
        assert update.subscription_status == SubscriptionStatus.ACTIVE

    def test_subscription_falls_back_to_period_end(self):
        period_end = datetime(2026, 12, 1)
        event = WebhookEvent(WebhookEventType.SUBSCRIPTION_CREATED, current_period_end=period_end)
        update = compute_webhook_update(Entitlement(), event, NOW_MS)
        assert update.entitlement.expiry == int(period_end.timestamp() * 1000)

    def test_subscription_falls_back_to_interval(self):
        event = WebhookEvent(WebhookEventType.SUBSCRIPTION_ACTIVE, billing_interval_count=7)
        update = compute_webhook_update(Entitlement(), event, NOW_MS)
        assert update.entitlement.expiry == NOW_MS + 7 * DAY_MS

    def test_cancellation_keeps_paid_period(self):
        current = Entitlement(True, NOW_MS + 5 * DAY_MS)
        update = compute_webhook_update(current, WebhookEvent(WebhookEventType.SUBSCRIPTION_CANCELLED), NOW_MS)
        assert update.entitlement == current
        assert update.subscription_status == SubscriptionStatus.CANCELLED
        assert update.changed is False

    @pytest.mark.parametrize(
        "event_type",
        [WebhookEventType.SUBSCRIPTION_EXPIRED, WebhookEventType.SUBSCRIPTION_PAYMENT_FAILED],
    )
    def test_expiry_and_failed_payment_revoke(self, event_type):
        current = Entitlement(True, NOW_MS + 5 * DAY_MS)
        update = compute_webhook_update(current, WebhookEvent(event_type), NOW_MS)
        assert update.entitlement == Entitlement(False, None)
        assert update.subscription_status == SubscriptionStatus.EXPIRED
        assert update.changed is True


class TestBonusShield:

    PREMIUM = Entitlement(True, NOW_MS + 30 * DAY_MS)

    def test_first_upgrade_grants_shield(self, state):
        upgraded = set_entitlement(state, self.PREMIUM)
        assert upgraded.resilience.shields == 1
        assert upgraded.has_ever_been_premium is True
        assert upgraded.entitlement == self.PREMIUM
        assert state.resilience.shields == 0
        assert upgraded.last_updated == state.last_updated

    def test_toggling_cannot_farm_shields(self, state):
        upgraded = set_entitlement(state, self.PREMIUM)
        downgraded = set_entitlement(upgraded, Entitlement())
        again = set_entitlement(downgraded, self.PREMIUM)
        assert downgraded.resilience.shields == 1
        assert downgraded.has_ever_been_premium is True
        assert again.resilience.shields == 1

    def test_instantaneous_check_when_guard_disabled(self, state, monkeypatch):
        monkeypatch.setattr(settings, "BONUS_SHIELD_REQUIRES_FIRST_EVER_PREMIUM", False)
        upgraded = set_entitlement(state, self.PREMIUM)
        again = set_entitlement(set_entitlement(upgraded, Entitlement()), self.PREMIUM)
        assert again.resilience.shields == 2

    def test_renewal_grants_nothing(self, state):
        upgraded = set_entitlement(state, self.PREMIUM)
        renewed = set_entitlement(upgraded, Entitlement(True, NOW_MS + 60 * DAY_MS))
        assert renewed.resilience.shields == 1

    def test_shield_capped(self, state):
        state.resilience.shields = MAX_SHIELDS
        upgraded = set_entitlement(state, self.PREMIUM)
        assert upgraded.resilience.shields == MAX_SHIELDS

    def test_merge_without_bonus(self, state):
        merged = set_entitlement(state, self.PREMIUM, grant_bonus=False)
        assert merged.resilience.shields == 0
        assert merged.has_ever_been_premium is True
