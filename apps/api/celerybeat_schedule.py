"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

from core.config import settings

# Schedule configuration
beat_schedule = {
    # Expired premium sweep: remote records whose expiry has passed lose
    # isPremium so the next device reconcile downloads the revocation.
    'revoke-expired-entitlements': {
        'task': 'tasks.revoke_expired_entitlements',
        'schedule': crontab(minute=f'*/{settings.ENTITLEMENT_SWEEP_MINUTES}'),
    },
}
