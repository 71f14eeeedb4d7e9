"""
Celery worker entry point.

Imports the Celery app and tasks from the API module. Run with beat
embedded for the entitlement sweep:

    celery -A main worker -B
"""
import sys
import os

# API directory holds the tasks package (mounted at /api in containers)
sys.path.insert(0, os.environ.get("BOUNCE_API_PATH", "/api"))

from tasks import celery_app  # noqa: E402

celery_app.autodiscover_tasks(['tasks'])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
