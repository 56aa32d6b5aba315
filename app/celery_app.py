"""Celery application instance shared across the backend.

Start a worker (with beat) with:
    celery -A app.celery_app worker -B -Q delivery,maintenance -l info --concurrency=2
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("prompt_delivery", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.timezone = "UTC"

celery_app.conf.task_routes = {
    "app.workers.delivery.sweep": {"queue": "delivery"},
    "app.workers.delivery.purge_verifications": {"queue": "maintenance"},
}

# Beat schedule: sweep both slots often enough that every configured time
# lands inside the due tolerance window at least once.
celery_app.conf.beat_schedule = {
    "sweep-morning": {
        "task": "app.workers.delivery.sweep",
        "schedule": settings.SWEEP_INTERVAL_SECONDS,
        "args": ("morning",),
    },
    "sweep-evening": {
        "task": "app.workers.delivery.sweep",
        "schedule": settings.SWEEP_INTERVAL_SECONDS,
        "args": ("evening",),
    },
    "purge-verifications": {
        "task": "app.workers.delivery.purge_verifications",
        "schedule": 3600.0,
    },
}

# --- Ensure tasks are registered ---
import app.workers.delivery  # noqa: E402,F401
