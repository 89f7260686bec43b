"""Celery beat schedule for payment maintenance jobs."""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "payments-cancel-expired-links": {
        "task": "payments.cancel_expired_links",
        "schedule": crontab(minute=0),  # hourly
    },
    "payments-retry-failed-receipts": {
        "task": "payments.retry_failed_receipts",
        "schedule": crontab(minute="*/15"),
    },
}
