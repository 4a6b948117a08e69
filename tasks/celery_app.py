"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "service_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.settlement_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose a payout run
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    task_routes={
        "tasks.settlement_tasks.*": {"queue": "settlements"},
    },

    # One long-running payout run per worker process at a time
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Settle the previous week's completed bookings
    # Monday 00:10 local (Asia/Dhaka by default)
    "generate-weekly-payouts": {
        "task": "tasks.settlement_tasks.generate_periodic_payouts",
        "schedule": crontab(day_of_week="mon", hour=0, minute=10),
    },
}
