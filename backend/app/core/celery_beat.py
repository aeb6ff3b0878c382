# app/core/celery_beat.py
from celery.schedules import crontab
from app.core.celery_app import celery_app

celery_app.conf.beat_schedule = {
    "reconcile-previous-day": {
        "task": "app.tasks.reconciliation_task.reconcile_previous_day",
        "schedule": crontab(hour=0, minute=15),
    },
}
