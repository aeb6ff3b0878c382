from celery import Celery
from app.core.config import settings

celery_app = Celery(
    "malipo",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.reconciliation_task"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Crontab entries are read in the business timezone
    timezone=settings.TIMEZONE,
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    redis_backend_health_check_interval=30,
    broker_pool_limit=5,
)
