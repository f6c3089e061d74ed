from celery import Celery
from celery.schedules import crontab
from notipay.core.config import settings

celery_app = Celery(
    "notipay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "reconcile-payment-intents": {
        "task": "notipay.tasks.reconcile_celery.reconcile_intents_task",
        "schedule": crontab(minute=f"*/{settings.RECONCILE_INTERVAL_MINUTES}"),
    },
}

celery_app.autodiscover_tasks(packages=["notipay.tasks"], related_name="reconcile_celery")
