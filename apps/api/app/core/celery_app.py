from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "funnel_automation",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automation.tasks"],
)

celery_app.conf.beat_schedule = {
    "automation-sweep": {
        "task": "app.tasks.automation_sweep",
        "schedule": float(settings.automation_sweep_interval_seconds),
    },
}
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
