from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "dealflow_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automation.tasks"],
)

if settings.automation_sweep_enabled:
    celery_app.conf.beat_schedule = {
        "automation-sweep-due-continuations": {
            "task": "app.automation.sweep_due_continuations",
            "schedule": float(settings.automation_sweep_interval_seconds),
        }
    }
