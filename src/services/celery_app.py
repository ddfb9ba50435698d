from __future__ import annotations

from celery import Celery

from core.config import Config

STUDIO_TASK_QUEUE = "studioctl"

celery_app = Celery("studioctl")
celery_config = {
    "broker_url": Config.CELERY_BROKER_URL,
    "result_backend": Config.CELERY_RESULT_BACKEND,
    "task_default_queue": STUDIO_TASK_QUEUE,
    "task_track_started": True,
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "beat_schedule": {
        "tick_schedules": {
            "task": "services.tasks.tick_schedules",
            "schedule": Config.SCHEDULE_TICK_SECONDS,
            "options": {"queue": STUDIO_TASK_QUEUE},
        }
    },
}
celery_app.conf.update(celery_config)

celery_app.autodiscover_tasks(["services"])
