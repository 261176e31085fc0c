from celery import Celery

from supplyhub.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "supplyhub_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["supplyhub.worker.tasks"],
)
celery_app.conf.update(
    timezone=settings.local_timezone,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "poll-hub-queues": {
            "task": "supplyhub.tasks.poll_queues",
            "schedule": settings.poll_interval_seconds,
        },
        "run-effectuation": {
            "task": "supplyhub.tasks.run_effectuation",
            "schedule": settings.effectuation_interval_seconds,
        },
        "run-settlement": {
            "task": "supplyhub.tasks.run_settlement",
            "schedule": settings.settlement_interval_seconds,
        },
        "detect-corrections": {
            "task": "supplyhub.tasks.detect_corrections",
            "schedule": settings.correction_detection_interval_seconds,
        },
        "run-invoicing": {
            "task": "supplyhub.tasks.run_invoicing",
            "schedule": settings.invoicing_interval_seconds,
        },
    },
)
