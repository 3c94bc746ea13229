from celery import Celery
from bulk_data.config import settings

celery_app = Celery(
    "bulk_data",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour max
    beat_schedule={
        "purge-expired-records": {
            "task": "bulk_data.tasks.maintenance.purge_expired_records",
            "schedule": float(settings.db_maintenance_tick_interval),
        },
    },
)

# Import tasks after celery_app is created to avoid circular imports
import bulk_data.tasks.maintenance  # noqa: E402,F401
