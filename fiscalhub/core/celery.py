"""
Celery configuration for background tasks
"""
from celery import Celery
import logging

from fiscalhub.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "fiscalhub",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "fiscalhub.modules.fiscal_documents.tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    result_expires=3600,  # 1 hour

    task_routes={
        "fiscalhub.modules.fiscal_documents.tasks.*": {"queue": "fiscal_documents"},
    },

    # Solo lectura + aplicación de estado; nunca reenvía documentos
    beat_schedule={
        "sync-in-flight-documents": {
            "task": "fiscalhub.modules.fiscal_documents.tasks.sync_in_flight_documents",
            "schedule": settings.STATUS_SYNC_INTERVAL_SECONDS,
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
