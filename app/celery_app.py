from celery import Celery

from app.config import settings

celery_app = Celery(
    "crm_migrations",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.migrations"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
)
