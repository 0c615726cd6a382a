"""Celery app for out-of-process mail sync. Uses Redis; DB session per pass."""
from celery import Celery
from .config import settings

celery_app = Celery(
    "mailmirror",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailmirror.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
