"""Celery task definitions for async processing."""

from celery import Celery

from lendtrust.config import settings

celery_app = Celery(
    "lendtrust",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    enable_utc=True,
    task_ignore_result=True,
)

# Import tasks so they get registered
from lendtrust.tasks.notifications import *  # noqa
