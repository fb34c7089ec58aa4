from __future__ import annotations

from celery import Celery

from app.core.config import settings


celery_app = Celery(
    "promo_worker",
    broker=settings.celery_broker_url,
)

celery_app.conf.update(
    task_ignore_result=True,
    # publishing must not stall the API thread
    broker_connection_timeout=2,
    task_publish_retry_policy={
        "max_retries": 2,
        "interval_start": 0,
        "interval_step": 0.2,
        "interval_max": 0.5,
    },
)

celery_app.autodiscover_tasks(
    packages=["promo_worker"],
)


__all__ = ["celery_app"]
