"""Celery application configuration"""
from __future__ import annotations

import os
from core.logging_config import get_logger
from celery import Celery
from kombu import Queue

from application.ports.jobs import FAIL_ABANDONED_PURCHASE, PAYOUT_USERS, UPDATE_PAYOUT_STATUS
from core.config import settings
from .beat import CELERY_BEAT_SCHEDULE


# Task modules are discovered via this tuple so new packages only need to be
# listed here.
CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)


celery_app = Celery("payflow")

celery_app.conf.update(
    broker_url=settings.celery.broker_url or settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.celery.result_backend or settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # ack after the work is done so a lost worker hands the job to another one
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=5,
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("payouts"),
    ),
    task_routes={
        FAIL_ABANDONED_PURCHASE: {"queue": "high"},
        PAYOUT_USERS: {"queue": "payouts"},
        UPDATE_PAYOUT_STATUS: {"queue": "payouts"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)

celery_app.conf.imports = CELERY_IMPORTS

if settings.celery.always_eager is not None:
    celery_app.conf.task_always_eager = settings.celery.always_eager
elif (settings.ENVIRONMENT or "production").lower() in {"test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=CELERY_IMPORTS)


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info("celery_configured", broker=sender.conf.broker_url, result_backend=sender.conf.result_backend)
