"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict, Optional

from application.ports.jobs import JobScheduler
from core.logging_config import get_logger

from ..config.celery import celery_app


logger = get_logger(__name__)


class TaskDispatcher(JobScheduler):
    """JobScheduler backed by ``celery_app.send_task``; jobs are addressed by name only."""

    def schedule(
        self,
        name: str,
        *,
        kwargs: Optional[Dict[str, Any]] = None,
        delay_seconds: Optional[float] = None,
    ) -> Optional[str]:
        countdown = delay_seconds if delay_seconds and delay_seconds > 0 else None
        result = celery_app.send_task(name, kwargs=kwargs or {}, countdown=countdown)
        logger.info("job_scheduled", job=name, task_id=result.id, countdown=countdown, kwargs=kwargs)
        return result.id
