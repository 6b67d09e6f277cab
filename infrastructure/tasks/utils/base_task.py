"""Common base task for Celery jobs"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def run_async(factory: Callable[[], Awaitable[T]]) -> T:
    """Run one task body on a fresh event loop, releasing pooled DB connections afterwards."""
    from infrastructure.database import engine

    async def _main() -> T:
        try:
            return await factory()
        finally:
            # pooled connections are bound to the loop that opened them
            await engine.dispose()

    return asyncio.run(_main())


class BaseTask(Task):
    """Provides unified failure logging and hooks for future extensions."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            kwargs=kwargs,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning("celery_task_retry", task_id=task_id, task_name=self.name, exc=str(exc))
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
        )
        super().on_success(retval, task_id, args, kwargs)
