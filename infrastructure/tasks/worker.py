"""Convenience entry point for running a Celery worker.

Deployments usually invoke the Celery CLI; this keeps Procfile-style runners
and local runs short.
"""
from __future__ import annotations

from core.logging_config import configure_logging

from .config.celery import celery_app


def main() -> None:
    configure_logging()
    celery_app.worker_main(["worker", "--loglevel=INFO", "--hostname=worker@%h", "-Q", "high,default,payouts"])


if __name__ == "__main__":
    main()
