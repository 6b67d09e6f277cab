"""Task modules grouped by domain.

Import side effects register Celery tasks once this package is imported.
"""
from . import charging, payouts  # noqa: F401 to register tasks

__all__ = ["charging", "payouts"]
