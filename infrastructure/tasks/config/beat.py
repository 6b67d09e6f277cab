"""Celery beat schedule.

Payout runs are started by the host application through
``PaypalPayoutProcessor.enqueue_payments``; nothing runs periodically yet.
"""
from __future__ import annotations

CELERY_BEAT_SCHEDULE: dict = {}
