"""AlertSink that escalates through the structured log.

Alerts go out at ERROR level under a dedicated event name so log based
alerting can page on them.
"""
from __future__ import annotations

from typing import Any

from application.ports.notifications import AlertSink
from core.logging_config import get_logger


logger = get_logger("payflow.alerts")


class LoggingAlertSink(AlertSink):
    def alert(self, message: str, **context: Any) -> None:
        logger.error("operator_alert", alert=message, **context)
