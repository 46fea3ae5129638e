"""Notification sink for fatal or unexpected pipeline conditions."""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

alert_logger = logging.getLogger("adbulk.alerts")


class Notifier(Protocol):
    def alert(self, subject: str, message: str) -> None: ...


class LoggingNotifier:
    """Emits alerts on the ``adbulk.alerts`` logger at ERROR level.

    Route that logger to mail, chat or a pager with standard logging
    handlers. Failures inside a handler never reach the pipeline.
    """

    def alert(self, subject: str, message: str) -> None:
        try:
            alert_logger.error("%s: %s", subject, message)
        except Exception:
            logger.exception("Failed to emit alert %r", subject)
