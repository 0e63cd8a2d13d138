"""Notification surfaces for user-visible success and error notices."""

import sys
from typing import TextIO

import structlog

logger = structlog.get_logger()


class LoggingNotifier:
    """Routes notices to the log only. Used when no interactive surface exists."""

    def success(self, message: str) -> None:
        logger.info("notice_success", notice=message)

    def error(self, message: str) -> None:
        logger.warning("notice_error", notice=message)


class ConsoleNotifier:
    """Writes notices to a text stream (stderr by default) and logs them."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stderr

    def success(self, message: str) -> None:
        logger.debug("notice_success", notice=message)
        print(f"✅ {message}", file=self.stream, flush=True)

    def error(self, message: str) -> None:
        logger.debug("notice_error", notice=message)
        print(f"❌ {message}", file=self.stream, flush=True)
