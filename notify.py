"""Out-of-band delivery of one-time codes."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def deliver_code(self, destination: str, code: str) -> None:
        """Send ``code`` to ``destination``; raise DeliveryFailed on failure."""
        ...


class LogNotifier:
    """Development transport: logs that a code went out.

    The code itself is only written when ``reveal_codes`` is set (DEBUG).
    """

    def __init__(self, reveal_codes: bool = False):
        self.reveal_codes = reveal_codes

    def deliver_code(self, destination: str, code: str) -> None:
        shown = code if self.reveal_codes else "*" * len(code)
        logger.info("verification code for %s: %s", destination, shown)
