"""Sampled logger for high-frequency transfer progress messages.

Provides utilities to reduce log spam by only logging at configurable intervals.
"""

import logging

logger = logging.getLogger(__name__)


class SampledProgressLogger:
    """Log first/last progress updates of every Nth transfer.

    Messages are logged for:
    - First transfer seen: first and final progress update
    - Every Nth transfer (based on log_interval): first and final update
    """

    def __init__(
        self,
        log_format: str,
        log_interval: int = 100,
        target_logger: logging.Logger | None = None,
        level: int = logging.INFO,
    ) -> None:
        """Initialise the sampled logger.

        Args:
            log_format: Format string for the log message. Placeholders receive
                the message number, the transfer key, bytes sent and bytes
                expected, in that order.
            log_interval: Log every Nth transfer (default 100)
            target_logger: Logger instance to use (default: module logger)
            level: Log level to use (default: INFO)
        """
        self._log_format = log_format
        self._log_interval = log_interval
        self._logger = target_logger or logger
        self._level = level
        self._seen: dict[object, int] = {}
        self._started: set[object] = set()
        self._message_counter = 0

    def log(self, key: object, bytes_sent: int, bytes_expected: int) -> None:
        """Record one progress update for ``key`` and log it if sampled."""
        if key not in self._seen:
            self._message_counter += 1
            self._seen[key] = self._message_counter

        msg_num = self._seen[key]
        is_first = key not in self._started
        is_last = bytes_expected > 0 and bytes_sent >= bytes_expected
        self._started.add(key)
        should_log = msg_num == 1 or msg_num % self._log_interval == 0

        if should_log and (is_first or is_last):
            self._logger.log(
                self._level, self._log_format, msg_num, key, bytes_sent, bytes_expected
            )

    def forget(self, key: object) -> None:
        """Drop state kept for a finished transfer."""
        self._seen.pop(key, None)
        self._started.discard(key)
