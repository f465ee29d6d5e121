from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Optional

from upload_server.logger_config import setup_logger

logger = setup_logger()


class FailureMonitor:
    def __init__(self, name: str, failure_threshold: int, window_seconds: int = 60,
                 alert_handler: Optional[Callable[[str], None]] = None):
        """
        Track failures of a best-effort operation and alert when they pile up.

        Args:
            name: Operation name used in alert messages
            failure_threshold: Number of failures within the window that raises an alert
            window_seconds: Time window in seconds to check for failures
            alert_handler: Optional callback receiving the alert message. Logs a warning if None
        """
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive")

        self.name = name
        self._failure_threshold = failure_threshold
        self._window_seconds = window_seconds
        self._alert_handler = alert_handler or self._default_alert_handler
        self._total_passes = 0
        self._total_failures = 0
        self._failure_timestamps = deque()

    def _clean_old_failures(self, now: datetime):
        window_start = now - timedelta(seconds=self._window_seconds)
        while self._failure_timestamps and self._failure_timestamps[0] < window_start:
            self._failure_timestamps.popleft()

    def _default_alert_handler(self, message: str):
        logger.warning(message)

    def record_success(self):
        self._total_passes += 1
        self._clean_old_failures(datetime.now())

    def record_failure(self):
        """Record a failure, alerting once each time the window reaches the threshold."""
        now = datetime.now()
        self._failure_timestamps.append(now)
        self._total_failures += 1
        self._clean_old_failures(now)

        if len(self._failure_timestamps) == self._failure_threshold:
            self._alert_handler(
                f"{self.name}: {self._failure_threshold} failures within {self._window_seconds}s "
                f"(total successes: {self._total_passes}, total failures: {self._total_failures})"
            )

    @property
    def recent_failures(self) -> int:
        self._clean_old_failures(datetime.now())
        return len(self._failure_timestamps)

    @property
    def stats(self) -> dict:
        return {
            'total_successes': self._total_passes,
            'total_failures': self._total_failures,
            'recent_failures': self.recent_failures,
            'window_seconds': self._window_seconds,
        }
