"""Process-wide request throttling shared by all category workers."""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Enforce a minimum interval between the start of consecutive requests.

    One instance is shared by every thread talking to the same remote service.
    The lock is held while waiting, so concurrent callers queue up and are
    released one interval apart.
    """

    def __init__(
        self,
        min_interval: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the limiter.

        Args:
            min_interval: Minimum number of seconds between two requests
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None

    def acquire(self) -> float:
        """
        Block until the next request may start.

        Returns:
            The number of seconds waited
        """
        with self._lock:
            waited = 0.0
            now = self._clock()
            if self._last_request is not None:
                remaining = self.min_interval - (now - self._last_request)
                if remaining > 0:
                    logger.debug(f"Waiting {remaining:.2f}s before next request")
                    self._sleep(remaining)
                    waited = remaining
                    now = self._clock()
            self._last_request = now
            return waited

    def defer(self, seconds: float) -> None:
        """Push the next permitted request at least ``seconds`` into the future."""
        with self._lock:
            target = self._clock() + max(0.0, seconds) - self.min_interval
            if self._last_request is None or target > self._last_request:
                self._last_request = target
