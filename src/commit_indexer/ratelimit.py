"""Token-bucket rate limiting for outbound commit fetches."""

import logging
import threading
import time
from collections.abc import Callable

from commit_indexer.errors import IndexingCancelled

logger = logging.getLogger(__name__)


class TokenBucketLimiter:
    """Thread-safe named token bucket shared by every fetch in a pass.

    Tokens refill continuously at ``rate`` per second up to ``burst``. A
    non-positive rate disables limiting.
    """

    def __init__(
        self,
        name: str,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.rate = rate
        self.burst = max(burst, 1)
        self._clock = clock
        self._tokens = float(self.burst)
        self._updated = clock()
        self._lock = threading.Lock()
        self.acquired = 0
        self.waited_seconds = 0.0

    @property
    def unlimited(self) -> bool:
        return self.rate <= 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._updated = now
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)

    def _try_take(self) -> float:
        """Take a token if one is available.

        Returns:
            0.0 if a token was taken, otherwise seconds until one is due.
        """
        with self._lock:
            if self.unlimited:
                self.acquired += 1
                return 0.0
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                self.acquired += 1
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def acquire(self, cancel_event: threading.Event | None = None) -> None:
        """Block until a token is available.

        Args:
            cancel_event: Optional event that aborts the wait when set.

        Raises:
            IndexingCancelled: If cancel_event is set before a token is taken.
        """
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise IndexingCancelled(f"rate limiter '{self.name}' wait cancelled")

            wait = self._try_take()
            if not wait:
                return

            logger.debug("Rate limiter '%s' waiting %.3fs", self.name, wait)
            self.waited_seconds += wait
            if cancel_event is not None:
                if cancel_event.wait(wait):
                    raise IndexingCancelled(
                        f"rate limiter '{self.name}' wait cancelled"
                    )
            else:
                time.sleep(wait)
