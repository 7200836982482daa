"""Retry policy for repositories that keep failing to index."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether work with a history of failures is attempted again.

    Attributes:
        max_failures: Number of consecutive failures after which work is no
            longer retried. Zero or less disables the cut-off.
    """

    max_failures: int = 10

    def will_retry(self, previous_failures: int) -> bool:
        if self.max_failures <= 0:
            return True
        return previous_failures < self.max_failures
