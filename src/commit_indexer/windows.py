"""Time window planning for incremental commit indexing.

A repository's history is fetched in contiguous windows starting at the
point it was last indexed through. Each window's start is exclusive and its
end inclusive, so consecutive windows never overlap and never leave a gap.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class TimeWindow:
    """A half-open range of commit history to fetch.

    Attributes:
        start: Exclusive lower bound ("after").
        end: Inclusive upper bound, recorded as the new indexed-through stamp.
        open_ended: True for the trailing window of a plan, which is fetched
            without an upper bound.
    """

    start: datetime
    end: datetime
    open_ended: bool = False

    @property
    def until(self) -> datetime | None:
        """Upper bound passed to the fetcher, or None for an open-ended window."""
        return None if self.open_ended else self.end


def plan_windows(
    last_indexed: datetime, now: datetime, window_duration: timedelta
) -> list[TimeWindow]:
    """Split the range between last_indexed and now into fetch windows.

    Args:
        last_indexed: Time the repository has been indexed through.
        now: Snapshot of the current time for this pass.
        window_duration: Length of each window. Zero means one unbounded window.

    Returns:
        Windows in increasing time order. Empty if last_indexed >= now.

    Raises:
        ValueError: If window_duration is negative.
    """
    if window_duration < timedelta(0):
        raise ValueError(f"window duration must not be negative: {window_duration}")

    if last_indexed >= now:
        return []

    if not window_duration:
        return [TimeWindow(start=last_indexed, end=now, open_ended=True)]

    windows: list[TimeWindow] = []
    start = last_indexed
    while True:
        end = start + window_duration
        if end >= now:
            windows.append(TimeWindow(start=start, end=now, open_ended=True))
            return windows
        windows.append(TimeWindow(start=start, end=end))
        start = end
