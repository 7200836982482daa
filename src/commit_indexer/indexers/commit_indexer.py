"""Windowed incremental commit indexer.

For every repository the indexer looks up how far its history has been
indexed, plans the time windows between that point and now, and fetches and
stores each window in order. The indexed-through stamp advances with every
stored window, even an empty one, so a later pass resumes exactly where the
last one stopped.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from commit_indexer.errors import (
    IndexingCancelled,
    MetadataNotFoundError,
    RepositoryIterationError,
    is_empty_repo_error,
)
from commit_indexer.git import CommitFetcher
from commit_indexer.indexers.base import IndexResult, RepositoryFailure
from commit_indexer.models import Commit, CommitIndexMetadata
from commit_indexer.ratelimit import TokenBucketLimiter
from commit_indexer.repos import RepositoryIterator
from commit_indexer.retry import RetryPolicy
from commit_indexer.store import CommitStore
from commit_indexer.windows import plan_windows

logger = logging.getLogger(__name__)

# Outcome of a repository skipped because it failed too often
_RETRY_EXHAUSTED = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_metadata(
    store: CommitStore, repo_id: int, max_historical_time: datetime
) -> CommitIndexMetadata:
    """Fetch a repository's index metadata, creating it on first encounter.

    Args:
        store: Metadata store.
        repo_id: Repository ID.
        max_historical_time: Indexed-through stamp given to a new record.

    Returns:
        Existing or newly created metadata.
    """
    try:
        return store.get_metadata(repo_id)
    except MetadataNotFoundError:
        logger.info(
            "No index metadata for repo %d, starting from %s",
            repo_id,
            max_historical_time.isoformat(),
        )
        return store.upsert_metadata_stamp(repo_id, max_historical_time)


class CommitIndexer:
    """Brings the commit index of every repository up to date, one at a time."""

    def __init__(
        self,
        repositories: RepositoryIterator,
        fetch_commits: CommitFetcher,
        store: CommitStore,
        limiter: TokenBucketLimiter,
        max_historical_time: datetime,
        window_duration: timedelta = timedelta(0),
        clock: Callable[[], datetime] = _utc_now,
        retry_policy: RetryPolicy | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None,
    ) -> None:
        """Initialize the commit indexer.

        Args:
            repositories: Source of repositories to index.
            fetch_commits: Lists a repository's commits in a time range.
            store: Commit and metadata store.
            limiter: Rate limiter shared by all fetches of a pass.
            max_historical_time: Starting point for repositories seen for
                the first time.
            window_duration: Length of each fetch window; zero fetches
                everything outstanding in one window.
            clock: Returns the current time. Sampled once per pass.
            retry_policy: Optional cut-off for repositories that keep failing.
            progress_callback: Optional callback invoked per window with
                (current, total, repo_name).
        """
        self.repositories = repositories
        self.fetch_commits = fetch_commits
        self.store = store
        self.limiter = limiter
        self.max_historical_time = max_historical_time
        self.window_duration = window_duration
        self.clock = clock
        self.retry_policy = retry_policy
        self.progress_callback = progress_callback

    def index_all(self, cancel_event: threading.Event | None = None) -> IndexResult:
        """Run one indexing pass over every repository.

        Failures of a single repository are recorded in the result and do not
        stop the pass. Cancellation stops the pass after the last stored
        window and returns the partial result.

        Args:
            cancel_event: Optional event to signal cancellation.

        Returns:
            IndexResult summarizing the pass.

        Raises:
            RepositoryIterationError: If the repository iterator itself fails.
        """
        now = self.clock()
        result = IndexResult()
        logger.info(
            "Commit indexing pass started (now=%s, window=%s)",
            now.isoformat(),
            self.window_duration or "unbounded",
        )

        def visit(repo_name: str, repo_id: int) -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise IndexingCancelled("indexing pass cancelled")

            result.total_found += 1
            try:
                outcome = self._index_repository(repo_name, repo_id, now, cancel_event)
            except IndexingCancelled:
                raise
            except Exception as e:
                # An interrupt also kills the git child; that is not a repository failure
                if cancel_event is not None and cancel_event.is_set():
                    raise IndexingCancelled("indexing pass cancelled") from e
                logger.error("Error indexing %s: %s", repo_name, e)
                result.errors += 1
                result.failures.append(RepositoryFailure(repo_name, repo_id, str(e)))
                return

            if outcome is None:
                result.skipped += 1
                return
            if outcome is _RETRY_EXHAUSTED:
                result.skipped += 1
                result.retry_exhausted.append(repo_name)
                return
            windows, commits = outcome
            result.indexed += 1
            result.windows += windows
            result.commits += commits

        try:
            self.repositories.for_each(visit)
        except IndexingCancelled:
            logger.info("Indexing cancelled")
            result.cancelled = True
        except Exception as e:
            raise RepositoryIterationError(
                f"repository iteration failed: {e}", result=result
            ) from e

        logger.info("Commit indexing pass done: %s", result)
        return result

    def _index_repository(
        self,
        repo_name: str,
        repo_id: int,
        now: datetime,
        cancel_event: threading.Event | None,
    ) -> tuple[int, int] | object | None:
        """Index all outstanding windows of one repository.

        Returns:
            (windows, commits) stored, None if the repository is disabled, or
            _RETRY_EXHAUSTED if it is past the retry cut-off.
        """
        metadata = get_metadata(self.store, repo_id, self.max_historical_time)
        if not metadata.enabled:
            logger.debug("Commit indexing disabled for %s, skipping", repo_name)
            return None

        if self.retry_policy is not None and not self.retry_policy.will_retry(
            metadata.failure_count
        ):
            logger.warning(
                "Skipping %s after %d consecutive failures",
                repo_name,
                metadata.failure_count,
            )
            return _RETRY_EXHAUSTED

        windows = plan_windows(metadata.indexed_through, now, self.window_duration)
        if not windows:
            logger.debug(
                "%s is up to date (indexed through %s)",
                repo_name,
                metadata.indexed_through.isoformat(),
            )
            return 0, 0

        total_commits = 0
        for i, window in enumerate(windows, 1):
            self.limiter.acquire(cancel_event)
            logger.debug(
                "Fetching %s window %d/%d: after %s until %s",
                repo_name,
                i,
                len(windows),
                window.start.isoformat(),
                window.until.isoformat() if window.until else "<none>",
            )

            commits: list[Commit]
            try:
                commits = list(self.fetch_commits(repo_name, window.start, window.until))
            except Exception as e:
                if not is_empty_repo_error(e, window.start, window.until):
                    raise
                logger.warning(
                    "Repository %s has no commits after %s, treating as empty",
                    repo_name,
                    window.start.isoformat(),
                )
                commits = []

            self.store.insert_commits(repo_id, commits, window.end)
            total_commits += len(commits)

            if self.progress_callback:
                self.progress_callback(i, len(windows), repo_name)

        logger.info(
            "Indexed %s: %d commit(s) in %d window(s), now indexed through %s",
            repo_name,
            total_commits,
            len(windows),
            windows[-1].end.isoformat(),
        )
        return len(windows), total_commits
