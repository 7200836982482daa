"""Indexing service for commit-indexer.

Wires the SQLite store, git fetcher and rate limiter into a CommitIndexer and
runs a pass. Creates its own database connection per invocation, so a pass
can run on a background thread.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from commit_indexer.config import Config
from commit_indexer.indexers.base import IndexResult

logger = logging.getLogger(__name__)

LIMITER_NAME = "CommitIndexer"


def _record_failures(store, result: IndexResult) -> None:
    """Count each failed repository of a pass against its metadata."""
    for failure in result.failures:
        store.record_failure(failure.repo_id, failure.message)


class IndexingService:
    """Service for running commit indexing passes."""

    def run_pass(
        self,
        config: Config,
        only: Iterable[str] | None = None,
        window_days: int | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> IndexResult:
        """Index every configured repository once.

        Repository failures are recorded against the repository's metadata so
        that the retry policy can stop retrying a repository that keeps
        failing.

        Args:
            config: Application configuration.
            only: Optional subset of repository names to index.
            window_days: Override for config.window_duration_days.
            progress_callback: Optional callback (current, total, repo_name).
            cancel_event: Optional event to signal cancellation.
            clock: Optional clock; defaults to the current UTC time.

        Returns:
            IndexResult summarizing the pass.

        Raises:
            RepositoryIterationError: If the repository iterator fails. Failures
                collected before that point are still recorded.
        """
        from commit_indexer.db import get_connection, get_or_create_repo, init_db
        from commit_indexer.errors import RepositoryIterationError
        from commit_indexer.git import GitCommitFetcher
        from commit_indexer.indexers.commit_indexer import CommitIndexer
        from commit_indexer.ratelimit import TokenBucketLimiter
        from commit_indexer.repos import ConfigRepositoryIterator
        from commit_indexer.retry import RetryPolicy
        from commit_indexer.store import SQLiteCommitStore

        clock = clock or (lambda: datetime.now(timezone.utc))
        days = config.window_duration_days if window_days is None else window_days

        conn = get_connection(config)
        init_db(conn)

        try:
            disabled_ids = [
                get_or_create_repo(conn, name, path)
                for name, path in sorted(config.repositories.items())
                if not config.is_repository_enabled(name)
            ]
            store = SQLiteCommitStore(
                conn,
                default_enabled=config.default_enabled,
                disabled_repo_ids=disabled_ids,
            )

            indexer = CommitIndexer(
                repositories=ConfigRepositoryIterator(conn, config.repositories, only=only),
                fetch_commits=GitCommitFetcher(config.repositories, config.visible_paths),
                store=store,
                limiter=TokenBucketLimiter(
                    LIMITER_NAME,
                    config.rate_limit_per_second,
                    config.rate_limit_burst,
                ),
                max_historical_time=config.max_historical_time(clock()),
                window_duration=timedelta(days=days),
                clock=clock,
                retry_policy=RetryPolicy(config.max_failures),
                progress_callback=progress_callback,
            )
            try:
                result = indexer.index_all(cancel_event=cancel_event)
            except RepositoryIterationError as e:
                if e.result is not None:
                    _record_failures(store, e.result)
                raise

            _record_failures(store, result)
        finally:
            conn.close()

        return result

    def set_repository_enabled(
        self,
        config: Config,
        repo_name: str,
        enabled: bool,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Enable or disable commit indexing for a configured repository.

        A repository that was never indexed gets its metadata bootstrapped
        first, so the flag is honoured by the next pass.

        Args:
            config: Application configuration.
            repo_name: Name of a configured repository.
            enabled: New enabled flag.
            clock: Optional clock used for the bootstrap stamp.

        Raises:
            KeyError: If the repository is not configured.
        """
        from commit_indexer.db import get_connection, get_or_create_repo, init_db
        from commit_indexer.indexers.commit_indexer import get_metadata
        from commit_indexer.store import SQLiteCommitStore

        if repo_name not in config.repositories:
            raise KeyError(repo_name)

        now = (clock or (lambda: datetime.now(timezone.utc)))()
        conn = get_connection(config)
        init_db(conn)
        try:
            repo_id = get_or_create_repo(conn, repo_name, config.repositories[repo_name])
            store = SQLiteCommitStore(conn, default_enabled=config.default_enabled)
            get_metadata(store, repo_id, config.max_historical_time(now))
            store.set_enabled(repo_id, enabled)
            logger.info(
                "Commit indexing %s for %s", "enabled" if enabled else "disabled", repo_name
            )
        finally:
            conn.close()

    def reset_repository_failures(self, config: Config, repo_name: str) -> bool:
        """Clear the consecutive failure count of a repository.

        Returns:
            False if the repository is unknown to the database.
        """
        from commit_indexer.db import get_connection, get_repo_id, init_db
        from commit_indexer.store import SQLiteCommitStore

        conn = get_connection(config)
        init_db(conn)
        try:
            repo_id = get_repo_id(conn, repo_name)
            if repo_id is None:
                return False
            SQLiteCommitStore(conn).reset_failures(repo_id)
            logger.info("Cleared failure count for %s", repo_name)
            return True
        finally:
            conn.close()
