"""Status service for commit-indexer.

Provides database statistics, per-repository index state and point-in-time
commit queries. Each method creates its own database connection for thread
safety.
"""

import logging
from datetime import datetime

from commit_indexer.config import Config
from commit_indexer.models import Commit

logger = logging.getLogger(__name__)


class RepositoryNotFoundError(LookupError):
    """Raised when a repository name is not known to the index."""


class StatusService:
    """Service for querying index state and indexed history."""

    def get_overview(self, config: Config) -> dict:
        """Get high-level index statistics.

        Args:
            config: Application configuration.

        Returns:
            Dict with keys: repository_count, commit_count, failing_count,
            db_size_mb, last_indexed.
        """
        from commit_indexer.db import get_connection, init_db

        if not config.db_path.exists():
            return {
                "repository_count": 0,
                "commit_count": 0,
                "failing_count": 0,
                "db_size_mb": 0.0,
                "last_indexed": None,
            }

        conn = get_connection(config)
        init_db(conn)
        try:
            repo_count = conn.execute(
                "SELECT COUNT(*) as cnt FROM repos"
            ).fetchone()["cnt"]
            commit_count = conn.execute(
                "SELECT COUNT(*) as cnt FROM commit_index"
            ).fetchone()["cnt"]
            failing_count = conn.execute(
                "SELECT COUNT(*) as cnt FROM commit_index_metadata WHERE failure_count > 0"
            ).fetchone()["cnt"]
            last_indexed = conn.execute(
                "SELECT MAX(last_indexed_at) as ts FROM commit_index_metadata"
            ).fetchone()["ts"]

            db_size_mb = config.db_path.stat().st_size / (1024 * 1024)

            return {
                "repository_count": repo_count,
                "commit_count": commit_count,
                "failing_count": failing_count,
                "db_size_mb": round(db_size_mb, 1),
                "last_indexed": last_indexed,
            }
        finally:
            conn.close()

    def get_repositories(self, config: Config) -> list[dict]:
        """Get every known repository with its index state.

        Args:
            config: Application configuration.

        Returns:
            List of dicts with keys: name, path, enabled, indexed_through,
            commit_count, failure_count, last_error. Repositories that were
            never indexed have enabled and indexed_through set to None.
        """
        from commit_indexer.db import get_connection, init_db
        from commit_indexer.store import from_db_timestamp

        if not config.db_path.exists():
            return []

        conn = get_connection(config)
        init_db(conn)
        try:
            rows = conn.execute("""
                SELECT r.name, r.path, m.enabled, m.last_indexed_at,
                       COALESCE(m.failure_count, 0) as failure_count, m.last_error,
                       (SELECT COUNT(*) FROM commit_index c WHERE c.repo_id = r.id) as commit_count
                FROM repos r
                LEFT JOIN commit_index_metadata m ON m.repo_id = r.id
                ORDER BY r.name
            """).fetchall()

            return [
                {
                    "name": row["name"],
                    "path": row["path"],
                    "enabled": None if row["enabled"] is None else bool(row["enabled"]),
                    "indexed_through": (
                        from_db_timestamp(row["last_indexed_at"])
                        if row["last_indexed_at"]
                        else None
                    ),
                    "commit_count": row["commit_count"],
                    "failure_count": row["failure_count"],
                    "last_error": row["last_error"],
                }
                for row in rows
            ]
        finally:
            conn.close()

    def get_commits_as_of(
        self, config: Config, repo_name: str, as_of: datetime
    ) -> tuple[list[Commit], datetime | None]:
        """Answer "which commits existed at as_of" from the index.

        Args:
            config: Application configuration.
            repo_name: Repository name.
            as_of: Point in time to query.

        Returns:
            Tuple of (commits oldest first, indexed-through stamp). The result
            is only complete when as_of is not later than the stamp.

        Raises:
            RepositoryNotFoundError: If the repository was never indexed.
        """
        from commit_indexer.db import get_connection, get_repo_id, init_db
        from commit_indexer.errors import MetadataNotFoundError
        from commit_indexer.store import SQLiteCommitStore

        if not config.db_path.exists():
            raise RepositoryNotFoundError(repo_name)

        conn = get_connection(config)
        init_db(conn)
        try:
            repo_id = get_repo_id(conn, repo_name)
            if repo_id is None:
                raise RepositoryNotFoundError(repo_name)

            store = SQLiteCommitStore(conn)
            try:
                indexed_through = store.get_metadata(repo_id).indexed_through
            except MetadataNotFoundError:
                indexed_through = None

            if indexed_through is None or as_of > indexed_through:
                logger.warning(
                    "%s is only indexed through %s; results for %s may be incomplete",
                    repo_name,
                    indexed_through.isoformat() if indexed_through else "never",
                    as_of.isoformat(),
                )
            return store.get_commits_as_of(repo_id, as_of), indexed_through
        finally:
            conn.close()
