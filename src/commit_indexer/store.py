"""Commit and index metadata storage.

The indexer talks to storage through the ``CommitStore`` protocol. The
SQLite implementation keeps the commit rows and the indexed-through stamp in
the same database so that a window's commits and its metadata advance are
written in one transaction.
"""

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Protocol

from commit_indexer.errors import MetadataNotFoundError
from commit_indexer.models import Commit, CommitIndexMetadata

logger = logging.getLogger(__name__)


class CommitStore(Protocol):
    """Storage operations the commit indexer depends on."""

    def get_metadata(self, repo_id: int) -> CommitIndexMetadata:
        """Return metadata for a repository or raise MetadataNotFoundError."""
        ...

    def upsert_metadata_stamp(
        self, repo_id: int, indexed_through: datetime
    ) -> CommitIndexMetadata:
        """Create the metadata record if missing and return it."""
        ...

    def insert_commits(
        self, repo_id: int, commits: Sequence[Commit], indexed_through: datetime
    ) -> None:
        """Persist commits and advance indexed_through atomically."""
        ...


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexical order equal to chronological order, which the
    SQL comparisons below rely on. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    """Parse a timestamp written by to_db_timestamp."""
    return datetime.fromisoformat(value)


class SQLiteCommitStore:
    """CommitStore backed by the commit-indexer SQLite database."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        default_enabled: bool = True,
        disabled_repo_ids: Iterable[int] = (),
    ) -> None:
        """Initialize the store.

        Args:
            conn: Connection to a database prepared with ``init_db``.
            default_enabled: Enabled flag given to newly created metadata.
            disabled_repo_ids: Repositories whose new metadata starts disabled
                regardless of default_enabled.
        """
        self.conn = conn
        self.default_enabled = default_enabled
        self.disabled_repo_ids = set(disabled_repo_ids)

    def _enabled_for(self, repo_id: int) -> int:
        return int(self.default_enabled and repo_id not in self.disabled_repo_ids)

    def _row_to_metadata(self, row: sqlite3.Row) -> CommitIndexMetadata:
        return CommitIndexMetadata(
            repo_id=row["repo_id"],
            enabled=bool(row["enabled"]),
            indexed_through=from_db_timestamp(row["last_indexed_at"]),
            failure_count=row["failure_count"],
            last_error=row["last_error"],
        )

    def get_metadata(self, repo_id: int) -> CommitIndexMetadata:
        """Fetch the metadata record for a repository.

        Raises:
            MetadataNotFoundError: If the repository has never been stamped.
        """
        row = self.conn.execute(
            "SELECT repo_id, enabled, last_indexed_at, failure_count, last_error "
            "FROM commit_index_metadata WHERE repo_id = ?",
            (repo_id,),
        ).fetchone()
        if row is None:
            raise MetadataNotFoundError(repo_id)
        return self._row_to_metadata(row)

    def upsert_metadata_stamp(
        self, repo_id: int, indexed_through: datetime
    ) -> CommitIndexMetadata:
        """Create or advance the metadata record for a repository.

        An existing stamp is never moved backwards.

        Returns:
            The metadata as stored after the upsert.
        """
        self.conn.execute(
            "INSERT INTO commit_index_metadata (repo_id, enabled, last_indexed_at) "
            "VALUES (?, ?, ?) "
            "ON CONFLICT(repo_id) DO UPDATE SET "
            "last_indexed_at = MAX(last_indexed_at, excluded.last_indexed_at)",
            (repo_id, self._enabled_for(repo_id), to_db_timestamp(indexed_through)),
        )
        self.conn.commit()
        return self.get_metadata(repo_id)

    def insert_commits(
        self, repo_id: int, commits: Sequence[Commit], indexed_through: datetime
    ) -> None:
        """Store a window's commits and advance the indexed-through stamp.

        Both writes happen in one transaction. Commits already present for the
        repository are ignored, so replaying a window is harmless. A
        successful write also clears the repository's failure count.

        Args:
            repo_id: Repository the commits belong to.
            commits: Commits found in the window, possibly empty.
            indexed_through: End of the window.
        """
        try:
            self.conn.executemany(
                "INSERT OR IGNORE INTO commit_index (repo_id, commit_id, committed_at) "
                "VALUES (?, ?, ?)",
                [(repo_id, c.sha, to_db_timestamp(c.committed_at)) for c in commits],
            )
            self.conn.execute(
                "INSERT INTO commit_index_metadata (repo_id, enabled, last_indexed_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(repo_id) DO UPDATE SET "
                "last_indexed_at = MAX(last_indexed_at, excluded.last_indexed_at), "
                "failure_count = 0, last_error = NULL",
                (repo_id, self._enabled_for(repo_id), to_db_timestamp(indexed_through)),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        logger.debug(
            "Stored %d commit(s) for repo %d through %s",
            len(commits),
            repo_id,
            indexed_through.isoformat(),
        )

    def record_failure(self, repo_id: int, message: str) -> None:
        """Increment the consecutive failure count for a repository."""
        self.conn.execute(
            "UPDATE commit_index_metadata "
            "SET failure_count = failure_count + 1, last_error = ? WHERE repo_id = ?",
            (message, repo_id),
        )
        self.conn.commit()

    def reset_failures(self, repo_id: int) -> None:
        self.conn.execute(
            "UPDATE commit_index_metadata "
            "SET failure_count = 0, last_error = NULL WHERE repo_id = ?",
            (repo_id,),
        )
        self.conn.commit()

    def set_enabled(self, repo_id: int, enabled: bool) -> None:
        """Enable or disable indexing for a repository.

        Raises:
            MetadataNotFoundError: If the repository has no metadata record.
        """
        cursor = self.conn.execute(
            "UPDATE commit_index_metadata SET enabled = ? WHERE repo_id = ?",
            (int(enabled), repo_id),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise MetadataNotFoundError(repo_id)

    def get_commits_as_of(self, repo_id: int, as_of: datetime) -> list[Commit]:
        """Return the indexed commits that existed at a point in time.

        Args:
            repo_id: Repository to query.
            as_of: Point in time; commits dated at or before it are returned.

        Returns:
            Commits ordered oldest first.
        """
        rows = self.conn.execute(
            "SELECT commit_id, committed_at FROM commit_index "
            "WHERE repo_id = ? AND committed_at <= ? "
            "ORDER BY committed_at, commit_id",
            (repo_id, to_db_timestamp(as_of)),
        ).fetchall()
        return [
            Commit(sha=row["commit_id"], committed_at=from_db_timestamp(row["committed_at"]))
            for row in rows
        ]

    def count_commits(self, repo_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM commit_index WHERE repo_id = ?", (repo_id,)
        ).fetchone()
        return row["cnt"]
