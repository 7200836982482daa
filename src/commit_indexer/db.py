"""Database initialization, connection management, and migrations for commit-indexer."""

import logging
import sqlite3
from pathlib import Path

from commit_indexer.config import Config

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


def get_connection(config: Config) -> sqlite3.Connection:
    """Open a SQLite connection with pragmas set.

    Args:
        config: Application configuration.

    Returns:
        Configured sqlite3.Connection.
    """
    db_path = config.db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row

    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist.

    Args:
        conn: SQLite connection.
    """
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS repos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            path TEXT,
            created_at TEXT DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS commit_index (
            repo_id INTEGER NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
            commit_id TEXT NOT NULL,
            committed_at TEXT NOT NULL,
            PRIMARY KEY (repo_id, commit_id)
        );

        CREATE INDEX IF NOT EXISTS commit_index_repo_time
            ON commit_index (repo_id, committed_at);

        CREATE TABLE IF NOT EXISTS commit_index_metadata (
            repo_id INTEGER PRIMARY KEY REFERENCES repos(id) ON DELETE CASCADE,
            enabled INTEGER NOT NULL DEFAULT 1,
            last_indexed_at TEXT NOT NULL
        );

        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        );
    """
    )

    # A fresh database starts at version 1 and is brought up to date by migrate()
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        conn.execute("INSERT INTO meta (key, value) VALUES ('schema_version', '1')")
    conn.commit()

    migrate(conn)

    logger.info("Database initialized (schema version %d)", SCHEMA_VERSION)


def migrate(conn: sqlite3.Connection) -> None:
    """Run any pending schema migrations.

    Args:
        conn: SQLite connection.
    """
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        # Fresh database, init will handle it
        init_db(conn)
        return

    current_version = int(row["value"])

    if current_version >= SCHEMA_VERSION:
        logger.debug("Database schema is up to date (version %d)", current_version)
        return

    if current_version < 2:
        # Track consecutive indexing failures per repository.
        conn.execute(
            "ALTER TABLE commit_index_metadata "
            "ADD COLUMN failure_count INTEGER NOT NULL DEFAULT 0"
        )
        conn.execute("ALTER TABLE commit_index_metadata ADD COLUMN last_error TEXT")
        conn.commit()
        logger.info("Migration v2: added failure tracking to commit_index_metadata")

    conn.execute(
        "UPDATE meta SET value = ? WHERE key = 'schema_version'",
        (str(SCHEMA_VERSION),),
    )
    conn.commit()
    logger.info("Database migrated to schema version %d", SCHEMA_VERSION)


def get_or_create_repo(
    conn: sqlite3.Connection, name: str, path: Path | None = None
) -> int:
    """Get or create a repository by name.

    Args:
        conn: SQLite connection.
        name: Repository name.
        path: Optional local path. If provided on an existing repository,
            the stored path is updated.

    Returns:
        The repository ID.
    """
    path_str = str(path) if path else None

    row = conn.execute("SELECT id, path FROM repos WHERE name = ?", (name,)).fetchone()
    if row:
        if path_str and row["path"] != path_str:
            conn.execute("UPDATE repos SET path = ? WHERE id = ?", (path_str, row["id"]))
            conn.commit()
        return row["id"]

    cursor = conn.execute(
        "INSERT INTO repos (name, path) VALUES (?, ?)", (name, path_str)
    )
    conn.commit()
    repo_id: int = cursor.lastrowid  # type: ignore[assignment]
    logger.info("Registered repository '%s' (id=%d)", name, repo_id)
    return repo_id


def get_repo_id(conn: sqlite3.Connection, name: str) -> int | None:
    """Look up a repository ID by name, or None if it was never registered."""
    row = conn.execute("SELECT id FROM repos WHERE name = ?", (name,)).fetchone()
    return row["id"] if row else None
