"""Repository enumeration for indexing passes."""

import logging
import sqlite3
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

from commit_indexer.db import get_or_create_repo

logger = logging.getLogger(__name__)

RepositoryVisitor = Callable[[str, int], None]


class RepositoryIterator(Protocol):
    """Sequential source of (name, id) pairs for every repository to consider."""

    def for_each(self, visit: RepositoryVisitor) -> None:
        """Call visit for each repository, stopping at the first exception."""
        ...


class ConfigRepositoryIterator:
    """Iterates the repositories configured by name, registering each in the DB."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        repositories: dict[str, Path],
        only: Iterable[str] | None = None,
    ) -> None:
        self.conn = conn
        self.repositories = repositories
        self.only = set(only) if only is not None else None

    def for_each(self, visit: RepositoryVisitor) -> None:
        for name in sorted(self.repositories):
            if self.only is not None and name not in self.only:
                continue
            repo_id = get_or_create_repo(self.conn, name, self.repositories[name])
            visit(name, repo_id)
