"""Record types shared by the fetchers, stores and indexer."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Commit:
    """A commit as recorded in the index."""

    sha: str
    committed_at: datetime


@dataclass
class CommitIndexMetadata:
    """Per-repository indexing state.

    ``indexed_through`` only ever moves forward; it marks the point up to
    which history has been checked, whether or not it contained commits.
    """

    repo_id: int
    enabled: bool
    indexed_through: datetime
    failure_count: int = 0
    last_error: str | None = None
