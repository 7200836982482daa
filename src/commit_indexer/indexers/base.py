"""Result types for indexing passes."""

from dataclasses import dataclass, field


@dataclass
class RepositoryFailure:
    """A repository whose indexing failed during a pass."""

    repo_name: str
    repo_id: int
    message: str


@dataclass
class IndexResult:
    """Summary of an indexing pass."""

    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    total_found: int = 0
    windows: int = 0
    commits: int = 0
    cancelled: bool = False
    failures: list[RepositoryFailure] = field(default_factory=list)
    retry_exhausted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True if no repository failed and the pass ran to completion."""
        return not self.failures and not self.cancelled

    def __str__(self) -> str:
        return (
            f"Indexed: {self.indexed}, Skipped: {self.skipped}, "
            f"Errors: {self.errors}, Total found: {self.total_found}, "
            f"Windows: {self.windows}, Commits: {self.commits}"
        )
