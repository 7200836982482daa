"""Commit fetcher for local git repositories.

Lists commits in a time range with ``git log``. Committer dates are used as
the commit timestamps, and results are filtered to the (after, until] range
the indexer asked for.
"""

import logging
import math
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from commit_indexer.errors import EmptyRepositoryError, FetchError
from commit_indexer.models import Commit

logger = logging.getLogger(__name__)

# stderr fragments git prints when HEAD has no commits yet
_EMPTY_REPO_MARKERS = (
    "does not have any commits yet",
    "bad default revision 'HEAD'",
)


class CommitFetcher(Protocol):
    """Callable that lists a repository's commits in a time range."""

    def __call__(
        self, repo_name: str, after: datetime, until: datetime | None
    ) -> list[Commit]: ...


def _run_git(repo_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    """Run a git command in the given repo directory.

    Args:
        repo_path: Path to the git repository.
        *args: Git subcommand and arguments.

    Returns:
        CompletedProcess result.

    Raises:
        subprocess.CalledProcessError: If the git command fails.
    """
    return subprocess.run(
        ["git", "-C", str(repo_path), *args],
        capture_output=True,
        text=True,
        check=True,
    )


def _parse_log(output: str) -> list[Commit]:
    """Parse ``git log --format=%H%x00%cI`` output into commits."""
    commits: list[Commit] = []
    for line in output.strip().split("\n"):
        if not line:
            continue
        parts = line.split("\x00")
        if len(parts) != 2:
            logger.debug("Skipping malformed log line: %r", line)
            continue
        sha, committed = parts
        committed_at = datetime.fromisoformat(committed).astimezone(timezone.utc)
        commits.append(Commit(sha=sha, committed_at=committed_at))
    return commits


class GitCommitFetcher:
    """Fetches commits from git repositories checked out on local disk."""

    def __init__(
        self,
        repositories: dict[str, Path],
        visible_paths: dict[str, list[str]] | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            repositories: Mapping of repository name to its working tree.
            visible_paths: Optional per-repository pathspecs. When set for a
                repository, only commits touching those paths are visible.
        """
        self.repositories = repositories
        self.visible_paths = visible_paths or {}

    def __call__(
        self, repo_name: str, after: datetime, until: datetime | None
    ) -> list[Commit]:
        """List commits with after < committed_at <= until, oldest first.

        Args:
            repo_name: Name of a configured repository.
            after: Exclusive lower bound.
            until: Inclusive upper bound, or None for no upper bound.

        Returns:
            Commits in the range, oldest first.

        Raises:
            EmptyRepositoryError: If the repository has no commits at all.
            FetchError: If the repository is unknown or git fails otherwise.
        """
        repo_path = self.repositories.get(repo_name)
        if repo_path is None:
            raise FetchError(f"unknown repository: {repo_name}")

        pathspecs = self.visible_paths.get(repo_name, [])
        # git dates have second resolution; widen to whole seconds and filter below
        args = [
            "log",
            "--format=%H%x00%cI",
            f"--since=@{math.floor(after.timestamp())}",
        ]
        if until is not None:
            args.append(f"--until=@{math.ceil(until.timestamp())}")
        if pathspecs:
            args.extend(["--", *pathspecs])

        try:
            result = _run_git(repo_path, *args)
        except FileNotFoundError as e:
            raise FetchError(f"git is not available: {e}") from e
        except subprocess.CalledProcessError as e:
            stderr = e.stderr or ""
            if any(marker in stderr for marker in _EMPTY_REPO_MARKERS):
                raise EmptyRepositoryError(
                    after, until, restricted=bool(pathspecs)
                ) from e
            raise FetchError(
                f"git log failed for {repo_name}: {stderr.strip() or e}"
            ) from e

        commits = [
            c
            for c in _parse_log(result.stdout)
            if c.committed_at > after and (until is None or c.committed_at <= until)
        ]
        # git log returns newest first
        commits.sort(key=lambda c: c.committed_at)

        logger.debug(
            "Fetched %d commit(s) for %s after %s until %s",
            len(commits),
            repo_name,
            after.isoformat(),
            until.isoformat() if until else "now",
        )
        return commits
