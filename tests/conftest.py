"""Shared fixtures for tests that need real git repositories."""

import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path

import pytest


def _run_git(repo: Path, *args: str, when: datetime | None = None) -> subprocess.CompletedProcess[str]:
    """Run a git command in the given repo with deterministic author info."""
    env = {
        **os.environ,
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@test.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@test.com",
    }
    if when is not None:
        env["GIT_AUTHOR_DATE"] = when.isoformat()
        env["GIT_COMMITTER_DATE"] = when.isoformat()
    return subprocess.run(
        ["git", "-C", str(repo), "-c", "commit.gpgsign=false", *args],
        check=True,
        capture_output=True,
        text=True,
        env=env,
    )


class GitRepo:
    """A throwaway git repository whose commits carry chosen dates."""

    def __init__(self, path: Path) -> None:
        self.path = path
        path.mkdir(parents=True)
        _run_git(path, "init", "-q")

    def commit(self, when: datetime, filename: str = "file.txt") -> str:
        """Change filename and commit it at the given time, returning the SHA."""
        target = self.path / filename
        previous = target.read_text() if target.exists() else ""
        target.write_text(previous + when.isoformat() + "\n")
        _run_git(self.path, "add", filename)
        _run_git(self.path, "commit", "-q", "-m", f"Update {filename}", when=when)
        return _run_git(self.path, "rev-parse", "HEAD").stdout.strip()


@pytest.fixture
def make_git_repo(tmp_path: Path):
    """Factory fixture creating empty git repositories under tmp_path."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    def factory(name: str = "repo") -> GitRepo:
        return GitRepo(tmp_path / "repos" / name)

    return factory
