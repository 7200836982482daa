"""Exception types for commit-indexer and empty-repository classification."""

from datetime import datetime


class CommitIndexerError(Exception):
    """Base class for commit-indexer errors."""


class MetadataNotFoundError(CommitIndexerError):
    """Raised by a store when a repository has no index metadata yet."""

    def __init__(self, repo_id: int) -> None:
        super().__init__(f"no commit index metadata for repository {repo_id}")
        self.repo_id = repo_id


class IndexingCancelled(CommitIndexerError):
    """Raised when an indexing pass is cancelled through its cancel event."""


class RepositoryIterationError(CommitIndexerError):
    """Raised when the repository iterator fails and the pass cannot continue.

    Attributes:
        result: Partial IndexResult of the pass up to the failure, including
            the repository failures collected so far. None if unavailable.
    """

    def __init__(self, message: str, result=None) -> None:
        super().__init__(message)
        self.result = result


class FetchError(CommitIndexerError):
    """Raised when commits for a repository could not be fetched."""


def _format_bound(value: datetime | None) -> str:
    return "<none>" if value is None else value.isoformat()


class EmptyRepositoryError(CommitIndexerError):
    """Raised by a fetcher when a repository has no history in the requested range.

    The bounds are kept as attributes so callers can match the error against
    the exact request that produced it.

    Attributes:
        after: Exclusive lower bound of the request.
        until: Inclusive upper bound of the request, or None if unbounded.
        restricted: True if the range only looked empty because history is
            filtered by sub-repository visibility.
    """

    def __init__(
        self, after: datetime, until: datetime | None, restricted: bool = False
    ) -> None:
        message = (
            f"no commits found after {_format_bound(after)} "
            f"until {_format_bound(until)}: repository is empty"
        )
        if restricted:
            message += " or not visible under sub-repository permissions"
        super().__init__(message)
        self.after = after
        self.until = until
        self.restricted = restricted


def _causal_chain(err: BaseException):
    """Yield err and every exception it was raised from or while handling."""
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def is_empty_repo_error(
    err: BaseException | None, after: datetime, until: datetime | None
) -> bool:
    """Check whether err signals an empty repository for the given bounds.

    The whole causal chain is searched, so an EmptyRepositoryError wrapped in
    other exceptions still matches. Bounds must equal the ones the request
    was issued with.

    Args:
        err: Exception raised by a fetch, or None.
        after: Lower bound the fetch was issued with.
        until: Upper bound the fetch was issued with (None if unbounded).

    Returns:
        True if err is an empty-repository signal for exactly these bounds.
    """
    if err is None:
        return False
    for exc in _causal_chain(err):
        if (
            isinstance(exc, EmptyRepositoryError)
            and exc.after == after
            and exc.until == until
        ):
            return True
    return False
