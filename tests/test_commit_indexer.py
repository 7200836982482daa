"""Tests for the windowed commit indexer.

Uses in-memory fakes for the repository iterator, fetcher and store so that
every fetch request and every stored window can be asserted exactly.
"""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from commit_indexer.config import Config
from commit_indexer.errors import (
    EmptyRepositoryError,
    FetchError,
    MetadataNotFoundError,
    RepositoryIterationError,
)
from commit_indexer.indexers.commit_indexer import CommitIndexer, get_metadata
from commit_indexer.models import Commit, CommitIndexMetadata
from commit_indexer.ratelimit import TokenBucketLimiter
from commit_indexer.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dt(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeRepositoryIterator:
    """Visits a fixed list of (name, id) pairs."""

    def __init__(self, repos: list[tuple[str, int]]) -> None:
        self.repos = repos

    def for_each(self, visit) -> None:
        for name, repo_id in self.repos:
            visit(name, repo_id)


class FakeFetcher:
    """Serves commits from a dict, honouring (after, until] bounds."""

    def __init__(self, history: dict[str, list[Commit]] | None = None) -> None:
        self.history = history or {}
        self.calls: list[tuple[str, datetime, datetime | None]] = []

    def __call__(self, repo_name, after, until):
        self.calls.append((repo_name, after, until))
        return [
            c
            for c in self.history.get(repo_name, [])
            if c.committed_at > after and (until is None or c.committed_at <= until)
        ]


class InMemoryCommitStore:
    """CommitStore keeping metadata in a dict and recording every insert."""

    def __init__(self, metadata: list[CommitIndexMetadata] | None = None) -> None:
        self.metadata = {m.repo_id: m for m in metadata or []}
        self.inserts: list[tuple[int, list[Commit], datetime]] = []

    def get_metadata(self, repo_id):
        if repo_id not in self.metadata:
            raise MetadataNotFoundError(repo_id)
        return self.metadata[repo_id]

    def upsert_metadata_stamp(self, repo_id, indexed_through):
        meta = self.metadata.setdefault(
            repo_id, CommitIndexMetadata(repo_id, True, indexed_through)
        )
        meta.indexed_through = max(meta.indexed_through, indexed_through)
        return meta

    def insert_commits(self, repo_id, commits, indexed_through):
        self.inserts.append((repo_id, list(commits), indexed_through))
        meta = self.metadata[repo_id]
        meta.indexed_through = max(meta.indexed_through, indexed_through)


def _make_indexer(
    repos: list[tuple[str, int]],
    fetcher,
    store,
    now: datetime,
    window: timedelta = timedelta(0),
    **kwargs,
) -> CommitIndexer:
    defaults = dict(
        limiter=TokenBucketLimiter("TestCommitIndexer", rate=0),
        max_historical_time=now - timedelta(days=365),
        window_duration=window,
        clock=lambda: now,
    )
    defaults.update(kwargs)
    return CommitIndexer(
        repositories=FakeRepositoryIterator(repos),
        fetch_commits=fetcher,
        store=store,
        **defaults,
    )


# ===================================================================
# get_metadata
# ===================================================================


class TestGetMetadata:
    """Tests for the get-or-create metadata helper."""

    def test_existing_metadata_returned_unchanged(self):
        existing = CommitIndexMetadata(1, True, _dt(2020, 1, 1))
        store = MagicMock(wraps=InMemoryCommitStore([existing]))

        meta = get_metadata(store, 1, _dt(2019, 1, 1))

        assert meta is existing
        store.upsert_metadata_stamp.assert_not_called()

    def test_missing_metadata_bootstrapped(self):
        store = MagicMock(wraps=InMemoryCommitStore())

        meta = get_metadata(store, 7, _dt(2019, 1, 1))

        store.upsert_metadata_stamp.assert_called_once_with(7, _dt(2019, 1, 1))
        assert meta.repo_id == 7
        assert meta.indexed_through == _dt(2019, 1, 1)
        assert meta.enabled is True

    def test_other_errors_propagate(self):
        store = MagicMock()
        store.get_metadata.side_effect = RuntimeError("db locked")

        with pytest.raises(RuntimeError):
            get_metadata(store, 1, _dt(2019, 1, 1))
        store.upsert_metadata_stamp.assert_not_called()


# ===================================================================
# CommitIndexer
# ===================================================================


class TestCommitIndexerSingleWindow:
    """Passes with a zero window duration."""

    def test_multiple_repositories(self):
        """Enabled repositories get one insert through now; disabled ones are skipped."""
        now = _dt(2020, 6, 1)
        last = _dt(2020, 5, 1)
        ref1 = Commit("ref1", _dt(2020, 5, 10))
        ref2 = Commit("ref2", _dt(2020, 5, 12))
        big1 = Commit("bigref1", _dt(2020, 5, 11))
        big2 = Commit("bigref2", _dt(2020, 5, 13))

        store = MagicMock(
            wraps=InMemoryCommitStore(
                [
                    CommitIndexMetadata(1, False, last),
                    CommitIndexMetadata(2, True, last),
                    CommitIndexMetadata(3, True, last),
                ]
            )
        )
        fetcher = FakeFetcher(
            {"repo-one": [ref1, ref2], "really-big-repo": [big1, big2]}
        )
        indexer = _make_indexer(
            [("repo-one", 1), ("really-big-repo", 2), ("no-commits", 3)],
            fetcher,
            store,
            now,
        )

        result = indexer.index_all()

        assert fetcher.calls == [
            ("really-big-repo", last, None),
            ("no-commits", last, None),
        ]
        assert store.insert_commits.call_args_list[0].args == (2, [big1, big2], now)
        assert store.insert_commits.call_args_list[1].args == (3, [], now)
        assert store.insert_commits.call_count == 2
        assert store.get_metadata.call_count == 3

        assert result.total_found == 3
        assert result.indexed == 2
        assert result.skipped == 1
        assert result.errors == 0
        assert result.windows == 2
        assert result.commits == 2
        assert result.ok

    def test_bootstraps_new_repository(self):
        """A repository without metadata starts at max_historical_time."""
        now = _dt(2020, 6, 1)
        floor = _dt(2020, 5, 1)
        store = MagicMock(wraps=InMemoryCommitStore())
        fetcher = FakeFetcher({"fresh": [Commit("a", _dt(2020, 4, 1)), Commit("b", _dt(2020, 5, 2))]})
        indexer = _make_indexer([("fresh", 1)], fetcher, store, now, max_historical_time=floor)

        result = indexer.index_all()

        store.upsert_metadata_stamp.assert_called_once_with(1, floor)
        assert fetcher.calls == [("fresh", floor, None)]
        assert store.inserts == [(1, [Commit("b", _dt(2020, 5, 2))], now)]
        assert store.metadata[1].indexed_through == now
        assert result.indexed == 1

    def test_up_to_date_repository_not_fetched(self):
        now = _dt(2020, 6, 1)
        store = InMemoryCommitStore([CommitIndexMetadata(1, True, now)])
        fetcher = FakeFetcher()

        result = _make_indexer([("current", 1)], fetcher, store, now).index_all()

        assert fetcher.calls == []
        assert store.inserts == []
        assert result.indexed == 1
        assert result.windows == 0

    def test_clock_sampled_once_per_pass(self):
        """Every repository in a pass is indexed through the same instant."""
        ticks = iter([_dt(2020, 6, 1), _dt(2020, 6, 2), _dt(2020, 6, 3)])
        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1)), CommitIndexMetadata(2, True, _dt(2020, 5, 1))]
        )
        indexer = _make_indexer(
            [("a", 1), ("b", 2)], FakeFetcher(), store, _dt(2020, 6, 1), clock=lambda: next(ticks)
        )

        indexer.index_all()

        assert [through for _, _, through in store.inserts] == [_dt(2020, 6, 1)] * 2


class TestCommitIndexerWindowing:
    """Passes with a positive window duration."""

    def test_thirty_day_windows(self):
        """Repositories behind by more than a window are indexed window by window."""
        now = _dt(2020, 6, 1)
        recent = _dt(2020, 5, 5)
        older = _dt(2020, 4, 5)
        end_of_april5_window = older + timedelta(days=30)

        ref1 = Commit("ref1", _dt(2020, 5, 10))
        ref2 = Commit("ref2", _dt(2020, 5, 12))
        big1 = Commit("bigref1", _dt(2020, 4, 17))
        big2 = Commit("bigref2", _dt(2020, 4, 18))
        big3 = Commit("bigref3", _dt(2020, 5, 17))
        big4 = Commit("bigref4", _dt(2020, 5, 18))

        store = MagicMock(
            wraps=InMemoryCommitStore(
                [
                    CommitIndexMetadata(1, True, recent),
                    CommitIndexMetadata(2, True, older),
                    CommitIndexMetadata(3, True, recent),
                    CommitIndexMetadata(4, True, older),
                    CommitIndexMetadata(5, True, older),
                ]
            )
        )
        fetcher = FakeFetcher(
            {
                "repo-one": [ref1, ref2],
                "really-big-repo": [big1, big2, big3, big4],
                "only-recent": [big4],
            }
        )
        indexer = _make_indexer(
            [
                ("repo-one", 1),
                ("really-big-repo", 2),
                ("no-commits-recent", 3),
                ("no-commits-not-recent", 4),
                ("only-recent", 5),
            ],
            fetcher,
            store,
            now,
            window=timedelta(days=30),
        )

        result = indexer.index_all()

        assert [c.args for c in store.insert_commits.call_args_list] == [
            (1, [ref1, ref2], now),
            (2, [big1, big2], end_of_april5_window),
            (2, [big3, big4], now),
            (3, [], now),
            (4, [], end_of_april5_window),
            (4, [], now),
            (5, [], end_of_april5_window),
            (5, [big4], now),
        ]
        assert ("really-big-repo", older, end_of_april5_window) in fetcher.calls
        assert ("really-big-repo", end_of_april5_window, None) in fetcher.calls
        assert store.get_metadata.call_count == 5
        assert result.windows == 8
        assert result.commits == 5

    def test_two_windows_across_1999(self):
        """Four commits two windows behind are stored in exactly two inserts."""
        now = _dt(1999, 12, 1)
        last = _dt(1999, 10, 10)
        commits = [
            Commit("c1", _dt(1999, 10, 15)),
            Commit("c2", _dt(1999, 10, 20)),
            Commit("c3", _dt(1999, 11, 15)),
            Commit("c4", _dt(1999, 11, 20)),
        ]
        store = InMemoryCommitStore([CommitIndexMetadata(1, True, last)])
        indexer = _make_indexer(
            [("repo", 1)], FakeFetcher({"repo": commits}), store, now, window=timedelta(days=30)
        )

        indexer.index_all()

        assert store.inserts == [
            (1, commits[:2], last + timedelta(days=30)),
            (1, commits[2:], now),
        ]
        assert store.metadata[1].indexed_through == now

    def test_limiter_acquired_per_window(self):
        now = _dt(2020, 6, 1)
        store = InMemoryCommitStore([CommitIndexMetadata(1, True, _dt(2020, 4, 5))])
        limiter = MagicMock(spec=TokenBucketLimiter)

        _make_indexer(
            [("repo", 1)], FakeFetcher(), store, now, window=timedelta(days=30), limiter=limiter
        ).index_all()

        assert limiter.acquire.call_count == 2

    def test_progress_callback_per_window(self):
        now = _dt(2020, 6, 1)
        store = InMemoryCommitStore([CommitIndexMetadata(1, True, _dt(2020, 4, 5))])
        calls = []

        _make_indexer(
            [("repo", 1)],
            FakeFetcher(),
            store,
            now,
            window=timedelta(days=30),
            progress_callback=lambda cur, total, name: calls.append((cur, total, name)),
        ).index_all()

        assert calls == [(1, 2, "repo"), (2, 2, "repo")]


class TestCommitIndexerEmptyRepository:
    """Empty-repository signals from the fetcher."""

    def test_wrapped_empty_repo_error_treated_as_no_commits(self):
        now = _dt(2020, 6, 1)
        last = _dt(2020, 5, 1)

        def fetch(repo_name, after, until):
            try:
                raise EmptyRepositoryError(after, until)
            except EmptyRepositoryError as e:
                raise FetchError("git log failed") from e

        store = InMemoryCommitStore([CommitIndexMetadata(1, True, last)])
        result = _make_indexer([("empty", 1)], fetch, store, now).index_all()

        assert store.inserts == [(1, [], now)]
        assert store.metadata[1].indexed_through == now
        assert result.ok
        assert result.indexed == 1

    def test_empty_repo_error_for_other_bounds_is_a_failure(self):
        now = _dt(2020, 6, 1)
        last = _dt(2020, 5, 1)

        def fetch(repo_name, after, until):
            raise EmptyRepositoryError(after - timedelta(days=1), until)

        store = InMemoryCommitStore([CommitIndexMetadata(1, True, last)])
        result = _make_indexer([("odd", 1)], fetch, store, now).index_all()

        assert store.inserts == []
        assert store.metadata[1].indexed_through == last
        assert result.errors == 1


class TestCommitIndexerFailures:
    """Error isolation and propagation."""

    def test_repository_failure_does_not_stop_pass(self):
        now = _dt(2020, 6, 1)
        last = _dt(2020, 5, 1)
        good = FakeFetcher({"good": [Commit("a", _dt(2020, 5, 2))]})

        def fetch(repo_name, after, until):
            if repo_name == "broken":
                raise FetchError("boom")
            return good(repo_name, after, until)

        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, last), CommitIndexMetadata(2, True, last)]
        )
        result = _make_indexer([("broken", 1), ("good", 2)], fetch, store, now).index_all()

        assert store.inserts == [(2, [Commit("a", _dt(2020, 5, 2))], now)]
        assert store.metadata[1].indexed_through == last
        assert result.errors == 1
        assert result.indexed == 1
        assert result.failures[0].repo_name == "broken"
        assert result.failures[0].repo_id == 1
        assert "boom" in result.failures[0].message
        assert not result.ok

    def test_failure_keeps_earlier_windows(self):
        """Windows stored before a failing window stay stored."""
        now = _dt(2020, 6, 1)
        last = _dt(2020, 4, 5)
        calls = []

        def fetch(repo_name, after, until):
            calls.append(after)
            if len(calls) == 2:
                raise FetchError("timeout")
            return []

        store = InMemoryCommitStore([CommitIndexMetadata(1, True, last)])
        result = _make_indexer(
            [("flaky", 1)], fetch, store, now, window=timedelta(days=30)
        ).index_all()

        assert store.inserts == [(1, [], last + timedelta(days=30))]
        assert store.metadata[1].indexed_through == last + timedelta(days=30)
        assert result.errors == 1

    def test_store_failure_is_repository_local(self):
        now = _dt(2020, 6, 1)
        store = MagicMock(wraps=InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1)), CommitIndexMetadata(2, True, _dt(2020, 5, 1))]
        ))
        store.insert_commits.side_effect = [RuntimeError("disk full"), None]

        result = _make_indexer([("a", 1), ("b", 2)], FakeFetcher(), store, now).index_all()

        assert store.insert_commits.call_count == 2
        assert result.errors == 1
        assert result.indexed == 1

    def test_iterator_failure_raises(self):
        class BrokenIterator:
            def for_each(self, visit):
                visit("first", 1)
                raise RuntimeError("database is locked")

        store = InMemoryCommitStore([CommitIndexMetadata(1, True, _dt(2020, 5, 1))])
        indexer = _make_indexer([], FakeFetcher(), store, _dt(2020, 6, 1))
        indexer.repositories = BrokenIterator()

        with pytest.raises(RepositoryIterationError) as exc_info:
            indexer.index_all()

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(store.inserts) == 1
        assert exc_info.value.result.indexed == 1

    def test_iterator_failure_keeps_collected_failures(self):
        """Failures gathered before the iterator broke travel with the error."""

        class BrokenIterator:
            def for_each(self, visit):
                visit("broken", 1)
                visit("good", 2)
                raise RuntimeError("database is locked")

        def fetch(repo_name, after, until):
            if repo_name == "broken":
                raise FetchError("boom")
            return []

        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1)), CommitIndexMetadata(2, True, _dt(2020, 5, 1))]
        )
        indexer = _make_indexer([], fetch, store, _dt(2020, 6, 1))
        indexer.repositories = BrokenIterator()

        with pytest.raises(RepositoryIterationError) as exc_info:
            indexer.index_all()

        partial = exc_info.value.result
        assert [f.repo_name for f in partial.failures] == ["broken"]
        assert partial.errors == 1
        assert partial.indexed == 1


class TestCommitIndexerRetryPolicy:
    """Repositories past the failure cut-off are skipped."""

    @pytest.mark.parametrize("failures, fetched", [(9, True), (10, False)])
    def test_cutoff(self, failures: int, fetched: bool):
        now = _dt(2020, 6, 1)
        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1), failure_count=failures)]
        )
        fetcher = FakeFetcher()

        result = _make_indexer(
            [("repo", 1)], fetcher, store, now, retry_policy=RetryPolicy(max_failures=10)
        ).index_all()

        assert bool(fetcher.calls) is fetched
        assert result.skipped == (0 if fetched else 1)
        assert result.retry_exhausted == ([] if fetched else ["repo"])
        assert result.errors == 0

    def test_no_policy_always_retries(self):
        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1), failure_count=500)]
        )
        fetcher = FakeFetcher()

        _make_indexer([("repo", 1)], fetcher, store, _dt(2020, 6, 1)).index_all()

        assert len(fetcher.calls) == 1


class TestCommitIndexerCancellation:
    """Cancellation through the cancel event."""

    def test_preset_cancel_event(self):
        cancel = threading.Event()
        cancel.set()
        store = InMemoryCommitStore([CommitIndexMetadata(1, True, _dt(2020, 5, 1))])
        fetcher = FakeFetcher()

        result = _make_indexer([("repo", 1)], fetcher, store, _dt(2020, 6, 1)).index_all(
            cancel_event=cancel
        )

        assert result.cancelled
        assert not result.ok
        assert fetcher.calls == []
        assert result.total_found == 0

    def test_cancel_between_windows_keeps_stored_progress(self):
        now = _dt(2020, 6, 1)
        last = _dt(2020, 4, 5)
        cancel = threading.Event()
        inner = FakeFetcher()

        def fetch(repo_name, after, until):
            cancel.set()
            return inner(repo_name, after, until)

        store = InMemoryCommitStore(
            [CommitIndexMetadata(1, True, last), CommitIndexMetadata(2, True, last)]
        )
        result = _make_indexer(
            [("a", 1), ("b", 2)], fetch, store, now, window=timedelta(days=30)
        ).index_all(cancel_event=cancel)

        assert result.cancelled
        assert len(inner.calls) == 1
        assert store.inserts == [(1, [], last + timedelta(days=30))]
        assert store.metadata[2].indexed_through == last

    def test_fetch_interrupted_by_cancel_is_not_a_failure(self):
        """A fetch that dies because the pass was interrupted marks the pass cancelled."""
        last = _dt(2020, 5, 1)
        cancel = threading.Event()

        def fetch(repo_name, after, until):
            cancel.set()
            raise FetchError(f"git log failed for {repo_name}: ")

        store = InMemoryCommitStore([CommitIndexMetadata(1, True, last)])
        result = _make_indexer([("a", 1)], fetch, store, _dt(2020, 6, 1)).index_all(
            cancel_event=cancel
        )

        assert result.cancelled
        assert result.errors == 0
        assert result.failures == []
        assert store.inserts == []
        assert store.metadata[1].indexed_through == last

    def test_store_error_during_cancel_is_not_a_failure(self):
        cancel = threading.Event()
        store = MagicMock(wraps=InMemoryCommitStore(
            [CommitIndexMetadata(1, True, _dt(2020, 5, 1)), CommitIndexMetadata(2, True, _dt(2020, 5, 1))]
        ))

        def interrupted_insert(*args):
            cancel.set()
            raise RuntimeError("interrupted")

        store.insert_commits.side_effect = interrupted_insert
        fetcher = FakeFetcher()

        result = _make_indexer(
            [("a", 1), ("b", 2)], fetcher, store, _dt(2020, 6, 1)
        ).index_all(cancel_event=cancel)

        assert result.cancelled
        assert result.failures == []
        assert [call[0] for call in fetcher.calls] == ["a"]


class TestCommitIndexerWithSQLite:
    """Passes against the real SQLite store."""

    def test_second_pass_is_a_no_op(self, tmp_path: Path):
        from commit_indexer.db import get_connection, init_db
        from commit_indexer.store import SQLiteCommitStore

        conn = get_connection(Config(db_path=tmp_path / "test.db"))
        init_db(conn)
        conn.execute("INSERT INTO repos (id, name) VALUES (1, 'repo')")
        conn.commit()
        store = SQLiteCommitStore(conn)

        now = _dt(2020, 6, 1)
        fetcher = FakeFetcher({"repo": [Commit("a", _dt(2020, 5, 2)), Commit("b", _dt(2020, 5, 20))]})
        indexer = _make_indexer(
            [("repo", 1)],
            fetcher,
            store,
            now,
            window=timedelta(days=7),
            max_historical_time=_dt(2020, 5, 1),
        )

        first = indexer.index_all()
        calls_after_first = len(fetcher.calls)
        second = indexer.index_all()

        assert first.commits == 2
        assert len(fetcher.calls) == calls_after_first
        assert second.windows == 0
        assert store.count_commits(1) == 2
        assert store.get_metadata(1).indexed_through == now
        conn.close()
