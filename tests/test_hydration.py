from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests

from xrecon.hydration import HydrationRequestError, HydrationService, classify_error, retry_delay
from xrecon.models import Article, Author, Page, Post
from xrecon.sources.base import Source
from xrecon.sources.x_api import XApiError
from xrecon.store.sqlite_store import SQLiteStore
from xrecon.utils.cursor_utils import decode_cursor

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


def _article(post_id: str, timestamp: str = "2026-01-10T09:00:00Z", body: str | None = None) -> Post:
    return Post(
        id=post_id,
        text="https://t.co/abc",
        author=Author(handle="alice", name="Alice"),
        timestamp=timestamp,
        article=Article(title=f"Article {post_id}", text=body),
    )


class FakeSource(Source):
    def __init__(
        self,
        posts: list[Post] | None = None,
        *,
        bulk_error: Exception | None = None,
        lookup_errors: dict[str, Exception] | None = None,
    ) -> None:
        super().__init__(source_id="fake")
        self.posts = {post.id: post for post in posts or []}
        self.bulk_error = bulk_error
        self.lookup_errors = lookup_errors or {}
        self.bulk_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    def get_post(self, post_id: str) -> Post | None:
        self.single_calls.append(post_id)
        if post_id in self.lookup_errors:
            raise self.lookup_errors[post_id]
        return self.posts.get(post_id)

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        self.bulk_calls.append(list(post_ids))
        if self.bulk_error is not None:
            raise self.bulk_error
        return [self.posts[post_id] for post_id in post_ids if post_id in self.posts]

    def list_bookmarks(self, cursor: str | None = None, max_results: int = 20) -> Page:
        return Page()


def _service(store, source: Source, **kwargs) -> HydrationService:
    return HydrationService(store=store, source=source, clock=lambda: NOW, **kwargs)


def test_hydrates_pending_article_and_rerun_is_idempotent(store) -> None:
    store.upsert_post(_article("1"), "bookmark")
    source = FakeSource([_article("1", body="Full article body with substantial detail")])
    service = _service(store, source)

    first = service.run(limit=10)
    second = service.run(limit=10)

    assert first.processed == 1
    assert first.hydrated == 1
    assert first.rows[0].old_status == "pending"
    assert first.rows[0].new_status == "hydrated"
    assert first.rows[0].content_version == 2
    assert second.processed == 0
    assert second.rows == []
    assert source.bulk_calls == [["1"]]

    meta = store.get_content_meta("1")
    assert meta.content_status == "hydrated"
    assert meta.attempt_count == 1
    assert meta.content_fetched_at is not None


def test_seven_unresolved_attempts_end_missing(store) -> None:
    store.upsert_post(_article("1"), "bookmark")
    service = _service(store, FakeSource())

    results = [service.run(ids=["1"], max_attempts=7) for _ in range(7)]

    assert [result.failed for result in results[:6]] == [1] * 6
    assert results[5].rows[0].error_code == "RETRY_MISSING"
    assert results[6].missing == 1
    assert results[6].rows[0].error_code == "NOT_FOUND"

    meta = store.get_content_meta("1")
    assert meta.content_status == "missing"
    assert meta.error_code == "NOT_FOUND"
    assert meta.next_retry_at is None
    assert meta.attempt_count == 7


def test_lookup_errors_until_exhausted_end_missing_not_found(store) -> None:
    store.upsert_post(_article("1"), "bookmark")
    source = FakeSource(lookup_errors={"1": XApiError("X API returned 503", status_code=503)})
    service = _service(store, source)

    results = [service.run(ids=["1"], max_attempts=7) for _ in range(7)]

    assert [result.rows[0].error_code for result in results[:6]] == ["UNKNOWN"] * 6
    assert [result.failed for result in results[:6]] == [1] * 6
    assert results[6].missing == 1
    assert results[6].rows[0].error_code == "NOT_FOUND"

    meta = store.get_content_meta("1")
    assert meta.content_status == "missing"
    assert meta.error_code == "NOT_FOUND"
    assert meta.content_error == "X API returned 503"
    assert meta.attempt_count == 7


def test_failed_row_waits_for_backoff(store) -> None:
    store.upsert_post(_article("1"), "bookmark")
    service = _service(store, FakeSource())

    first = service.run()
    second = service.run()

    assert first.failed == 1
    assert store.get_content_meta("1").next_retry_at == "2026-02-01T13:00:00.000Z"
    assert second.processed == 0


def test_bulk_failure_falls_back_to_single_lookups(store) -> None:
    store.upsert_posts([_article("1"), _article("2")], "bookmark")
    source = FakeSource(
        [
            _article("1", body="Full article body with substantial detail"),
            _article("2", body="Second article body with enough text"),
        ],
        bulk_error=XApiError("X API returned 500", status_code=500),
    )

    result = _service(store, source).run()

    assert result.hydrated == 2
    assert source.single_calls == ["1", "2"]


def test_terminal_lookup_error_goes_straight_to_missing(store) -> None:
    store.upsert_posts([_article("1"), _article("2")], "bookmark")
    source = FakeSource(
        lookup_errors={
            "1": XApiError("X API returned 403", status_code=403),
            "2": XApiError("X API returned 429", status_code=429),
        }
    )

    result = _service(store, source).run(max_attempts=7)

    by_id = {row.id: row for row in result.rows}
    assert by_id["1"].new_status == "missing"
    assert by_id["1"].error_code == "UNAUTHORIZED"
    assert by_id["2"].new_status == "failed"
    assert by_id["2"].error_code == "RATE_LIMITED"
    assert result.missing == 1
    assert result.failed == 1
    assert result.ok is False


def test_dry_run_reports_without_claiming(store) -> None:
    store.upsert_posts([_article("1"), _article("2")], "bookmark")
    source = FakeSource()

    result = _service(store, source).run(dry_run=True)

    assert result.dry_run is True
    assert result.processed == 2
    assert [(row.id, row.old_status, row.new_status) for row in result.rows] == [
        ("1", "pending", "pending"),
        ("2", "pending", "pending"),
    ]
    assert source.bulk_calls == []
    assert store.get_content_meta("1").attempt_count == 0


class LosingClaimStore(SQLiteStore):
    def __init__(self, db_path: str, lose: set[str]) -> None:
        super().__init__(db_path)
        self.lose = lose

    def mark_hydration_fetching(self, candidate, *, now=None) -> bool:
        if candidate.id in self.lose:
            return False
        return super().mark_hydration_fetching(candidate, now=now)


def test_lost_claim_is_skipped(tmp_path) -> None:
    store = LosingClaimStore(str(tmp_path / "claims.sqlite"), lose={"2"})
    store.init_db()
    store.upsert_posts([_article("1"), _article("2")], "bookmark")
    source = FakeSource(
        [
            _article("1", body="Full article body with substantial detail"),
            _article("2", body="Second article body with enough text"),
        ]
    )

    result = _service(store, source).run()

    assert result.hydrated == 1
    assert result.skipped == 1
    assert [(row.id, row.error_code) for row in result.rows] == [
        ("1", None),
        ("2", "CONCURRENT_UPDATE"),
    ]
    assert source.bulk_calls == [["1"]]


class InterleavingSource(FakeSource):
    """Lets another writer store new content while the fetch is in flight."""

    def __init__(self, store, posts: list[Post]) -> None:
        super().__init__(posts)
        self.store = store

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        self.store.upsert_post(
            _article("1", body="Manually supplied body for this article"),
            "manual",
            force_content=True,
        )
        return super().get_posts(post_ids)


def test_version_mismatch_during_write_is_skipped(store) -> None:
    store.upsert_post(_article("1"), "bookmark")
    source = InterleavingSource(store, [_article("1", body="Hydrated body from the platform")])

    result = _service(store, source).run()

    assert result.skipped == 1
    assert result.rows[0].error_code == "CONCURRENT_UPDATE"
    assert result.rows[0].content_version == 2
    assert store.get_content_meta("1").content_version == 2


class BookmarkRacingSource(FakeSource):
    """Stores a bookmark placeholder for the post while the fetch is in flight."""

    def __init__(self, store, posts: list[Post]) -> None:
        super().__init__(posts)
        self.store = store
        self.bookmark_outcomes = []

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        self.bookmark_outcomes.append(self.store.upsert_post(_article("1"), "bookmark"))
        return super().get_posts(post_ids)


def test_forced_refresh_survives_concurrent_bookmark_write(store) -> None:
    original = "Original detailed article body " * 30
    refreshed = "Refreshed detailed article body " * 30
    store.upsert_post(_article("1", body=original), "hydration")
    source = BookmarkRacingSource(store, [_article("1", body=refreshed)])

    result = _service(store, source).run(ids=["1"], force=True)

    assert source.bookmark_outcomes[0].content_accepted is False
    assert result.hydrated == 1
    assert result.skipped == 0
    assert result.rows[0].content_version == 2

    meta = store.get_content_meta("1")
    assert meta.content_status == "hydrated"
    assert meta.content_version == 2
    assert store.list_rows(limit=1)[0]["content_text"] == refreshed.strip()


def test_backfill_resumes_from_checkpoint(store) -> None:
    store.upsert_posts(
        [_article(str(index), f"2026-01-0{index}T00:00:00Z") for index in range(1, 4)],
        "bookmark",
    )
    service = _service(store, FakeSource(), backfill_job="test-job")

    first = service.run(limit=2, backfill=True, force=True)
    second = service.run(limit=2, backfill=True, force=True)

    assert [row.id for row in first.rows] == ["1", "2"]
    assert decode_cursor(first.backfill_cursor) == ("2026-01-02T00:00:00.000Z", "2")
    assert [row.id for row in second.rows] == ["3"]

    checkpoint = store.get_backfill_checkpoint("test-job")
    assert checkpoint.cursor_id == "3"
    assert checkpoint.processed_count == 3

    replay = service.run(limit=5, backfill=True, force=True, resume_from=first.backfill_cursor)
    assert [row.id for row in replay.rows] == ["3"]


def test_caller_misuse_raises(store) -> None:
    store.upsert_post(Post(id="9", text="Just a regular post", author=Author(handle="bob")), "bookmark")
    service = _service(store, FakeSource())

    with pytest.raises(HydrationRequestError):
        service.run(limit=0)
    with pytest.raises(HydrationRequestError):
        service.run(max_attempts=0)
    with pytest.raises(HydrationRequestError):
        service.run(ids=["9", "404"])
    with pytest.raises(HydrationRequestError):
        service.run(backfill=True, resume_from="not a cursor")

    assert service.run().processed == 0


def test_classify_error() -> None:
    assert classify_error(XApiError("boom", status_code=429)).code == "RATE_LIMITED"
    assert classify_error(XApiError("boom", status_code=404)).retryable is False
    assert classify_error(requests.Timeout("read")).code == "TIMEOUT"
    assert classify_error(RuntimeError("network unreachable")).code == "TIMEOUT"

    deleted = classify_error(RuntimeError("Tweet was deleted"))
    assert (deleted.code, deleted.retryable) == ("NOT_FOUND", False)

    protected = classify_error(RuntimeError("Account is protected"))
    assert (protected.code, protected.retryable) == ("UNAUTHORIZED", False)

    assert classify_error(ValueError("Failed to parse response")).code == "PARSE_ERROR"
    unknown = classify_error(RuntimeError("something odd"))
    assert (unknown.code, unknown.retryable) == ("UNKNOWN", True)


def test_retry_delay_schedule() -> None:
    assert [retry_delay(attempt).total_seconds() / 3600 for attempt in (1, 2, 3, 9)] == [
        1,
        6,
        24,
        24,
    ]
