"""Article content hydration: claim, fetch, merge, and schedule retries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import requests

from xrecon.models import (
    CONTENT_STATUS_FAILED,
    CONTENT_STATUS_HYDRATED,
    CONTENT_STATUS_MISSING,
    CONTENT_STATUS_PARTIAL,
    ERROR_CONCURRENT_UPDATE,
    ERROR_NOT_FOUND,
    ERROR_PARSE_ERROR,
    ERROR_RATE_LIMITED,
    ERROR_RETRY_MISSING,
    ERROR_TIMEOUT,
    ERROR_UNAUTHORIZED,
    ERROR_UNKNOWN,
    SKIP_VERSION_MISMATCH,
    WRITE_SOURCE_BACKFILL,
    WRITE_SOURCE_HYDRATION,
    HydrationCandidate,
    HydrationRow,
    HydrationRunResult,
    Post,
)
from xrecon.sources import Source
from xrecon.store import Store
from xrecon.utils.cursor_utils import decode_cursor, encode_cursor
from xrecon.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_JOB = "article-content-v1"
DEFAULT_FETCH_BATCH_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 7

_UNRESOLVED_MESSAGE = "Unable to hydrate article content for post id"


class HydrationRequestError(ValueError):
    """Raised when a hydration run is requested with unusable arguments."""


@dataclass(slots=True)
class ClassifiedError:
    code: str
    retryable: bool
    message: str


_TERMINAL_CODES = {ERROR_NOT_FOUND, ERROR_UNAUTHORIZED}


def classify_error(error: BaseException) -> ClassifiedError:
    """Map a fetch or write failure onto the hydration error taxonomy."""
    message = str(error) or error.__class__.__name__

    status = _status_code(error)
    if status == 429:
        return ClassifiedError(ERROR_RATE_LIMITED, True, message)
    if status in (404, 410):
        return ClassifiedError(ERROR_NOT_FOUND, False, message)
    if status in (401, 403):
        return ClassifiedError(ERROR_UNAUTHORIZED, False, message)

    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError)):
        return ClassifiedError(ERROR_TIMEOUT, True, message)

    lower = message.lower()
    if "429" in lower or "rate limit" in lower:
        code = ERROR_RATE_LIMITED
    elif "timeout" in lower or "timed out" in lower or "network" in lower:
        code = ERROR_TIMEOUT
    elif "404" in lower or "not found" in lower or "deleted" in lower:
        code = ERROR_NOT_FOUND
    elif "403" in lower or "unauthorized" in lower or "protected" in lower:
        code = ERROR_UNAUTHORIZED
    elif "parse" in lower:
        code = ERROR_PARSE_ERROR
    else:
        code = ERROR_UNKNOWN
    return ClassifiedError(code, code not in _TERMINAL_CODES, message)


def _status_code(error: BaseException) -> int | None:
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int):
            return value

    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def retry_delay(attempt_count: int) -> timedelta:
    if attempt_count <= 1:
        return timedelta(hours=1)
    if attempt_count == 2:
        return timedelta(hours=6)
    return timedelta(hours=24)


@dataclass(slots=True)
class _FetchResults:
    posts: dict[str, Post]
    errors: dict[str, BaseException]


class HydrationService:
    def __init__(
        self,
        *,
        store: Store,
        source: Source,
        fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE,
        backfill_job: str = DEFAULT_BACKFILL_JOB,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.source = source
        self.fetch_batch_size = max(1, fetch_batch_size)
        self.backfill_job = backfill_job
        self.clock = clock

    def run(
        self,
        *,
        ids: list[str] | None = None,
        limit: int = 100,
        force: bool = False,
        dry_run: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backfill: bool = False,
        resume_from: str | None = None,
    ) -> HydrationRunResult:
        if limit < 1:
            raise HydrationRequestError("limit must be >= 1")
        if max_attempts < 1:
            raise HydrationRequestError("max_attempts must be >= 1")

        ids = [post_id.strip() for post_id in ids or [] if post_id and post_id.strip()]
        backfill = backfill and not ids
        candidates = self._select_candidates(
            ids=ids,
            limit=limit,
            force=force,
            backfill=backfill,
            resume_from=resume_from,
        )

        if not candidates:
            if ids and not self._has_stored_article(ids):
                raise HydrationRequestError(
                    f"None of the requested ids is a stored article: {', '.join(ids)}"
                )
            logger.info("No hydration candidates")
            return HydrationRunResult(dry_run=dry_run)

        if dry_run:
            rows = [
                HydrationRow(
                    id=candidate.id,
                    old_status=candidate.content_status,
                    new_status=candidate.content_status,
                    content_version=candidate.content_version,
                )
                for candidate in candidates
            ]
            return HydrationRunResult(processed=len(rows), dry_run=True, rows=rows)

        claimed_ids: set[str] = set()
        for candidate in candidates:
            if self.store.mark_hydration_fetching(candidate, now=self.clock()):
                claimed_ids.add(candidate.id)
            else:
                logger.info("Hydration claim lost for post %s", candidate.id)

        fetched = self._fetch_with_fallback(
            [candidate.id for candidate in candidates if candidate.id in claimed_ids]
        )
        write_source = WRITE_SOURCE_BACKFILL if backfill else WRITE_SOURCE_HYDRATION

        rows: list[HydrationRow] = []
        backfill_cursor: str | None = None
        for candidate in candidates:
            if candidate.id not in claimed_ids:
                rows.append(
                    HydrationRow(
                        id=candidate.id,
                        old_status=candidate.content_status,
                        new_status=candidate.content_status,
                        content_version=candidate.content_version,
                        error_code=ERROR_CONCURRENT_UPDATE,
                    )
                )
            else:
                rows.append(
                    self._resolve(
                        candidate,
                        fetched,
                        write_source=write_source,
                        force=force,
                        max_attempts=max_attempts,
                    )
                )

            if backfill:
                self.store.update_backfill_checkpoint(
                    job_name=self.backfill_job,
                    cursor_created_at=candidate.created_at,
                    cursor_id=candidate.id,
                    processed_increment=1,
                )
                backfill_cursor = encode_cursor(candidate.created_at, candidate.id)

        result = _aggregate(rows, backfill_cursor=backfill_cursor)
        logger.info(
            "Hydration complete | processed=%d hydrated=%d partial=%d failed=%d "
            "missing=%d skipped=%d",
            result.processed,
            result.hydrated,
            result.partial,
            result.failed,
            result.missing,
            result.skipped,
        )
        return result

    def _select_candidates(
        self,
        *,
        ids: list[str],
        limit: int,
        force: bool,
        backfill: bool,
        resume_from: str | None,
    ) -> list[HydrationCandidate]:
        if ids:
            return self.store.get_hydration_candidates(ids=ids, limit=limit, force=force)

        cursor: tuple[str, str] | None = None
        if backfill and resume_from:
            cursor = decode_cursor(resume_from)
            if cursor is None:
                raise HydrationRequestError(f"Invalid backfill cursor: {resume_from}")
        elif backfill:
            checkpoint = self.store.get_backfill_checkpoint(self.backfill_job)
            if checkpoint and checkpoint.cursor_created_at and checkpoint.cursor_id:
                cursor = (checkpoint.cursor_created_at, checkpoint.cursor_id)
                logger.info(
                    "Resuming backfill %s after %s/%s",
                    self.backfill_job,
                    checkpoint.cursor_created_at,
                    checkpoint.cursor_id,
                )

        return self.store.get_hydration_candidates(
            limit=limit,
            force=force,
            cursor=cursor,
            now=self.clock(),
        )

    def _has_stored_article(self, ids: list[str]) -> bool:
        for post_id in ids:
            meta = self.store.get_content_meta(post_id)
            if meta is not None and meta.type == "article":
                return True
        return False

    def _fetch_with_fallback(self, ids: list[str]) -> _FetchResults:
        results = _FetchResults(posts={}, errors={})
        if not ids:
            return results

        wanted = set(ids)
        for index in range(0, len(ids), self.fetch_batch_size):
            batch = ids[index : index + self.fetch_batch_size]
            try:
                posts = self.source.get_posts(batch)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Bulk lookup of %d posts failed; falling back: %s", len(batch), exc)
                continue
            for post in posts:
                if post.id in wanted:
                    results.posts[post.id] = post

        for post_id in ids:
            if post_id in results.posts:
                continue
            try:
                post = self.source.get_post(post_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Lookup of post %s failed: %s", post_id, exc)
                results.errors[post_id] = exc
                continue
            if post is not None:
                results.posts[post_id] = post

        return results

    def _resolve(
        self,
        candidate: HydrationCandidate,
        fetched: _FetchResults,
        *,
        write_source: str,
        force: bool,
        max_attempts: int,
    ) -> HydrationRow:
        post = fetched.posts.get(candidate.id)
        if post is None:
            error = fetched.errors.get(candidate.id)
            classified = classify_error(error) if error is not None else None
            return self._record_failure(candidate, classified, max_attempts=max_attempts)

        try:
            outcome = self.store.upsert_post(
                post,
                write_source,
                force_content=force,
                expected_content_version=candidate.content_version,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to store hydrated content for post %s", candidate.id)
            return self._record_failure(candidate, classify_error(exc), max_attempts=max_attempts)

        if outcome.skipped_reason == SKIP_VERSION_MISMATCH:
            return HydrationRow(
                id=candidate.id,
                old_status=candidate.content_status,
                new_status=outcome.content_status,
                content_version=outcome.content_version,
                error_code=ERROR_CONCURRENT_UPDATE,
            )

        meta = self.store.get_content_meta(candidate.id)
        return HydrationRow(
            id=candidate.id,
            old_status=candidate.content_status,
            new_status=meta.content_status if meta else outcome.content_status,
            content_version=meta.content_version if meta else outcome.content_version,
            error_code=ERROR_CONCURRENT_UPDATE if outcome.skipped_reason else None,
        )

    def _record_failure(
        self,
        candidate: HydrationCandidate,
        classified: ClassifiedError | None,
        *,
        max_attempts: int,
    ) -> HydrationRow:
        attempt = candidate.attempt_count + 1
        exhausted = attempt >= max_attempts

        message = classified.message if classified is not None else _UNRESOLVED_MESSAGE
        if classified is not None and not classified.retryable:
            terminal = True
            error_code = classified.code
        elif exhausted:
            # Out of attempts: the article is treated as gone whatever the last error was.
            terminal = True
            error_code = ERROR_NOT_FOUND
        else:
            terminal = False
            error_code = classified.code if classified is not None else ERROR_RETRY_MISSING

        next_status = CONTENT_STATUS_MISSING if terminal else CONTENT_STATUS_FAILED
        next_retry_at = None if terminal else self.clock() + retry_delay(attempt)

        recorded = self.store.mark_hydration_failure(
            post_id=candidate.id,
            expected_version=candidate.content_version,
            next_status=next_status,
            error_code=error_code,
            error_message=message,
            next_retry_at=next_retry_at,
        )
        if not recorded:
            meta = self.store.get_content_meta(candidate.id)
            logger.warning("Post %s changed while hydrating; failure not recorded", candidate.id)
            return HydrationRow(
                id=candidate.id,
                old_status=candidate.content_status,
                new_status=meta.content_status if meta else candidate.content_status,
                content_version=meta.content_version if meta else candidate.content_version,
                error_code=ERROR_CONCURRENT_UPDATE,
            )

        return HydrationRow(
            id=candidate.id,
            old_status=candidate.content_status,
            new_status=next_status,
            content_version=candidate.content_version,
            error_code=error_code,
        )


def _aggregate(rows: list[HydrationRow], *, backfill_cursor: str | None) -> HydrationRunResult:
    result = HydrationRunResult(processed=len(rows), rows=rows, backfill_cursor=backfill_cursor)
    for row in rows:
        if row.error_code == ERROR_CONCURRENT_UPDATE:
            result.skipped += 1
        elif row.new_status == CONTENT_STATUS_HYDRATED:
            result.hydrated += 1
        elif row.new_status == CONTENT_STATUS_PARTIAL:
            result.partial += 1
        elif row.new_status == CONTENT_STATUS_FAILED:
            result.failed += 1
        elif row.new_status == CONTENT_STATUS_MISSING:
            result.missing += 1
        else:
            result.skipped += 1
    return result
