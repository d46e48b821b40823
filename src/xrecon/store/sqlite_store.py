from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from xrecon.canonical import canonicalize, is_hydration_source
from xrecon.models import (
    CONTENT_STATUS_FAILED,
    CONTENT_STATUS_FETCHING,
    CONTENT_STATUS_HYDRATED,
    CONTENT_STATUS_MISSING,
    CONTENT_STATUS_PARTIAL,
    CONTENT_STATUS_PENDING,
    CONTENT_STATUS_STALE,
    RETRYABLE_STATUSES,
    SKIP_CONCURRENT_UPDATE,
    SKIP_VERSION_MISMATCH,
    BackfillCheckpoint,
    CanonicalContent,
    ContentMeta,
    HydrationCandidate,
    Post,
    SyncRecord,
    TagSummary,
    UpsertOutcome,
)
from xrecon.utils.datetime_utils import isoformat_utc, normalize_timestamp, utc_now

from .base import Store

logger = logging.getLogger(__name__)

# One retry of the read-decide-write cycle after losing a conditional write.
_MAX_WRITE_ATTEMPTS = 2

MEMORY_DB_PATH = ":memory:"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS posts (
        id TEXT PRIMARY KEY,
        author_handle TEXT NOT NULL,
        author_name TEXT NULL,
        text TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        source_url TEXT NULL,
        type TEXT NOT NULL DEFAULT 'post',
        conversation_id TEXT NULL,
        in_reply_to TEXT NULL,
        raw_json TEXT NOT NULL,
        ingested_at TEXT NOT NULL,
        source TEXT NULL,
        article_title TEXT NULL,
        article_content TEXT NULL,
        content_text TEXT NOT NULL DEFAULT '',
        content_source TEXT NOT NULL DEFAULT 'unknown',
        content_status TEXT NOT NULL DEFAULT 'new',
        content_hash TEXT NULL,
        content_quality_score INTEGER NOT NULL DEFAULT 0,
        content_version INTEGER NOT NULL DEFAULT 1,
        content_fetched_at TEXT NULL,
        last_hydration_attempt_at TEXT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        next_retry_at TEXT NULL,
        error_code TEXT NULL,
        content_error TEXT NULL,
        claimed_from_status TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        post_id TEXT NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
        tag TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (post_id, tag)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_type TEXT NOT NULL,
        cursor TEXT NULL,
        posts_synced INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        completed_at TEXT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backfill_checkpoints (
        job_name TEXT PRIMARY KEY,
        cursor_created_at TEXT NULL,
        cursor_id TEXT NULL,
        processed_count INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS posts_fts USING fts5(
        id UNINDEXED,
        content_text,
        article_title,
        author_handle,
        author_name,
        content='posts',
        content_rowid='rowid'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS posts_fts_insert AFTER INSERT ON posts BEGIN
        INSERT INTO posts_fts(rowid, id, content_text, article_title, author_handle, author_name)
        VALUES (new.rowid, new.id, new.content_text, new.article_title, new.author_handle, new.author_name);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS posts_fts_delete AFTER DELETE ON posts BEGIN
        INSERT INTO posts_fts(posts_fts, rowid, id, content_text, article_title, author_handle, author_name)
        VALUES ('delete', old.rowid, old.id, old.content_text, old.article_title, old.author_handle, old.author_name);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS posts_fts_update AFTER UPDATE ON posts BEGIN
        INSERT INTO posts_fts(posts_fts, rowid, id, content_text, article_title, author_handle, author_name)
        VALUES ('delete', old.rowid, old.id, old.content_text, old.article_title, old.author_handle, old.author_name);
        INSERT INTO posts_fts(rowid, id, content_text, article_title, author_handle, author_name)
        VALUES (new.rowid, new.id, new.content_text, new.article_title, new.author_handle, new.author_name);
    END
    """,
    "CREATE INDEX IF NOT EXISTS idx_tags_tag ON tags (tag)",
    "CREATE INDEX IF NOT EXISTS idx_posts_author ON posts (author_handle)",
    "CREATE INDEX IF NOT EXISTS idx_posts_created ON posts (created_at, id)",
    "CREATE INDEX IF NOT EXISTS idx_posts_source ON posts (source)",
    "CREATE INDEX IF NOT EXISTS idx_posts_type ON posts (type)",
    "CREATE INDEX IF NOT EXISTS idx_posts_content_status ON posts (content_status, next_retry_at)",
)

_CONTENT_STATE_COLUMNS = """
    id, type, content_status, content_version, content_hash, content_quality_score,
    attempt_count, next_retry_at, error_code, content_error,
    last_hydration_attempt_at, content_fetched_at, source, claimed_from_status
"""

_CONTENT_ROW_COLUMNS = """
    p.id, p.type, p.author_handle, p.author_name, p.created_at, p.source_url, p.source,
    p.article_title, p.content_status, p.content_source, p.content_version,
    p.content_fetched_at, p.content_text
"""


class SQLiteStore(Store):
    def __init__(self, db_path: str, *, timeout_seconds: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.timeout_seconds = timeout_seconds
        # An in-memory database lives only as long as its connection.
        self._shared_connection: sqlite3.Connection | None = None
        if str(db_path) == MEMORY_DB_PATH:
            self._shared_connection = self._open_connection()

    def init_db(self) -> None:
        if self._shared_connection is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            for statement in _SCHEMA_STATEMENTS:
                connection.execute(statement)
            _add_missing_columns(connection, "posts", {"claimed_from_status": "TEXT NULL"})

    def close(self) -> None:
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # --- Upsert & merge policy ---

    def upsert_post(
        self,
        post: Post,
        source: str,
        *,
        force_content: bool = False,
        expected_content_version: int | None = None,
    ) -> UpsertOutcome:
        with self._connect() as connection:
            return self._upsert(
                connection,
                post,
                source,
                force_content=force_content,
                expected_content_version=expected_content_version,
            )

    def upsert_posts(
        self,
        posts: list[Post],
        source: str,
        *,
        force_content: bool = False,
    ) -> list[UpsertOutcome]:
        if not posts:
            return []

        with self._connect() as connection:
            outcomes = [
                self._upsert(connection, post, source, force_content=force_content)
                for post in posts
            ]

        accepted = sum(1 for outcome in outcomes if outcome.content_accepted)
        logger.debug("Upserted %d posts from %s (accepted=%d)", len(posts), source, accepted)
        return outcomes

    def _upsert(
        self,
        connection: sqlite3.Connection,
        post: Post,
        source: str,
        *,
        force_content: bool = False,
        expected_content_version: int | None = None,
    ) -> UpsertOutcome:
        if not post.id:
            raise ValueError("post id is required")

        canonical = canonicalize(post, source)
        now = isoformat_utc(utc_now())
        last_state: ContentMeta | None = None

        for _ in range(_MAX_WRITE_ATTEMPTS):
            state = self._read_content_state(connection, post.id)

            if state is None:
                if self._insert_post(connection, post, source, canonical, now):
                    return UpsertOutcome(
                        content_accepted=True,
                        content_version=1,
                        content_status=canonical.content_status,
                    )
                # Another writer inserted the row between our read and write.
                continue

            last_state = state
            if (
                expected_content_version is not None
                and state.content_version != expected_content_version
            ):
                return UpsertOutcome(
                    content_accepted=False,
                    content_version=state.content_version,
                    content_status=state.content_status,
                    skipped_reason=SKIP_VERSION_MISMATCH,
                )

            if _should_accept(canonical, state, force_content=force_content):
                if self._write_accepted(connection, post, source, canonical, state, now):
                    return UpsertOutcome(
                        content_accepted=True,
                        content_version=state.content_version + 1,
                        content_status=canonical.content_status,
                    )
                continue

            settled_status = _settled_status(canonical, state, source)
            if self._write_metadata(connection, post, canonical, state, now, settled_status):
                return UpsertOutcome(
                    content_accepted=False,
                    content_version=state.content_version,
                    content_status=settled_status or state.content_status,
                )

        logger.warning("Concurrent update detected for post %s; write skipped", post.id)
        return UpsertOutcome(
            content_accepted=False,
            content_version=last_state.content_version if last_state else 0,
            content_status=last_state.content_status if last_state else canonical.content_status,
            skipped_reason=SKIP_CONCURRENT_UPDATE,
        )

    def _read_content_state(
        self,
        connection: sqlite3.Connection,
        post_id: str,
    ) -> ContentMeta | None:
        row = connection.execute(
            f"SELECT {_CONTENT_STATE_COLUMNS} FROM posts WHERE id = ?",
            (post_id,),
        ).fetchone()
        return _row_to_content_meta(row) if row is not None else None

    def _insert_post(
        self,
        connection: sqlite3.Connection,
        post: Post,
        source: str,
        canonical: CanonicalContent,
        now: str,
    ) -> bool:
        fetched_at = now if canonical.content_status in _FETCHED_STATUSES else None
        cursor = connection.execute(
            """
            INSERT INTO posts (
                id, author_handle, author_name, text, created_at, source_url, type,
                conversation_id, in_reply_to, raw_json, ingested_at, source,
                article_title, article_content, content_text, content_source,
                content_status, content_hash, content_quality_score, content_version,
                content_fetched_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                post.id,
                post.author.handle,
                post.author.name or None,
                canonical.text,
                normalize_timestamp(post.timestamp),
                post.source_url or None,
                canonical.type,
                post.thread_id,
                post.in_reply_to,
                _serialize(post),
                now,
                source,
                canonical.article_title,
                canonical.article_content,
                canonical.content_text,
                canonical.content_source,
                canonical.content_status,
                canonical.content_hash,
                canonical.quality_score,
                fetched_at,
            ),
        )
        return cursor.rowcount == 1

    def _write_accepted(
        self,
        connection: sqlite3.Connection,
        post: Post,
        source: str,
        canonical: CanonicalContent,
        state: ContentMeta,
        now: str,
    ) -> bool:
        fetched_at = (
            now if canonical.content_status in _FETCHED_STATUSES else state.content_fetched_at
        )
        cursor = connection.execute(
            """
            UPDATE posts SET
                author_handle = ?,
                author_name = ?,
                text = ?,
                source_url = COALESCE(?, source_url),
                type = ?,
                conversation_id = COALESCE(?, conversation_id),
                in_reply_to = COALESCE(?, in_reply_to),
                raw_json = ?,
                ingested_at = ?,
                source = ?,
                article_title = ?,
                article_content = ?,
                content_text = ?,
                content_source = ?,
                content_status = ?,
                content_hash = ?,
                content_quality_score = ?,
                content_version = content_version + 1,
                content_fetched_at = ?,
                next_retry_at = NULL,
                error_code = NULL,
                content_error = NULL,
                claimed_from_status = NULL
            WHERE id = ? AND content_version = ?
            """,
            (
                post.author.handle,
                post.author.name or None,
                canonical.text,
                post.source_url or None,
                canonical.type,
                post.thread_id,
                post.in_reply_to,
                _serialize(post),
                now,
                source,
                canonical.article_title,
                canonical.article_content,
                canonical.content_text,
                canonical.content_source,
                canonical.content_status,
                canonical.content_hash,
                canonical.quality_score,
                fetched_at,
                post.id,
                state.content_version,
            ),
        )
        return cursor.rowcount == 1

    def _write_metadata(
        self,
        connection: sqlite3.Connection,
        post: Post,
        canonical: CanonicalContent,
        state: ContentMeta,
        now: str,
        settled_status: str | None,
    ) -> bool:
        status = settled_status or state.content_status
        fetched_at = now if settled_status in _FETCHED_STATUSES else state.content_fetched_at
        claimed_from = state.claimed_from_status if status == CONTENT_STATUS_FETCHING else None
        cursor = connection.execute(
            """
            UPDATE posts SET
                author_handle = ?,
                author_name = ?,
                text = ?,
                source_url = COALESCE(?, source_url),
                type = ?,
                conversation_id = COALESCE(?, conversation_id),
                in_reply_to = COALESCE(?, in_reply_to),
                raw_json = ?,
                ingested_at = ?,
                content_status = ?,
                content_fetched_at = ?,
                claimed_from_status = ?
            WHERE id = ? AND content_version = ?
            """,
            (
                post.author.handle,
                post.author.name or None,
                canonical.text,
                post.source_url or None,
                canonical.type,
                post.thread_id,
                post.in_reply_to,
                _serialize(post),
                now,
                status,
                fetched_at,
                claimed_from,
                post.id,
                state.content_version,
            ),
        )
        return cursor.rowcount == 1

    # --- Reads ---

    def get_post(self, post_id: str) -> Post | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT raw_json FROM posts WHERE id = ?",
                (post_id,),
            ).fetchone()
        return _deserialize(row["raw_json"]) if row is not None else None

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        if not post_ids:
            return []
        placeholders = _placeholders(post_ids)
        with self._connect() as connection:
            rows = connection.execute(
                f"SELECT raw_json FROM posts WHERE id IN ({placeholders})",
                tuple(post_ids),
            ).fetchall()
        return [_deserialize(row["raw_json"]) for row in rows]

    def get_posts_by_tag(self, tag: str, limit: int = 100) -> list[Post]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT p.raw_json FROM posts p
                JOIN tags t ON p.id = t.post_id
                WHERE t.tag = ?
                ORDER BY p.created_at DESC, p.id DESC
                LIMIT ?
                """,
                (_normalize_tag(tag), limit),
            ).fetchall()
        return [_deserialize(row["raw_json"]) for row in rows]

    def get_existing_post_ids(self, post_ids: list[str]) -> set[str]:
        if not post_ids:
            return set()
        placeholders = _placeholders(post_ids)
        with self._connect() as connection:
            rows = connection.execute(
                f"SELECT id FROM posts WHERE id IN ({placeholders})",
                tuple(post_ids),
            ).fetchall()
        return {row["id"] for row in rows}

    def get_content_meta(self, post_id: str) -> ContentMeta | None:
        with self._connect() as connection:
            return self._read_content_state(connection, post_id)

    def count_posts(self) -> int:
        with self._connect() as connection:
            row = connection.execute("SELECT COUNT(*) AS count FROM posts").fetchone()
        return int(row["count"])

    # --- Tags ---

    def tag_post(self, post_id: str, tag: str) -> bool:
        return self.tag_posts([post_id], tag) == 1

    def tag_posts(self, post_ids: list[str], tag: str) -> int:
        normalized = _normalize_tag(tag)
        if not normalized or not post_ids:
            return 0

        now = isoformat_utc(utc_now())
        added = 0
        with self._connect() as connection:
            for post_id in post_ids:
                cursor = connection.execute(
                    """
                    INSERT OR IGNORE INTO tags (post_id, tag, created_at)
                    SELECT id, ?, ? FROM posts WHERE id = ?
                    """,
                    (normalized, now, post_id),
                )
                added += cursor.rowcount
        return added

    def untag_post(self, post_id: str, tag: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM tags WHERE post_id = ? AND tag = ?",
                (post_id, _normalize_tag(tag)),
            )
        return cursor.rowcount > 0

    def list_tags(self) -> list[TagSummary]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT tag, COUNT(*) AS count FROM tags
                GROUP BY tag
                ORDER BY count DESC, tag ASC
                """
            ).fetchall()
        return [TagSummary(tag=row["tag"], count=int(row["count"])) for row in rows]

    def get_tags(self, post_ids: list[str]) -> dict[str, list[str]]:
        tags: dict[str, list[str]] = {post_id: [] for post_id in post_ids}
        if not post_ids:
            return tags
        placeholders = _placeholders(post_ids)
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT post_id, tag FROM tags
                WHERE post_id IN ({placeholders})
                ORDER BY tag ASC
                """,
                tuple(post_ids),
            ).fetchall()
        for row in rows:
            tags.setdefault(row["post_id"], []).append(row["tag"])
        return tags

    # --- Search & listing ---

    def search_rows(
        self,
        match_expression: str,
        *,
        limit: int,
        offset: int = 0,
        tag: str | None = None,
        content_status: str | None = None,
        post_type: str | None = None,
        author: str | None = None,
    ) -> list[dict[str, Any]]:
        conditions = ["posts_fts MATCH ?"]
        params: list[Any] = [match_expression]
        _append_filters(
            conditions,
            params,
            tag=tag,
            content_status=content_status,
            post_type=post_type,
            author=author,
        )
        params.extend([limit, offset])

        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_CONTENT_ROW_COLUMNS}, posts_fts.rank AS rank
                FROM posts_fts
                JOIN posts p ON p.rowid = posts_fts.rowid
                WHERE {" AND ".join(conditions)}
                ORDER BY posts_fts.rank ASC, p.id ASC
                LIMIT ? OFFSET ?
                """,
                tuple(params),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_rows(
        self,
        *,
        limit: int,
        cursor: tuple[str, str] | None = None,
        tag: str | None = None,
        content_status: str | None = None,
        post_type: str | None = None,
        author: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        has_full_content: bool = False,
    ) -> list[dict[str, Any]]:
        conditions = ["1 = 1"]
        params: list[Any] = []
        _append_filters(
            conditions,
            params,
            tag=tag,
            content_status=content_status,
            post_type=post_type,
            author=author,
        )
        if from_date:
            conditions.append("p.created_at >= ?")
            params.append(from_date)
        if to_date:
            conditions.append("p.created_at <= ?")
            params.append(to_date)
        if has_full_content:
            conditions.append("p.content_text != ''")
        if cursor is not None:
            cursor_created_at, cursor_id = cursor
            conditions.append("(p.created_at < ? OR (p.created_at = ? AND p.id < ?))")
            params.extend([cursor_created_at, cursor_created_at, cursor_id])
        params.append(limit)

        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_CONTENT_ROW_COLUMNS}
                FROM posts p
                WHERE {" AND ".join(conditions)}
                ORDER BY p.created_at DESC, p.id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return [dict(row) for row in rows]

    # --- Hydration queue ---

    def get_hydration_candidates(
        self,
        *,
        ids: list[str] | None = None,
        limit: int = 100,
        force: bool = False,
        cursor: tuple[str, str] | None = None,
        now: datetime | None = None,
    ) -> list[HydrationCandidate]:
        statuses = list(RETRYABLE_STATUSES)
        if ids:
            # An explicit request may revive rows that exhausted their attempts.
            statuses.append(CONTENT_STATUS_MISSING)
        if force:
            statuses.append(CONTENT_STATUS_HYDRATED)

        conditions = ["type = 'article'", f"content_status IN ({_placeholders(statuses)})"]
        params: list[Any] = list(statuses)

        if ids:
            conditions.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        else:
            if not force:
                conditions.append("(next_retry_at IS NULL OR next_retry_at <= ?)")
                params.append(isoformat_utc(now or utc_now()))
            if cursor is not None:
                cursor_created_at, cursor_id = cursor
                conditions.append("(created_at > ? OR (created_at = ? AND id > ?))")
                params.extend([cursor_created_at, cursor_created_at, cursor_id])
        params.append(limit)

        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT id, created_at, content_status, content_version, attempt_count
                FROM posts
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()

        return [
            HydrationCandidate(
                id=row["id"],
                created_at=row["created_at"],
                content_status=row["content_status"],
                content_version=int(row["content_version"]),
                attempt_count=int(row["attempt_count"]),
            )
            for row in rows
        ]

    def mark_hydration_fetching(
        self,
        candidate: HydrationCandidate,
        *,
        now: datetime | None = None,
    ) -> bool:
        if candidate.content_status == CONTENT_STATUS_FETCHING:
            return False

        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE posts SET
                    claimed_from_status = content_status,
                    content_status = ?,
                    attempt_count = attempt_count + 1,
                    last_hydration_attempt_at = ?,
                    next_retry_at = NULL,
                    error_code = NULL,
                    content_error = NULL
                WHERE id = ? AND content_version = ? AND content_status = ?
                """,
                (
                    CONTENT_STATUS_FETCHING,
                    isoformat_utc(now or utc_now()),
                    candidate.id,
                    candidate.content_version,
                    candidate.content_status,
                ),
            )
        return cursor.rowcount == 1

    def mark_hydration_failure(
        self,
        *,
        post_id: str,
        expected_version: int,
        next_status: str,
        error_code: str,
        error_message: str,
        next_retry_at: datetime | None,
    ) -> bool:
        if next_status not in (CONTENT_STATUS_FAILED, CONTENT_STATUS_MISSING):
            raise ValueError(f"Invalid failure status: {next_status}")

        retry_value = (
            isoformat_utc(next_retry_at)
            if next_retry_at is not None and next_status == CONTENT_STATUS_FAILED
            else None
        )
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE posts SET
                    content_status = ?,
                    error_code = ?,
                    content_error = ?,
                    next_retry_at = ?,
                    claimed_from_status = NULL
                WHERE id = ? AND content_version = ? AND content_status = ?
                """,
                (
                    next_status,
                    error_code,
                    error_message,
                    retry_value,
                    post_id,
                    expected_version,
                    CONTENT_STATUS_FETCHING,
                ),
            )
        return cursor.rowcount == 1

    def mark_content_stale(self, post_id: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "UPDATE posts SET content_status = ? WHERE id = ? AND content_status = ?",
                (CONTENT_STATUS_STALE, post_id, CONTENT_STATUS_HYDRATED),
            )
        return cursor.rowcount == 1

    def reset_hydration(self, post_id: str) -> bool:
        resettable = (
            CONTENT_STATUS_MISSING,
            CONTENT_STATUS_FAILED,
            CONTENT_STATUS_FETCHING,
            CONTENT_STATUS_PARTIAL,
            CONTENT_STATUS_STALE,
        )
        with self._connect() as connection:
            cursor = connection.execute(
                f"""
                UPDATE posts SET
                    content_status = ?,
                    attempt_count = 0,
                    next_retry_at = NULL,
                    error_code = NULL,
                    content_error = NULL,
                    claimed_from_status = NULL
                WHERE id = ? AND content_status IN ({_placeholders(resettable)})
                """,
                (CONTENT_STATUS_PENDING, post_id, *resettable),
            )
        return cursor.rowcount == 1

    def find_stuck_fetching(
        self,
        older_than: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[ContentMeta]:
        cutoff = isoformat_utc((now or utc_now()) - older_than)
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT {_CONTENT_STATE_COLUMNS} FROM posts
                WHERE content_status = ?
                  AND (last_hydration_attempt_at IS NULL OR last_hydration_attempt_at < ?)
                ORDER BY last_hydration_attempt_at ASC, id ASC
                """,
                (CONTENT_STATUS_FETCHING, cutoff),
            ).fetchall()
        return [_row_to_content_meta(row) for row in rows]

    # --- Backfill checkpoints ---

    def get_backfill_checkpoint(self, job_name: str) -> BackfillCheckpoint | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT job_name, cursor_created_at, cursor_id, processed_count, updated_at
                FROM backfill_checkpoints
                WHERE job_name = ?
                """,
                (job_name,),
            ).fetchone()

        if row is None:
            return None

        return BackfillCheckpoint(
            job_name=row["job_name"],
            cursor_created_at=row["cursor_created_at"],
            cursor_id=row["cursor_id"],
            processed_count=int(row["processed_count"]),
            updated_at=row["updated_at"],
        )

    def update_backfill_checkpoint(
        self,
        *,
        job_name: str,
        cursor_created_at: str,
        cursor_id: str,
        processed_increment: int = 1,
    ) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO backfill_checkpoints (
                    job_name,
                    cursor_created_at,
                    cursor_id,
                    processed_count,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    cursor_created_at = excluded.cursor_created_at,
                    cursor_id = excluded.cursor_id,
                    processed_count = backfill_checkpoints.processed_count + excluded.processed_count,
                    updated_at = excluded.updated_at
                WHERE backfill_checkpoints.cursor_created_at IS NULL
                   OR excluded.cursor_created_at > backfill_checkpoints.cursor_created_at
                   OR (
                       excluded.cursor_created_at = backfill_checkpoints.cursor_created_at
                       AND excluded.cursor_id >= backfill_checkpoints.cursor_id
                   )
                """,
                (
                    job_name,
                    cursor_created_at,
                    cursor_id,
                    processed_increment,
                    isoformat_utc(utc_now()),
                ),
            )

    def reset_backfill_checkpoint(self, job_name: str) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                "DELETE FROM backfill_checkpoints WHERE job_name = ?",
                (job_name,),
            )
        return cursor.rowcount > 0

    # --- Sync log ---

    def log_sync(self, sync_type: str, posts_synced: int, cursor: str | None = None) -> None:
        now = isoformat_utc(utc_now())
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO sync_log (sync_type, cursor, posts_synced, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (sync_type, cursor, posts_synced, now, now),
            )

    def get_last_sync(self, sync_type: str) -> SyncRecord | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT sync_type, cursor, posts_synced, completed_at FROM sync_log
                WHERE sync_type = ? AND completed_at IS NOT NULL
                ORDER BY id DESC
                LIMIT 1
                """,
                (sync_type,),
            ).fetchone()

        if row is None:
            return None

        return SyncRecord(
            sync_type=row["sync_type"],
            cursor=row["cursor"],
            posts_synced=int(row["posts_synced"]),
            completed_at=row["completed_at"],
        )

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path), timeout=self.timeout_seconds)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        shared = self._shared_connection is not None
        connection = self._shared_connection if shared else self._open_connection()
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            if not shared:
                connection.close()


_FETCHED_STATUSES = (CONTENT_STATUS_HYDRATED, CONTENT_STATUS_PARTIAL)


def _should_accept(
    canonical: CanonicalContent,
    state: ContentMeta,
    *,
    force_content: bool,
) -> bool:
    # Empty content never wins and an unchanged body is never a new version.
    if canonical.content_hash is None:
        return False
    if canonical.content_hash == state.content_hash:
        return False
    if force_content:
        return True
    if canonical.quality_score > state.content_quality_score:
        return True
    return _merge_status(state) != CONTENT_STATUS_HYDRATED


def _merge_status(state: ContentMeta) -> str:
    # A claimed row is judged by the status it had before the claim.
    if state.content_status == CONTENT_STATUS_FETCHING and state.claimed_from_status:
        return state.claimed_from_status
    return state.content_status


def _settled_status(canonical: CanonicalContent, state: ContentMeta, source: str) -> str | None:
    """Resolve a hydration claim whose fetched content was not a new version."""
    if state.content_status != CONTENT_STATUS_FETCHING or not is_hydration_source(source):
        return None
    if state.claimed_from_status == CONTENT_STATUS_HYDRATED:
        return CONTENT_STATUS_HYDRATED
    if (
        canonical.content_hash is not None
        and canonical.content_hash == state.content_hash
        and canonical.content_status == CONTENT_STATUS_HYDRATED
    ):
        return CONTENT_STATUS_HYDRATED
    return CONTENT_STATUS_PARTIAL


def _row_to_content_meta(row: sqlite3.Row) -> ContentMeta:
    return ContentMeta(
        id=row["id"],
        type=row["type"],
        content_status=row["content_status"],
        content_version=int(row["content_version"]),
        content_hash=row["content_hash"],
        content_quality_score=int(row["content_quality_score"]),
        attempt_count=int(row["attempt_count"]),
        next_retry_at=row["next_retry_at"],
        error_code=row["error_code"],
        content_error=row["content_error"],
        last_hydration_attempt_at=row["last_hydration_attempt_at"],
        content_fetched_at=row["content_fetched_at"],
        source=row["source"],
        claimed_from_status=row["claimed_from_status"],
    )


def _append_filters(
    conditions: list[str],
    params: list[Any],
    *,
    tag: str | None,
    content_status: str | None,
    post_type: str | None,
    author: str | None,
) -> None:
    if tag:
        conditions.append("EXISTS (SELECT 1 FROM tags t WHERE t.post_id = p.id AND t.tag = ?)")
        params.append(_normalize_tag(tag))
    if content_status:
        conditions.append("p.content_status = ?")
        params.append(content_status)
    if post_type:
        conditions.append("p.type = ?")
        params.append(post_type)
    if author:
        conditions.append("lower(p.author_handle) = lower(?)")
        params.append(author.strip().lstrip("@"))


def _normalize_tag(tag: str) -> str:
    return (tag or "").strip().lower()


def _add_missing_columns(
    connection: sqlite3.Connection,
    table: str,
    columns: dict[str, str],
) -> None:
    existing = {row["name"] for row in connection.execute(f"PRAGMA table_info({table})")}
    for name, definition in columns.items():
        if name not in existing:
            connection.execute(f"ALTER TABLE {table} ADD COLUMN {name} {definition}")


def _placeholders(values: list[Any] | tuple[Any, ...]) -> str:
    return ", ".join("?" for _ in values)


def _serialize(post: Post) -> str:
    return json.dumps(post.to_dict(), ensure_ascii=False, sort_keys=True)


def _deserialize(raw_json: str) -> Post:
    return Post.from_dict(json.loads(raw_json))
