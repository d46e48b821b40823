from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from xrecon.models import (
    BackfillCheckpoint,
    ContentMeta,
    HydrationCandidate,
    Post,
    SyncRecord,
    TagSummary,
    UpsertOutcome,
)


class Store(ABC):
    @abstractmethod
    def init_db(self) -> None:
        """Create any required schema."""

    @abstractmethod
    def upsert_post(
        self,
        post: Post,
        source: str,
        *,
        force_content: bool = False,
        expected_content_version: int | None = None,
    ) -> UpsertOutcome:
        """Insert or merge one post under the content acceptance policy."""

    @abstractmethod
    def upsert_posts(
        self,
        posts: list[Post],
        source: str,
        *,
        force_content: bool = False,
    ) -> list[UpsertOutcome]:
        """Upsert a batch of posts as one unit of work."""

    @abstractmethod
    def get_post(self, post_id: str) -> Post | None:
        """Return the stored raw payload for a post id."""

    @abstractmethod
    def get_posts(self, post_ids: list[str]) -> list[Post]:
        """Return stored payloads for the given ids, skipping unknown ids."""

    @abstractmethod
    def get_posts_by_tag(self, tag: str, limit: int = 100) -> list[Post]:
        """Return tagged posts, newest first."""

    @abstractmethod
    def get_existing_post_ids(self, post_ids: list[str]) -> set[str]:
        """Return the subset of ids already stored."""

    @abstractmethod
    def get_content_meta(self, post_id: str) -> ContentMeta | None:
        """Return hydration bookkeeping for a post."""

    @abstractmethod
    def tag_post(self, post_id: str, tag: str) -> bool:
        """Attach a tag; returns False for unknown posts or empty tags."""

    @abstractmethod
    def tag_posts(self, post_ids: list[str], tag: str) -> int:
        """Attach one tag to many posts; returns the number of new associations."""

    @abstractmethod
    def untag_post(self, post_id: str, tag: str) -> bool:
        """Remove a tag association."""

    @abstractmethod
    def list_tags(self) -> list[TagSummary]:
        """Return tag usage counts, most used first."""

    @abstractmethod
    def get_tags(self, post_ids: list[str]) -> dict[str, list[str]]:
        """Return tags per post id."""

    @abstractmethod
    def count_posts(self) -> int:
        """Return the number of stored posts."""

    @abstractmethod
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
        """Full-text search over canonical content, best rank first."""

    @abstractmethod
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
        """List canonical content newest first using a keyset cursor."""

    @abstractmethod
    def get_hydration_candidates(
        self,
        *,
        ids: list[str] | None = None,
        limit: int = 100,
        force: bool = False,
        cursor: tuple[str, str] | None = None,
        now: datetime | None = None,
    ) -> list[HydrationCandidate]:
        """Select rows eligible for a hydration attempt, oldest first."""

    @abstractmethod
    def mark_hydration_fetching(
        self,
        candidate: HydrationCandidate,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Claim a candidate; False when another writer got there first."""

    @abstractmethod
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
        """Move a claimed row to failed or missing."""

    @abstractmethod
    def mark_content_stale(self, post_id: str) -> bool:
        """Flag hydrated content as outdated."""

    @abstractmethod
    def reset_hydration(self, post_id: str) -> bool:
        """Make a row eligible for hydration again with fresh attempt bookkeeping."""

    @abstractmethod
    def find_stuck_fetching(
        self,
        older_than: timedelta,
        *,
        now: datetime | None = None,
    ) -> list[ContentMeta]:
        """Return rows claimed for longer than ``older_than``."""

    @abstractmethod
    def get_backfill_checkpoint(self, job_name: str) -> BackfillCheckpoint | None:
        """Return the persisted cursor for a backfill job."""

    @abstractmethod
    def update_backfill_checkpoint(
        self,
        *,
        job_name: str,
        cursor_created_at: str,
        cursor_id: str,
        processed_increment: int = 1,
    ) -> None:
        """Advance a backfill cursor."""

    @abstractmethod
    def reset_backfill_checkpoint(self, job_name: str) -> bool:
        """Delete a backfill cursor."""

    @abstractmethod
    def log_sync(self, sync_type: str, posts_synced: int, cursor: str | None = None) -> None:
        """Append a completed ingestion run to the sync log."""

    @abstractmethod
    def get_last_sync(self, sync_type: str) -> SyncRecord | None:
        """Return the most recent completed run of a sync type."""
