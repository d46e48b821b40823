from __future__ import annotations

import logging
from datetime import datetime

from xrecon.models import (
    WRITE_SOURCE_BOOKMARK,
    WRITE_SOURCE_BOOKMARK_REF,
    WRITE_SOURCE_MANUAL,
    IngestResult,
    Post,
    SyncResult,
)
from xrecon.sources import Source
from xrecon.store import Store
from xrecon.taggers import Tagger, auto_tag_posts
from xrecon.utils.datetime_utils import parse_datetime_utc
from xrecon.utils.url_utils import (
    extract_post_id,
    extract_post_ids_from_text,
    extract_post_ids_from_urls,
    is_numeric_id,
)

logger = logging.getLogger(__name__)

BOOKMARK_SYNC_TYPE = "bookmarks"
BOOKMARK_PAGE_SIZE = 20
REFERENCE_FETCH_CHUNK = 100

STOP_OVERLAP = "overlap"
STOP_DATE_CUTOFF = "date_cutoff"
STOP_MAX_PAGES = "max_pages"
STOP_NO_MORE_PAGES = "no_more_pages"


class IngestService:
    def __init__(self, *, store: Store, source: Source, tagger: Tagger | None = None) -> None:
        self.store = store
        self.source = source
        self.tagger = tagger

    def ingest_posts(
        self,
        post_ids: list[str],
        *,
        tags: list[str] | None = None,
        auto_tag: bool = True,
        source_label: str = WRITE_SOURCE_MANUAL,
    ) -> IngestResult:
        requested = [extract_post_id(value) for value in post_ids if value and value.strip()]
        existing = self.store.get_existing_post_ids(requested)
        new_ids = list(dict.fromkeys(post_id for post_id in requested if post_id not in existing))

        result = IngestResult(
            requested=len(requested),
            already_stored=len(requested) - len(new_ids),
        )
        if not new_ids:
            return result

        posts = self.source.get_posts(new_ids)
        result.fetched = len(posts)
        if not posts:
            logger.warning("None of %d requested posts could be fetched", len(new_ids))
            return result

        self.store.upsert_posts(posts, source_label)

        if auto_tag:
            result.tags_applied += self._apply_auto_tags(posts)
        result.tags_applied += self._apply_manual_tags([post.id for post in posts], tags)

        logger.info(
            "Ingest complete | requested=%d already_stored=%d fetched=%d tags_applied=%d",
            result.requested,
            result.already_stored,
            result.fetched,
            result.tags_applied,
        )
        return result

    def sync_bookmarks(
        self,
        *,
        max_pages: int = 5,
        auto_tag: bool = True,
        tags: list[str] | None = None,
        stop_on_overlap: bool = True,
        stop_before: str | datetime | None = None,
        force_full_scan: bool = False,
    ) -> SyncResult:
        cutoff = parse_datetime_utc(stop_before)
        if stop_before and cutoff is None:
            raise ValueError(f"stop_before is not a valid timestamp: {stop_before}")

        result = SyncResult()
        all_posts: list[Post] = []
        new_posts: list[Post] = []
        cursor: str | None = None

        while result.pages_fetched < max(1, max_pages):
            page = self.source.list_bookmarks(cursor=cursor, max_results=BOOKMARK_PAGE_SIZE)
            result.pages_fetched += 1

            if not page.items:
                result.stop_reason = STOP_NO_MORE_PAGES
                break

            existing = self.store.get_existing_post_ids([post.id for post in page.items])
            all_posts.extend(page.items)
            new_posts.extend(post for post in page.items if post.id not in existing)
            if existing:
                result.overlap_detected = True

            self.store.upsert_posts(page.items, WRITE_SOURCE_BOOKMARK)
            logger.info(
                "Synced bookmark page %d | posts=%d already_stored=%d",
                result.pages_fetched,
                len(page.items),
                len(existing),
            )

            if not force_full_scan:
                if stop_on_overlap and existing:
                    result.stop_reason = STOP_OVERLAP
                    break
                if cutoff is not None and _has_post_before(page.items, cutoff):
                    result.stop_reason = STOP_DATE_CUTOFF
                    break

            cursor = page.cursor
            if not page.has_more:
                result.stop_reason = STOP_NO_MORE_PAGES
                break

        if result.stop_reason is None:
            result.stop_reason = STOP_MAX_PAGES
        result.cutoff_reached = result.stop_reason == STOP_DATE_CUTOFF

        self._expand_references(all_posts, result)

        unique_new = list({post.id: post for post in new_posts}.values())
        result.new_posts = len(unique_new)
        if auto_tag:
            result.tags_applied += self._apply_auto_tags(unique_new)
        result.tags_applied += self._apply_manual_tags(
            list(dict.fromkeys(post.id for post in all_posts)),
            tags,
        )

        result.total_synced = len(all_posts)
        timestamps = sorted(post.timestamp for post in all_posts if post.timestamp)
        if timestamps:
            result.first_synced_timestamp = timestamps[0]
            result.last_synced_timestamp = timestamps[-1]

        self.store.log_sync(BOOKMARK_SYNC_TYPE, result.total_synced, cursor)
        logger.info(
            "Bookmark sync complete | synced=%d new=%d pages=%d stop_reason=%s references=%d",
            result.total_synced,
            result.new_posts,
            result.pages_fetched,
            result.stop_reason,
            result.referenced_inserted,
        )
        return result

    def _expand_references(self, posts: list[Post], result: SyncResult) -> None:
        candidate_ids = collect_referenced_ids(posts)
        result.referenced_candidates = len(candidate_ids)
        if not candidate_ids:
            return

        batch_ids = {post.id for post in posts}
        outside_batch = [post_id for post_id in candidate_ids if post_id not in batch_ids]
        existing = self.store.get_existing_post_ids(outside_batch)
        result.referenced_existing = (len(candidate_ids) - len(outside_batch)) + len(existing)

        to_fetch = [post_id for post_id in outside_batch if post_id not in existing]
        for index in range(0, len(to_fetch), REFERENCE_FETCH_CHUNK):
            chunk = to_fetch[index : index + REFERENCE_FETCH_CHUNK]
            try:
                fetched = self.source.get_posts(chunk)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Fetching %d referenced posts failed: %s", len(chunk), exc)
                result.referenced_failed += len(chunk)
                continue

            result.referenced_fetched += len(fetched)
            result.referenced_failed += len(chunk) - len(fetched)
            if fetched:
                outcomes = self.store.upsert_posts(fetched, WRITE_SOURCE_BOOKMARK_REF)
                result.referenced_inserted += sum(
                    1 for outcome in outcomes if outcome.content_accepted
                )

    def _apply_auto_tags(self, posts: list[Post]) -> int:
        applied = 0
        for post_id, post_tags in auto_tag_posts(self.tagger, posts).items():
            for tag in post_tags:
                if self.store.tag_post(post_id, tag):
                    applied += 1
        return applied

    def _apply_manual_tags(self, post_ids: list[str], tags: list[str] | None) -> int:
        applied = 0
        for tag in tags or []:
            applied += self.store.tag_posts(post_ids, tag)
        return applied


def collect_referenced_ids(posts: list[Post]) -> list[str]:
    """Quoted, replied-to and linked post ids, first occurrence order."""
    seen: set[str] = set()
    referenced: list[str] = []

    for post in posts:
        candidates: list[str] = []
        if post.quoted_tweet_id:
            candidates.append(post.quoted_tweet_id)
        if post.in_reply_to:
            candidates.append(post.in_reply_to)
        candidates.extend(extract_post_ids_from_urls(post.urls))
        if post.source_url:
            candidates.extend(extract_post_ids_from_text(post.source_url))

        for candidate in candidates:
            if is_numeric_id(candidate) and candidate != post.id and candidate not in seen:
                seen.add(candidate)
                referenced.append(candidate)

    return referenced


def _has_post_before(posts: list[Post], cutoff: datetime) -> bool:
    for post in posts:
        published = parse_datetime_utc(post.timestamp)
        if published is not None and published < cutoff:
            return True
    return False
