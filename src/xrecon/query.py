from __future__ import annotations

import logging
import re
from dataclasses import asdict
from typing import Any

from xrecon.config import ListingSettings
from xrecon.models import LocalContentItem, LocalContentListResult, Post
from xrecon.store import Store
from xrecon.utils.cursor_utils import (
    decode_cursor,
    decode_offset_cursor,
    encode_cursor,
    encode_offset_cursor,
)
from xrecon.utils.text_utils import truncate_text

logger = logging.getLogger(__name__)

SNIPPET_MIN_CHARS = 200
SNIPPET_MAX_CHARS = 2000
TOTAL_MIN_CHARS = 2000
TOTAL_MAX_CHARS = 250000
TAG_LOOKUP_MAX_LIMIT = 500

_MATCH_TOKEN = re.compile(r"\w+", re.UNICODE)


def clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def build_match_expression(query: str) -> str:
    """Quote every word so user input can never be parsed as FTS5 syntax."""
    tokens = _MATCH_TOKEN.findall(query or "")
    return " ".join(f'"{token}"' for token in tokens)


def apply_content_budget(items: list[LocalContentItem], max_total_chars: int) -> bool:
    """Trim ``content_text`` in place so the page stays within the budget.

    Returns True when any row was cut.
    """
    remaining = max(0, max_total_chars)
    truncated = False
    for item in items:
        text = item.content_text or ""
        if not text:
            continue

        if len(text) <= remaining:
            remaining -= len(text)
            continue

        item.content_text = truncate_text(text, remaining)
        truncated = True
        remaining = 0
    return truncated


class ContentQuery:
    def __init__(self, store: Store, settings: ListingSettings | None = None) -> None:
        self.store = store
        self.settings = settings or ListingSettings()

    def search_content(
        self,
        query: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        tag: str | None = None,
        content_status: str | None = None,
        post_type: str | None = None,
        author: str | None = None,
        include_full_content: bool = False,
        snippet_chars: int | None = None,
        max_total_chars: int | None = None,
    ) -> LocalContentListResult:
        match_expression = build_match_expression(query)
        if not match_expression:
            return LocalContentListResult()

        page_size = self._page_size(limit)
        offset = decode_offset_cursor(cursor)
        rows = self.store.search_rows(
            match_expression,
            limit=page_size + 1,
            offset=offset,
            tag=tag,
            content_status=content_status,
            post_type=post_type,
            author=author,
        )

        has_more = len(rows) > page_size
        rows = rows[:page_size]
        next_cursor = encode_offset_cursor(offset + page_size) if has_more else None
        return self._build_result(
            rows,
            cursor=next_cursor,
            has_more=has_more,
            include_full_content=include_full_content,
            snippet_chars=snippet_chars,
            max_total_chars=max_total_chars,
        )

    def list_content(
        self,
        *,
        limit: int | None = None,
        cursor: str | None = None,
        post_type: str | None = None,
        tag: str | None = None,
        author: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        content_status: str | None = None,
        has_full_content: bool = False,
        include_full_content: bool = False,
        snippet_chars: int | None = None,
        max_total_chars: int | None = None,
    ) -> LocalContentListResult:
        page_size = self._page_size(limit)
        rows = self.store.list_rows(
            limit=page_size + 1,
            cursor=decode_cursor(cursor),
            tag=tag,
            content_status=content_status,
            post_type=post_type,
            author=author,
            from_date=from_date,
            to_date=to_date,
            has_full_content=has_full_content,
        )

        has_more = len(rows) > page_size
        rows = rows[:page_size]
        next_cursor = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = encode_cursor(last["created_at"], last["id"])

        return self._build_result(
            rows,
            cursor=next_cursor,
            has_more=has_more,
            include_full_content=include_full_content,
            snippet_chars=snippet_chars,
            max_total_chars=max_total_chars,
        )

    def get_posts_by_tag(self, tag: str, limit: int = 100) -> list[Post]:
        return self.store.get_posts_by_tag(tag, clamp(limit, 1, TAG_LOOKUP_MAX_LIMIT))

    def list_tags(self) -> dict[str, Any]:
        return {
            "tags": [asdict(summary) for summary in self.store.list_tags()],
            "total_posts": self.store.count_posts(),
        }

    def _page_size(self, limit: int | None) -> int:
        requested = self.settings.limit if limit is None else limit
        return clamp(requested, 1, self.settings.max_limit)

    def _build_result(
        self,
        rows: list[dict[str, Any]],
        *,
        cursor: str | None,
        has_more: bool,
        include_full_content: bool,
        snippet_chars: int | None,
        max_total_chars: int | None,
    ) -> LocalContentListResult:
        snippet_limit = clamp(
            self.settings.snippet_chars if snippet_chars is None else snippet_chars,
            SNIPPET_MIN_CHARS,
            SNIPPET_MAX_CHARS,
        )
        tags = self.store.get_tags([row["id"] for row in rows])

        items = [
            _row_to_item(
                row,
                snippet_chars=snippet_limit,
                include_full_content=include_full_content,
                tags=tags.get(row["id"], []),
            )
            for row in rows
        ]

        truncated = False
        if include_full_content:
            budget = clamp(
                self.settings.max_total_chars if max_total_chars is None else max_total_chars,
                TOTAL_MIN_CHARS,
                TOTAL_MAX_CHARS,
            )
            truncated = apply_content_budget(items, budget)
            if truncated:
                logger.debug("Content budget of %d characters exhausted", budget)

        return LocalContentListResult(
            data=items,
            cursor=cursor,
            has_more=has_more,
            truncated=truncated,
        )


def _row_to_item(
    row: dict[str, Any],
    *,
    snippet_chars: int,
    include_full_content: bool,
    tags: list[str],
) -> LocalContentItem:
    content_text = row.get("content_text") or ""
    rank = row.get("rank")
    return LocalContentItem(
        id=row["id"],
        type=row["type"],
        author_handle=row["author_handle"],
        author_name=row.get("author_name"),
        created_at=row["created_at"],
        source_url=row.get("source_url"),
        source=row.get("source"),
        article_title=row.get("article_title"),
        content_status=row["content_status"],
        content_source=row["content_source"],
        content_version=int(row["content_version"]),
        content_fetched_at=row.get("content_fetched_at"),
        snippet=truncate_text(content_text, snippet_chars),
        content_text=content_text if include_full_content else None,
        tags=tags,
        rank=float(rank) if rank is not None else None,
    )
