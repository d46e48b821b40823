from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from xrecon.config import SourceSettings
from xrecon.models import Page, Post

from .base import Source
from .registry import register_source


class JsonFileSource(Source):
    """Offline source backed by a JSON export (a list of post objects)."""

    def __init__(self, settings: SourceSettings) -> None:
        super().__init__(source_id=settings.id)
        self.path = Path(settings.url)
        self._posts: list[Post] | None = None

    def get_post(self, post_id: str) -> Post | None:
        for post in self._load():
            if post.id == post_id:
                return post
        return None

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        wanted = set(post_ids)
        return [post for post in self._load() if post.id in wanted]

    def list_bookmarks(self, cursor: str | None = None, max_results: int = 20) -> Page:
        posts = self._load()
        start = int(cursor) if cursor and cursor.isdigit() else 0
        end = start + max(1, max_results)
        has_more = end < len(posts)
        return Page(
            items=posts[start:end],
            cursor=str(end) if has_more else None,
            has_more=has_more,
        )

    def _load(self) -> list[Post]:
        if self._posts is None:
            with self.path.open("r", encoding="utf-8") as handle:
                raw: Any = json.load(handle)
            if isinstance(raw, dict):
                raw = raw.get("posts", [])
            if not isinstance(raw, list):
                raise RuntimeError(f"{self.path} must contain a list of posts")
            self._posts = [Post.from_dict(item) for item in raw if isinstance(item, dict)]
        return self._posts


@register_source("json_file")
def _build_json_file_source(settings: SourceSettings) -> Source:
    return JsonFileSource(settings)
