from __future__ import annotations

from abc import ABC, abstractmethod

from xrecon.models import Page, Post


class Source(ABC):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id

    @abstractmethod
    def get_post(self, post_id: str) -> Post | None:
        """Fetch one post by id; None when the platform does not return it."""

    @abstractmethod
    def get_posts(self, post_ids: list[str]) -> list[Post]:
        """Bulk lookup; unresolvable ids are silently omitted."""

    @abstractmethod
    def list_bookmarks(self, cursor: str | None = None, max_results: int = 20) -> Page:
        """Fetch one page of the authenticated user's bookmarks."""
