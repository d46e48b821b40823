from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from xrecon.models import Post

logger = logging.getLogger(__name__)


class TaggingError(RuntimeError):
    """Raised when the classification service fails."""


class Tagger(ABC):
    @abstractmethod
    def classify(self, posts: list[Post]) -> dict[str, list[str]]:
        """Return tags per post id for the given posts."""


def auto_tag_posts(tagger: Tagger | None, posts: list[Post]) -> dict[str, list[str]]:
    """Best-effort classification: any failure means no tags, never an abort."""
    if tagger is None or not posts:
        return {}

    try:
        return tagger.classify(posts)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Auto-tagging failed for %d posts; storing untagged: %s", len(posts), exc)
        return {}
