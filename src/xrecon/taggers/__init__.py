"""Classification collaborators."""

from .base import Tagger, TaggingError, auto_tag_posts
from .grok import TAG_TAXONOMY, GrokTagger

__all__ = ["GrokTagger", "TAG_TAXONOMY", "Tagger", "TaggingError", "auto_tag_posts"]
