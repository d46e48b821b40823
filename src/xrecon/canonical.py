"""Canonical content extraction for stored posts.

``canonicalize`` decides, for one payload and the ingestion path that
delivered it, which text is the post's canonical body, how complete that
body is, and how it ranks against competing versions of the same post.
It performs no I/O and never raises.
"""

from __future__ import annotations

import re

from xrecon.models import (
    CONTENT_STATUS_HYDRATED,
    CONTENT_STATUS_PARTIAL,
    CONTENT_STATUS_PENDING,
    WRITE_SOURCE_BACKFILL,
    WRITE_SOURCE_BOOKMARK,
    WRITE_SOURCE_BOOKMARK_REF,
    WRITE_SOURCE_HYDRATION,
    WRITE_SOURCE_MANUAL,
    CanonicalContent,
    Post,
)
from xrecon.utils.text_utils import normalize_whitespace, stable_hash
from xrecon.utils.url_utils import contains_url, strip_urls

_URL_ONLY = re.compile(r"^https?://\S+?[^\w\s]*$", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[^\w\s]")
_MIN_INFORMATIVE_CHARS = 10

_SOURCE_PRIORITY = {
    WRITE_SOURCE_HYDRATION: 30,
    WRITE_SOURCE_BACKFILL: 30,
    WRITE_SOURCE_MANUAL: 20,
    WRITE_SOURCE_BOOKMARK: 10,
    WRITE_SOURCE_BOOKMARK_REF: 10,
}

_HYDRATION_SOURCES = {WRITE_SOURCE_HYDRATION, WRITE_SOURCE_BACKFILL}


def canonicalize(post: Post, write_source: str) -> CanonicalContent:
    post_type = detect_post_type(post)

    base_text = normalize_whitespace(post.text)
    note_text = normalize_whitespace(post.note_tweet_text)
    article_title = normalize_whitespace(post.article.title) if post.article else ""
    article_content = normalize_whitespace(post.article.text) if post.article else ""

    if article_content:
        content_text, content_source = article_content, "article"
    elif note_text:
        content_text, content_source = note_text, "note_tweet"
    elif base_text:
        content_text, content_source = base_text, "tweet"
    else:
        content_text, content_source = "", "unknown"

    placeholder = is_placeholder_content(content_text)
    informative = bool(content_text) and not placeholder

    if post_type == "article":
        if article_content and not placeholder:
            status = CONTENT_STATUS_HYDRATED
        elif is_hydration_source(write_source):
            status = CONTENT_STATUS_PARTIAL
        else:
            status = CONTENT_STATUS_PENDING
    else:
        status = CONTENT_STATUS_HYDRATED if informative else CONTENT_STATUS_PENDING

    return CanonicalContent(
        type=post_type,
        text=base_text,
        article_title=article_title or None,
        article_content=article_content or None,
        content_text=content_text,
        content_source=content_source,
        content_status=status,
        content_hash=stable_hash(content_text) if content_text else None,
        quality_score=compute_quality_score(
            content_text,
            has_article_body=bool(article_content),
            placeholder=placeholder,
            write_source=write_source,
        ),
    )


def detect_post_type(post: Post) -> str:
    # An article can itself be a reply, so the article check comes first.
    if post.article is not None:
        return "article"
    if post.in_reply_to:
        return "reply"
    if post.quoted_tweet_id:
        return "quote"
    if post.is_thread:
        return "thread_root"
    return "post"


def is_placeholder_content(value: str | None) -> bool:
    stripped = (value or "").strip()
    if not stripped:
        return False

    if _URL_ONLY.match(stripped):
        return True

    if not contains_url(stripped):
        return False

    remainder = normalize_whitespace(_PUNCTUATION.sub(" ", strip_urls(stripped)))
    return len(remainder) < _MIN_INFORMATIVE_CHARS


def compute_quality_score(
    content_text: str,
    *,
    has_article_body: bool,
    placeholder: bool,
    write_source: str,
) -> int:
    score = 0
    if has_article_body:
        score += 100
    if content_text and not placeholder:
        score += 20
    score += min(50, len(content_text) // 200)
    score += source_priority(write_source)
    return score


def source_priority(write_source: str) -> int:
    return _SOURCE_PRIORITY.get((write_source or "").strip().lower(), 0)


def is_hydration_source(write_source: str) -> bool:
    return (write_source or "").strip().lower() in _HYDRATION_SOURCES
