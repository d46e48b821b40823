from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

POST_TYPES = ("post", "reply", "quote", "thread_root", "article")

CONTENT_STATUS_NEW = "new"
CONTENT_STATUS_PENDING = "pending"
CONTENT_STATUS_FETCHING = "fetching"
CONTENT_STATUS_HYDRATED = "hydrated"
CONTENT_STATUS_PARTIAL = "partial"
CONTENT_STATUS_FAILED = "failed"
CONTENT_STATUS_MISSING = "missing"
CONTENT_STATUS_STALE = "stale"

CONTENT_STATUSES = (
    CONTENT_STATUS_NEW,
    CONTENT_STATUS_PENDING,
    CONTENT_STATUS_FETCHING,
    CONTENT_STATUS_HYDRATED,
    CONTENT_STATUS_PARTIAL,
    CONTENT_STATUS_FAILED,
    CONTENT_STATUS_MISSING,
    CONTENT_STATUS_STALE,
)

# Statuses the candidate query may pick up without an explicit request.
RETRYABLE_STATUSES = (
    CONTENT_STATUS_NEW,
    CONTENT_STATUS_PENDING,
    CONTENT_STATUS_PARTIAL,
    CONTENT_STATUS_FAILED,
    CONTENT_STATUS_STALE,
)

CONTENT_SOURCES = ("article", "note_tweet", "tweet", "unknown")

WRITE_SOURCE_HYDRATION = "hydration"
WRITE_SOURCE_BACKFILL = "backfill"
WRITE_SOURCE_MANUAL = "manual"
WRITE_SOURCE_BOOKMARK = "bookmark"
WRITE_SOURCE_BOOKMARK_REF = "bookmark_ref"

SKIP_VERSION_MISMATCH = "version_mismatch"
SKIP_CONCURRENT_UPDATE = "concurrent_update"

ERROR_RATE_LIMITED = "RATE_LIMITED"
ERROR_TIMEOUT = "TIMEOUT"
ERROR_NOT_FOUND = "NOT_FOUND"
ERROR_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_PARSE_ERROR = "PARSE_ERROR"
ERROR_UNKNOWN = "UNKNOWN"
ERROR_RETRY_MISSING = "RETRY_MISSING"
ERROR_CONCURRENT_UPDATE = "CONCURRENT_UPDATE"


@dataclass(slots=True)
class Author:
    handle: str
    name: str = ""
    id: str = ""
    verified: bool = False


@dataclass(slots=True)
class Article:
    id: str | None = None
    title: str | None = None
    text: str | None = None
    summary: str | None = None


@dataclass(slots=True)
class Post:
    id: str
    text: str
    author: Author
    timestamp: str = ""
    source_url: str = ""
    in_reply_to: str | None = None
    quoted_tweet_id: str | None = None
    is_thread: bool = False
    thread_id: str | None = None
    language: str | None = None
    note_tweet_text: str | None = None
    article: Article | None = None
    urls: list[str] = field(default_factory=list)
    hashtags: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    media: list[dict[str, Any]] = field(default_factory=list)
    metrics: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Post:
        raw_author = data.get("author") or {}
        author = Author(
            handle=str(raw_author.get("handle") or ""),
            name=str(raw_author.get("name") or raw_author.get("handle") or ""),
            id=str(raw_author.get("id") or ""),
            verified=bool(raw_author.get("verified", False)),
        )

        raw_article = data.get("article")
        article = None
        if isinstance(raw_article, dict):
            article = Article(
                id=_optional_str(raw_article.get("id")),
                title=_optional_str(raw_article.get("title")),
                text=_optional_str(raw_article.get("text")),
                summary=_optional_str(raw_article.get("summary")),
            )

        return cls(
            id=str(data.get("id") or ""),
            text=str(data.get("text") or ""),
            author=author,
            timestamp=str(data.get("timestamp") or ""),
            source_url=str(data.get("source_url") or ""),
            in_reply_to=_optional_str(data.get("in_reply_to")),
            quoted_tweet_id=_optional_str(data.get("quoted_tweet_id")),
            is_thread=bool(data.get("is_thread", False)),
            thread_id=_optional_str(data.get("thread_id")),
            language=_optional_str(data.get("language")),
            note_tweet_text=_optional_str(data.get("note_tweet_text")),
            article=article,
            urls=[str(url) for url in data.get("urls") or []],
            hashtags=[str(tag) for tag in data.get("hashtags") or []],
            mentions=[str(mention) for mention in data.get("mentions") or []],
            media=[item for item in data.get("media") or [] if isinstance(item, dict)],
            metrics={
                str(key): int(value)
                for key, value in (data.get("metrics") or {}).items()
                if isinstance(value, (int, float))
            },
        )


@dataclass(slots=True)
class CanonicalContent:
    type: str
    text: str
    article_title: str | None
    article_content: str | None
    content_text: str
    content_source: str
    content_status: str
    content_hash: str | None
    quality_score: int


@dataclass(slots=True)
class UpsertOutcome:
    content_accepted: bool
    content_version: int
    content_status: str
    skipped_reason: str | None = None


@dataclass(slots=True)
class ContentMeta:
    id: str
    type: str
    content_status: str
    content_version: int
    content_hash: str | None
    content_quality_score: int
    attempt_count: int
    next_retry_at: str | None
    error_code: str | None
    content_error: str | None
    last_hydration_attempt_at: str | None
    content_fetched_at: str | None
    source: str | None
    claimed_from_status: str | None = None


@dataclass(slots=True)
class HydrationCandidate:
    id: str
    created_at: str
    content_status: str
    content_version: int
    attempt_count: int


@dataclass(slots=True)
class HydrationRow:
    id: str
    old_status: str
    new_status: str
    content_version: int
    error_code: str | None = None


@dataclass(slots=True)
class HydrationRunResult:
    processed: int = 0
    hydrated: int = 0
    partial: int = 0
    failed: int = 0
    missing: int = 0
    skipped: int = 0
    dry_run: bool = False
    rows: list[HydrationRow] = field(default_factory=list)
    backfill_cursor: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.missing == 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class BackfillCheckpoint:
    job_name: str
    cursor_created_at: str | None
    cursor_id: str | None
    processed_count: int
    updated_at: str | None = None


@dataclass(slots=True)
class SyncRecord:
    sync_type: str
    cursor: str | None
    posts_synced: int
    completed_at: str


@dataclass(slots=True)
class TagSummary:
    tag: str
    count: int


@dataclass(slots=True)
class LocalContentItem:
    id: str
    type: str
    author_handle: str
    author_name: str | None
    created_at: str
    source_url: str | None
    source: str | None
    article_title: str | None
    content_status: str
    content_source: str
    content_version: int
    content_fetched_at: str | None
    snippet: str
    content_text: str | None = None
    tags: list[str] = field(default_factory=list)
    rank: float | None = None


@dataclass(slots=True)
class LocalContentListResult:
    data: list[LocalContentItem] = field(default_factory=list)
    cursor: str | None = None
    has_more: bool = False
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Page:
    items: list[Post] = field(default_factory=list)
    cursor: str | None = None
    has_more: bool = False


@dataclass(slots=True)
class IngestResult:
    requested: int = 0
    already_stored: int = 0
    fetched: int = 0
    tags_applied: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SyncResult:
    total_synced: int = 0
    new_posts: int = 0
    tags_applied: int = 0
    pages_fetched: int = 0
    stop_reason: str | None = None
    overlap_detected: bool = False
    cutoff_reached: bool = False
    first_synced_timestamp: str | None = None
    last_synced_timestamp: str | None = None
    referenced_candidates: int = 0
    referenced_existing: int = 0
    referenced_fetched: int = 0
    referenced_inserted: int = 0
    referenced_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None
