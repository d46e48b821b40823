from __future__ import annotations

import logging
import os
from typing import Any

import requests

from xrecon.config import SourceSettings
from xrecon.models import Article, Author, Page, Post

from .base import Source
from .registry import register_source

logger = logging.getLogger(__name__)

_TWEET_FIELDS = ",".join(
    [
        "text",
        "created_at",
        "public_metrics",
        "entities",
        "author_id",
        "conversation_id",
        "referenced_tweets",
        "note_tweet",
        "article",
        "attachments",
        "lang",
    ]
)
_USER_FIELDS = "name,username,verified"
_EXPANSIONS = "author_id,referenced_tweets.id,attachments.media_keys"
_MEDIA_FIELDS = "url,preview_image_url,type,alt_text"

_MAX_IDS_PER_LOOKUP = 100


class XApiError(RuntimeError):
    """Raised when the X API returns an error response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class XApiSource(Source):
    def __init__(self, settings: SourceSettings, *, bearer_token: str | None = None) -> None:
        super().__init__(source_id=settings.id)
        self.base_url = settings.url.rstrip("/")
        timeout_raw = settings.options.get("timeout_seconds", 30)
        self.timeout_seconds = int(timeout_raw) if timeout_raw is not None else 30
        token_env_var = str(settings.options.get("token_env_var", "X_API_BEARER_TOKEN"))
        self.bearer_token = (bearer_token or os.getenv(token_env_var, "")).strip()
        self.user_id = str(settings.options.get("user_id", "")).strip() or None

    def get_post(self, post_id: str) -> Post | None:
        payload = self._get(f"/tweets/{post_id}", _tweet_params(), allow_not_found=True)
        if payload is None or not isinstance(payload.get("data"), dict):
            return None
        posts = _join_payload({**payload, "data": [payload["data"]]})
        return posts[0] if posts else None

    def get_posts(self, post_ids: list[str]) -> list[Post]:
        posts: list[Post] = []
        for index in range(0, len(post_ids), _MAX_IDS_PER_LOOKUP):
            chunk = post_ids[index : index + _MAX_IDS_PER_LOOKUP]
            payload = self._get("/tweets", {**_tweet_params(), "ids": ",".join(chunk)})
            posts.extend(_join_payload(payload or {}))
        return posts

    def list_bookmarks(self, cursor: str | None = None, max_results: int = 20) -> Page:
        user_id = self._resolve_user_id()
        params: dict[str, Any] = {**_tweet_params(), "max_results": max(1, min(max_results, 100))}
        if cursor:
            params["pagination_token"] = cursor

        payload = self._get(f"/users/{user_id}/bookmarks", params) or {}
        next_token = (payload.get("meta") or {}).get("next_token")
        return Page(
            items=_join_payload(payload),
            cursor=next_token,
            has_more=bool(next_token),
        )

    def _resolve_user_id(self) -> str:
        if self.user_id:
            return self.user_id

        payload = self._get("/users/me", {}) or {}
        user_id = str((payload.get("data") or {}).get("id", "")).strip()
        if not user_id:
            raise XApiError("X API did not return the authenticated user id")
        self.user_id = user_id
        return user_id

    def _get(
        self,
        path: str,
        params: dict[str, Any],
        *,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        if not self.bearer_token:
            raise XApiError("X API bearer token is not configured", status_code=401)

        headers = {
            "Authorization": f"Bearer {self.bearer_token}",
            "User-Agent": "xrecon/0.1",
        }
        response = requests.get(
            f"{self.base_url}{path}",
            params=params,
            headers=headers,
            timeout=self.timeout_seconds,
        )

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 400:
            raise XApiError(
                f"X API returned {response.status_code} for {path}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise XApiError(f"Failed to parse X API response for {path}") from exc

        if not isinstance(payload, dict):
            raise XApiError(f"Failed to parse X API response for {path}: expected an object")

        errors = payload.get("errors")
        if errors and "data" not in payload:
            if allow_not_found and _is_not_found(errors):
                return None
            logger.warning("X API returned errors for %s: %s", path, errors)
        return payload


def normalize_tweet(
    tweet: dict[str, Any],
    users_by_id: dict[str, dict[str, Any]] | None = None,
    media_by_key: dict[str, dict[str, Any]] | None = None,
) -> Post:
    """Turn an X API v2 tweet and its expanded includes into a ``Post``."""
    users_by_id = users_by_id or {}
    media_by_key = media_by_key or {}

    post_id = str(tweet.get("id", ""))
    author_id = str(tweet.get("author_id", ""))
    user = users_by_id.get(author_id, {})
    handle = str(user.get("username", ""))

    refs = tweet.get("referenced_tweets") or []
    in_reply_to = _referenced_id(refs, "replied_to")
    quoted_id = _referenced_id(refs, "quoted")

    entities = tweet.get("entities") or {}
    metrics = tweet.get("public_metrics") or {}

    media_keys = (tweet.get("attachments") or {}).get("media_keys") or []
    media = []
    for key in media_keys:
        item = media_by_key.get(key)
        if item is None:
            continue
        media.append(
            {
                "type": item.get("type", "photo"),
                "url": item.get("url") or item.get("preview_image_url") or "",
                "alt": item.get("alt_text"),
                "thumbnail": item.get("preview_image_url"),
            }
        )

    note_tweet = tweet.get("note_tweet") or {}
    raw_article = tweet.get("article")
    article = None
    if isinstance(raw_article, dict):
        article = Article(
            id=_optional(raw_article.get("id") or raw_article.get("article_id")),
            title=_optional(raw_article.get("title") or raw_article.get("headline")),
            text=_optional(
                raw_article.get("text") or raw_article.get("content") or raw_article.get("body")
            ),
            summary=_optional(raw_article.get("summary") or raw_article.get("preview_text")),
        )

    conversation_id = _optional(tweet.get("conversation_id"))

    return Post(
        id=post_id,
        text=str(tweet.get("text", "")),
        author=Author(
            handle=handle,
            name=str(user.get("name") or handle),
            id=author_id,
            verified=bool(user.get("verified", False)),
        ),
        timestamp=str(tweet.get("created_at", "")),
        source_url=(
            f"https://x.com/{handle}/status/{post_id}"
            if handle
            else f"https://x.com/i/status/{post_id}"
        ),
        in_reply_to=in_reply_to,
        quoted_tweet_id=quoted_id,
        is_thread=conversation_id == post_id and not in_reply_to,
        thread_id=conversation_id,
        language=_optional(tweet.get("lang")),
        note_tweet_text=_optional(note_tweet.get("text")),
        article=article,
        urls=[
            str(url.get("expanded_url") or url.get("url") or "")
            for url in entities.get("urls") or []
        ],
        hashtags=[str(tag.get("tag", "")) for tag in entities.get("hashtags") or []],
        mentions=[str(mention.get("username", "")) for mention in entities.get("mentions") or []],
        media=media,
        metrics={
            "likes": int(metrics.get("like_count", 0)),
            "retweets": int(metrics.get("retweet_count", 0)),
            "replies": int(metrics.get("reply_count", 0)),
            "views": int(metrics.get("impression_count", 0)),
            "bookmarks": int(metrics.get("bookmark_count", 0)),
        },
    )


def _join_payload(payload: dict[str, Any]) -> list[Post]:
    includes = payload.get("includes") or {}
    users_by_id = {str(user.get("id")): user for user in includes.get("users") or []}
    media_by_key = {str(item.get("media_key")): item for item in includes.get("media") or []}

    posts: list[Post] = []
    for tweet in payload.get("data") or []:
        if not isinstance(tweet, dict) or not tweet.get("id"):
            continue
        posts.append(normalize_tweet(tweet, users_by_id, media_by_key))
    return posts


def _tweet_params() -> dict[str, Any]:
    return {
        "tweet.fields": _TWEET_FIELDS,
        "user.fields": _USER_FIELDS,
        "expansions": _EXPANSIONS,
        "media.fields": _MEDIA_FIELDS,
    }


def _referenced_id(refs: list[dict[str, Any]], ref_type: str) -> str | None:
    for ref in refs:
        if isinstance(ref, dict) and ref.get("type") == ref_type and ref.get("id"):
            return str(ref["id"])
    return None


def _is_not_found(errors: list[Any]) -> bool:
    for error in errors:
        if not isinstance(error, dict):
            continue
        title = str(error.get("title", "")).lower()
        if "not found" in title or "resource-not-found" in str(error.get("type", "")):
            return True
    return False


def _optional(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


@register_source("x_api")
def _build_x_api_source(settings: SourceSettings) -> Source:
    return XApiSource(settings)
