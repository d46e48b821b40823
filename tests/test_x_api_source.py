from __future__ import annotations

import json
from typing import Any

import pytest

from xrecon.config import SourceSettings
from xrecon.hydration import classify_error
from xrecon.sources import JsonFileSource, XApiError, XApiSource, create_source, normalize_tweet
from xrecon.sources.registry import SourceRegistrationError


class _DummyResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload) if not isinstance(payload, str) else payload

    def json(self) -> Any:
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload


def _settings(**options: object) -> SourceSettings:
    return SourceSettings(id="x_api", type="x_api", url="https://api.x.test/2", options=dict(options))


_TWEET_PAYLOAD = {
    "data": [
        {
            "id": "200",
            "text": "https://t.co/abc",
            "author_id": "u1",
            "created_at": "2026-01-10T09:00:00.000Z",
            "conversation_id": "200",
            "lang": "en",
            "referenced_tweets": [{"type": "quoted", "id": "150"}],
            "entities": {
                "urls": [{"url": "https://t.co/abc", "expanded_url": "https://x.com/bob/status/150"}],
                "hashtags": [{"tag": "solana"}],
                "mentions": [{"username": "bob"}],
            },
            "public_metrics": {"like_count": 5, "retweet_count": 2, "reply_count": 1},
            "attachments": {"media_keys": ["m1"]},
            "article": {"title": "Deep dive", "text": "Full article body"},
        }
    ],
    "includes": {
        "users": [{"id": "u1", "username": "alice", "name": "Alice", "verified": True}],
        "media": [{"media_key": "m1", "type": "photo", "url": "https://img.test/1.png"}],
    },
}


def test_get_posts_normalizes_tweets_and_includes(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def _fake_get(url: str, **kwargs: Any) -> _DummyResponse:
        calls.append({"url": url, **kwargs})
        return _DummyResponse(_TWEET_PAYLOAD)

    monkeypatch.setattr("requests.get", _fake_get)

    source = XApiSource(_settings(), bearer_token="token")
    posts = source.get_posts(["200"])

    assert calls[0]["url"] == "https://api.x.test/2/tweets"
    assert calls[0]["params"]["ids"] == "200"
    assert calls[0]["headers"]["Authorization"] == "Bearer token"

    post = posts[0]
    assert post.id == "200"
    assert post.author.handle == "alice"
    assert post.author.verified is True
    assert post.source_url == "https://x.com/alice/status/200"
    assert post.quoted_tweet_id == "150"
    assert post.is_thread is True
    assert post.article.title == "Deep dive"
    assert post.article.text == "Full article body"
    assert post.urls == ["https://x.com/bob/status/150"]
    assert post.hashtags == ["solana"]
    assert post.media[0]["url"] == "https://img.test/1.png"
    assert post.metrics["likes"] == 5


def test_get_post_returns_none_on_404(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "requests.get",
        lambda *args, **kwargs: _DummyResponse({"title": "Not Found"}, status_code=404),
    )

    source = XApiSource(_settings(), bearer_token="token")

    assert source.get_post("404") is None


def test_http_errors_carry_status_for_classification(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "requests.get",
        lambda *args, **kwargs: _DummyResponse({"title": "Too Many Requests"}, status_code=429),
    )

    source = XApiSource(_settings(), bearer_token="token")

    with pytest.raises(XApiError) as exc_info:
        source.get_posts(["1"])

    assert exc_info.value.status_code == 429
    assert classify_error(exc_info.value).code == "RATE_LIMITED"


def test_unparseable_body_is_a_parse_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("requests.get", lambda *args, **kwargs: _DummyResponse("<html>"))

    source = XApiSource(_settings(), bearer_token="token")

    with pytest.raises(XApiError) as exc_info:
        source.get_posts(["1"])

    assert classify_error(exc_info.value).code == "PARSE_ERROR"


def test_missing_token_is_unauthorized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("X_TEST_TOKEN", raising=False)

    source = XApiSource(_settings(token_env_var="X_TEST_TOKEN"))

    with pytest.raises(XApiError) as exc_info:
        source.get_post("1")

    assert classify_error(exc_info.value).code == "UNAUTHORIZED"


def test_list_bookmarks_resolves_user_and_pages(monkeypatch: pytest.MonkeyPatch) -> None:
    urls: list[str] = []

    def _fake_get(url: str, **kwargs: Any) -> _DummyResponse:
        urls.append(url)
        if url.endswith("/users/me"):
            return _DummyResponse({"data": {"id": "u1"}})
        return _DummyResponse({**_TWEET_PAYLOAD, "meta": {"next_token": "next"}})

    monkeypatch.setattr("requests.get", _fake_get)

    source = XApiSource(_settings(), bearer_token="token")
    page = source.list_bookmarks(max_results=20)

    assert urls == ["https://api.x.test/2/users/me", "https://api.x.test/2/users/u1/bookmarks"]
    assert [post.id for post in page.items] == ["200"]
    assert page.cursor == "next"
    assert page.has_more is True


def test_normalize_tweet_without_includes() -> None:
    post = normalize_tweet({"id": "9", "text": "hello", "in_reply_to_user_id": "x"})

    assert post.source_url == "https://x.com/i/status/9"
    assert post.article is None
    assert post.is_thread is False


def test_registry_builds_configured_sources(tmp_path) -> None:
    export = tmp_path / "posts.json"
    export.write_text(
        json.dumps({"posts": [{"id": "1", "text": "hello", "author": {"handle": "alice"}}]}),
        encoding="utf-8",
    )

    json_source = create_source(SourceSettings(id="offline", type="json_file", url=str(export)))

    assert isinstance(json_source, JsonFileSource)
    assert json_source.get_post("1").author.handle == "alice"
    assert isinstance(create_source(_settings()), XApiSource)
    with pytest.raises(SourceRegistrationError):
        create_source(SourceSettings(type="nope"))
