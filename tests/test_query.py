from __future__ import annotations

from xrecon.config import ListingSettings
from xrecon.models import Article, Author, LocalContentItem, Post
from xrecon.query import ContentQuery, apply_content_budget, build_match_expression


def _post(post_id: str, text: str, timestamp: str = "2026-01-10T09:00:00Z", **overrides: object) -> Post:
    base = Post(
        id=post_id,
        text=text,
        author=Author(handle="alice", name="Alice"),
        timestamp=timestamp,
    )
    for key, value in overrides.items():
        setattr(base, key, value)
    return base


def _item(post_id: str, content_text: str) -> LocalContentItem:
    return LocalContentItem(
        id=post_id,
        type="post",
        author_handle="alice",
        author_name=None,
        created_at="2026-01-10T09:00:00.000Z",
        source_url=None,
        source="bookmark",
        article_title=None,
        content_status="hydrated",
        content_source="tweet",
        content_version=1,
        content_fetched_at=None,
        snippet="",
        content_text=content_text,
    )


def _seed_three(store) -> None:
    store.upsert_posts(
        [
            _post("1", "Firedancer validator performance keeps improving"),
            _post("2", "Macro outlook for the coming quarter"),
            _post("3", "Stablecoin supply reached a new high"),
        ],
        "bookmark",
    )


def test_search_returns_only_matching_post(store) -> None:
    _seed_three(store)
    query = ContentQuery(store)

    result = query.search_content("firedancer")

    assert [item.id for item in result.data] == ["1"]
    assert result.data[0].rank is not None
    assert result.data[0].content_text is None
    assert result.has_more is False


def test_tag_scoped_search_returns_intersection(store) -> None:
    _seed_three(store)
    store.tag_post("1", "solana-validator")
    store.tag_post("2", "macro-analysis")
    query = ContentQuery(store)

    tagged = query.search_content("firedancer", tag="solana-validator")
    other_tag = query.search_content("firedancer", tag="macro-analysis")

    assert [item.id for item in tagged.data] == ["1"]
    assert tagged.data[0].tags == ["solana-validator"]
    assert other_tag.data == []


def test_search_matches_author_and_article_title(store) -> None:
    store.upsert_post(
        _post(
            "7",
            "https://t.co/abc",
            author=Author(handle="researcher", name="Deep Researcher"),
            article=Article(title="Liquidity mechanics explained"),
        ),
        "bookmark",
    )
    query = ContentQuery(store)

    assert [item.id for item in query.search_content("liquidity").data] == ["7"]
    assert [item.id for item in query.search_content("researcher").data] == ["7"]
    assert [item.id for item in query.search_content("@researcher", author="@Researcher").data] == ["7"]


def test_search_input_is_never_fts_syntax() -> None:
    assert build_match_expression('firedancer AND "validator" OR NEAR(x') == (
        '"firedancer" "AND" "validator" "OR" "NEAR" "x"'
    )
    assert build_match_expression("  ***  ") == ""


def test_search_pages_with_offset_cursor(store) -> None:
    store.upsert_posts(
        [_post(str(index), f"validator update number {index}") for index in range(1, 6)],
        "bookmark",
    )
    query = ContentQuery(store)

    seen: list[str] = []
    cursor = None
    while True:
        page = query.search_content("validator", limit=2, cursor=cursor)
        seen.extend(item.id for item in page.data)
        if not page.has_more:
            break
        cursor = page.cursor

    assert sorted(seen) == ["1", "2", "3", "4", "5"]
    assert len(seen) == 5


def test_listing_keyset_cursor_round_trips(store) -> None:
    store.upsert_posts(
        [
            _post("a", "first post body", "2026-01-01T00:00:00Z"),
            _post("b", "second post body", "2026-01-02T00:00:00Z"),
            _post("c", "third post body", "2026-01-02T00:00:00Z"),
            _post("d", "fourth post body", "2026-01-03T00:00:00Z"),
            _post("e", "fifth post body", "2026-01-04T00:00:00Z"),
        ],
        "bookmark",
    )
    query = ContentQuery(store)

    pages = []
    cursor = None
    while True:
        page = query.list_content(limit=2, cursor=cursor)
        pages.append([item.id for item in page.data])
        if not page.has_more:
            assert page.cursor is None
            break
        cursor = page.cursor

    assert pages == [["e", "d"], ["c", "b"], ["a"]]


def test_listing_filters(store) -> None:
    store.upsert_posts(
        [
            _post("1", "https://t.co/abc", "2026-01-01T00:00:00Z", article=Article(title="Draft")),
            _post("2", "A reply with actual words", "2026-01-02T00:00:00Z", in_reply_to="1"),
            _post("3", "", "2026-01-03T00:00:00Z", author=Author(handle="bob")),
        ],
        "bookmark",
    )
    query = ContentQuery(store)

    assert [i.id for i in query.list_content(post_type="article").data] == ["1"]
    assert [i.id for i in query.list_content(content_status="hydrated").data] == ["2"]
    assert [i.id for i in query.list_content(author="@BOB").data] == ["3"]
    assert [i.id for i in query.list_content(has_full_content=True).data] == ["2", "1"]
    assert [
        i.id
        for i in query.list_content(
            from_date="2026-01-02T00:00:00.000Z",
            to_date="2026-01-02T23:59:59.999Z",
        ).data
    ] == ["2"]


def test_snippet_is_bounded_and_marked(store) -> None:
    store.upsert_post(_post("1", "word " * 400), "bookmark")
    query = ContentQuery(store, ListingSettings(snippet_chars=600))

    default = query.list_content().data[0]
    small = query.list_content(snippet_chars=50).data[0]

    assert len(default.snippet) == 600
    assert default.snippet.endswith("...")
    assert len(small.snippet) == 200
    assert default.content_text is None


def test_full_content_respects_total_budget(store) -> None:
    store.upsert_posts(
        [_post(str(index), "x" * 1500, f"2026-01-0{index}T00:00:00Z") for index in range(1, 4)],
        "bookmark",
    )
    query = ContentQuery(store)

    result = query.list_content(include_full_content=True, max_total_chars=100)
    total = sum(len(item.content_text or "") for item in result.data)

    assert result.truncated is True
    assert total <= 2000
    assert [len(item.content_text) for item in result.data] == [1500, 500, 0]
    assert result.data[1].content_text.endswith("...")


def test_budget_not_truncated_when_everything_fits() -> None:
    items = [_item("1", "a" * 100), _item("2", "b" * 100)]

    assert apply_content_budget(items, 200) is False
    assert [item.content_text for item in items] == ["a" * 100, "b" * 100]
    assert apply_content_budget([_item("3", "c" * 10)], 5) is True


def test_limits_are_clamped(store) -> None:
    store.upsert_posts(
        [_post(str(index), f"post number {index}") for index in range(1, 4)],
        "bookmark",
    )
    query = ContentQuery(store, ListingSettings(limit=20, max_limit=2))

    assert len(query.list_content(limit=500).data) == 2
    assert len(query.list_content(limit=0).data) == 1


def test_list_tags_and_posts_by_tag(store) -> None:
    _seed_three(store)
    store.tag_posts(["1", "3"], "research")
    query = ContentQuery(store)

    summary = query.list_tags()

    assert summary == {"tags": [{"tag": "research", "count": 2}], "total_posts": 3}
    assert {post.id for post in query.get_posts_by_tag("research", limit=0)} <= {"1", "3"}
    assert len(query.get_posts_by_tag("research", limit=0)) == 1
