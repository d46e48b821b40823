from __future__ import annotations

import re

URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)

_POST_ID_FROM_URL = re.compile(
    r"(?:x\.com|twitter\.com)/(?:i|[A-Za-z0-9_]+)/status/(\d+)",
    re.IGNORECASE,
)
_NUMERIC_ID = re.compile(r"^\d+$")


def contains_url(value: str) -> bool:
    return URL_PATTERN.search(value or "") is not None


def strip_urls(value: str) -> str:
    return URL_PATTERN.sub(" ", value or "")


def extract_post_id(value: str) -> str:
    """Accept a raw numeric id or an x.com/twitter.com status URL."""
    trimmed = (value or "").strip()
    if _NUMERIC_ID.match(trimmed):
        return trimmed

    match = _POST_ID_FROM_URL.search(trimmed)
    if match:
        return match.group(1)

    raise ValueError(f"Cannot extract post id from: {value}")


def extract_post_ids_from_urls(urls: list[str]) -> list[str]:
    ids: list[str] = []
    for url in urls:
        match = _POST_ID_FROM_URL.search(url or "")
        if match and match.group(1) not in ids:
            ids.append(match.group(1))
    return ids


def extract_post_ids_from_text(text: str) -> list[str]:
    ids: list[str] = []
    for match in _POST_ID_FROM_URL.finditer(text or ""):
        if match.group(1) not in ids:
            ids.append(match.group(1))
    return ids


def is_numeric_id(value: str) -> bool:
    return bool(_NUMERIC_ID.match(value or ""))
