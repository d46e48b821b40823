from __future__ import annotations

import hashlib
import re

_MULTISPACE = re.compile(r"\s+")

ELLIPSIS = "..."


def normalize_whitespace(value: str | None) -> str:
    return _MULTISPACE.sub(" ", value or "").strip()


def stable_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def truncate_text(value: str, max_chars: int) -> str:
    """Cut ``value`` to at most ``max_chars`` characters, ellipsis included."""
    if max_chars <= 0:
        return ""
    if len(value) <= max_chars:
        return value
    if max_chars <= len(ELLIPSIS):
        return value[:max_chars]
    return value[: max_chars - len(ELLIPSIS)].rstrip() + ELLIPSIS
