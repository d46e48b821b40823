from __future__ import annotations

import base64
import binascii

_SEPARATOR = "::"
_OFFSET_PREFIX = "offset"


def encode_cursor(created_at: str, post_id: str) -> str:
    raw = f"{created_at}{_SEPARATOR}{post_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str | None) -> tuple[str, str] | None:
    """Return ``(created_at, id)`` for a cursor token, or None when it is unusable."""
    if not cursor:
        return None

    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None

    created_at, separator, post_id = decoded.partition(_SEPARATOR)
    if not separator or not created_at or not post_id:
        return None
    return created_at, post_id


def encode_offset_cursor(offset: int) -> str:
    return encode_cursor(_OFFSET_PREFIX, str(offset))


def decode_offset_cursor(cursor: str | None) -> int:
    decoded = decode_cursor(cursor)
    if decoded is None or decoded[0] != _OFFSET_PREFIX or not decoded[1].isdigit():
        return 0
    return int(decoded[1])
