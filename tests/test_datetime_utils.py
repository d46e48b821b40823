from __future__ import annotations

from datetime import datetime, timezone

from xrecon.utils.datetime_utils import isoformat_utc, parse_datetime_utc


def test_parse_datetime_utc_accepts_strings_and_datetimes() -> None:
    expected = datetime(2026, 1, 10, 9, 0, tzinfo=timezone.utc)

    assert parse_datetime_utc("2026-01-10T09:00:00Z") == expected
    assert parse_datetime_utc("Sat Jan 10 09:00:00 +0000 2026") == expected
    assert parse_datetime_utc(datetime(2026, 1, 10, 9, 0)) == expected


def test_parse_datetime_utc_rejects_other_values() -> None:
    assert parse_datetime_utc(None) is None
    assert parse_datetime_utc("   ") is None
    assert parse_datetime_utc("not a date") is None
    assert parse_datetime_utc(1767999600) is None


def test_isoformat_utc_is_fixed_width() -> None:
    value = datetime(2026, 1, 10, 9, 0, 5, 120000, tzinfo=timezone.utc)

    assert isoformat_utc(value) == "2026-01-10T09:00:05.120Z"
