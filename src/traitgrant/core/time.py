from __future__ import annotations

from datetime import datetime, timezone


def truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime with millisecond precision.

    Naive datetimes are taken to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return truncate_to_millis(value.astimezone(timezone.utc))


def now_utc() -> datetime:
    return ensure_utc(datetime.now(timezone.utc))


def format_utc(value: datetime) -> str:
    """Return an ISO timestamp in UTC with millisecond precision.

    The fixed width keeps lexical order equal to chronological order, which the
    sqlite queries rely on.
    """
    return ensure_utc(value).isoformat(timespec="milliseconds")


def parse_utc(raw: str) -> datetime:
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
