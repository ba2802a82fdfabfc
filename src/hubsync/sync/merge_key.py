"""Storage-independent identity for resource records.

The same logical resource can arrive twice from different reads (per
section, per type, bulk export). ``merge_key`` gives both copies one
key so they can be collapsed; ``merge_records`` keeps the newer one.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from urllib.parse import urlsplit

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def canonicalize_url(url: str | None) -> str:
    """Normalize a URL for comparison.

    Adds ``https://`` when no scheme is present, lower-cases the host,
    strips trailing slashes from the path, keeps the query, then
    lower-cases the whole result. Unparseable input falls back to the
    trimmed, lower-cased string.
    """
    raw = (url or "").strip()
    if not raw:
        return ""
    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parts = urlsplit(candidate)
        host = parts.netloc.lower()
    except ValueError:
        return raw.lower()
    if not parts.scheme or not host:
        return raw.lower()
    path = parts.path.rstrip("/")
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme}://{host}{path}{query}".lower()


def canonicalize_title(title: str | None) -> str:
    return (title or "").strip().lower()


def merge_key(record: dict) -> str:
    """Return ``t:<title>|u:<url>``, or ``id:<id>`` when both are empty."""
    title = canonicalize_title(record.get("title"))
    url = canonicalize_url(record.get("url"))
    if not title and not url:
        return f"id:{record.get('id') or ''}"
    return f"t:{title}|u:{url}"


def record_timestamp(record: dict) -> datetime:
    """``updatedAt`` falling back to ``createdAt``; epoch when neither parses."""
    for key in ("updated_at", "updatedAt", "created_at", "createdAt"):
        value = record.get(key)
        if not value:
            continue
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            try:
                parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return _EPOCH


def pick_newer(current: dict, incoming: dict) -> dict:
    """Return the newer record; a tie goes to *incoming*."""
    if record_timestamp(incoming) >= record_timestamp(current):
        return incoming
    return current


def merge_records(records: Iterable[dict]) -> list[dict]:
    """Collapse records sharing a merge key, keeping first-seen order."""
    merged: dict[str, dict] = {}
    for record in records:
        key = merge_key(record)
        existing = merged.get(key)
        merged[key] = record if existing is None else pick_newer(existing, record)
    return list(merged.values())
