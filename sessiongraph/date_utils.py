"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _as_utc(value: datetime) -> datetime:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse producer ISO-8601 timestamps (``...Z`` or offset form) to aware UTC."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        return _as_utc(datetime.fromisoformat(cleaned.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%d %H:%M:%S"):
        try:
            return _as_utc(datetime.strptime(cleaned, fmt))
        except ValueError:
            continue
    return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def age_seconds(value: Any, now: datetime | None = None) -> float | None:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    reference = _as_utc(now) if now is not None else utc_now()
    return max(0.0, (reference - parsed).total_seconds())


def file_age_seconds(path: Path, now: datetime | None = None) -> float:
    """Seconds since ``path`` was last modified; +inf when it cannot be stat'ed."""
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return float("inf")
    reference = _as_utc(now) if now is not None else utc_now()
    return max(0.0, reference.timestamp() - float(mtime))
