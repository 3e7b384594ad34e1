# Overview: UTC timestamp helpers shared by models, services and the health route.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC 'now'; every timestamp column stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive values (SQLite drops tzinfo on the way back)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 at second precision with a trailing 'Z', or None."""
    if dt is None:
        return None
    return as_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")
