"""Time utilities (UTC now, naive->aware normalisation)."""
from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

__all__ = ["utc_now", "ensure_utc"]
