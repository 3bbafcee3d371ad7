import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_FROZEN_NOW: Optional[datetime] = None
_CLOCK_LOCK = threading.Lock()


def utc_now() -> datetime:
    with _CLOCK_LOCK:
        if _FROZEN_NOW is not None:
            return _FROZEN_NOW
    return datetime.now(timezone.utc).replace(microsecond=0)


def freeze_clock(at: Any) -> datetime:
    """Pin utc_now() to a fixed instant until reset_clock() is called."""
    global _FROZEN_NOW

    frozen = parse_timestamp(at)
    with _CLOCK_LOCK:
        _FROZEN_NOW = frozen
    return frozen


def advance_clock(**delta: float) -> datetime:
    global _FROZEN_NOW

    with _CLOCK_LOCK:
        base = _FROZEN_NOW or datetime.now(timezone.utc).replace(microsecond=0)
        _FROZEN_NOW = base + timedelta(**delta)
        return _FROZEN_NOW


def reset_clock() -> None:
    global _FROZEN_NOW

    with _CLOCK_LOCK:
        _FROZEN_NOW = None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values are treated as UTC. Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        dt = datetime.fromisoformat(raw)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def format_timestamp(dt: datetime) -> str:
    return parse_timestamp(dt).strftime(TIMESTAMP_FORMAT)


def normalize_timestamp(value: Any) -> str:
    return format_timestamp(parse_timestamp(value))


def now_iso() -> str:
    return format_timestamp(utc_now())
