"""Clock helpers shared by the ledgers and the queue."""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def seconds_ago(seconds: float) -> datetime:
    """Cutoff timestamp `seconds` before now."""
    return utcnow() - timedelta(seconds=seconds)
