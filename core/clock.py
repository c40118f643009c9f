from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC wall-clock time, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
