"""Single source of the current time so timers and SLAs can be tested."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
