# /flowbot/utils/clock.py

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware UTC now. All persisted timestamps use this."""
    return datetime.now(timezone.utc)
