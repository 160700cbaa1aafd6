"""Date manipulation utilities"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database stores DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()
