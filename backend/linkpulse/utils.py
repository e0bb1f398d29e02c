import hashlib
from typing import Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from .config import settings


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def normalize_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC (assume naive is UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clock_now(now: Optional[datetime] = None) -> datetime:
    """
    Wall-clock time in the configured CLOCK_TIMEZONE.
    Rule hours and script hour/day conditions are both read from this.
    """
    current = normalize_utc(now) or utc_now()
    return current.astimezone(ZoneInfo(settings.CLOCK_TIMEZONE))


def day_start(now: Optional[datetime] = None) -> datetime:
    """
    Start of the current CLOCK_TIMEZONE day, as UTC.
    clicks_today counts clicks since this instant.
    """
    local = clock_now(now)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def day_of_week(dt: datetime) -> int:
    """Day of week with Sunday as 0, matching what rule authors configure."""
    return (dt.weekday() + 1) % 7


def hash_ip(ip: str, salt: Optional[str] = None) -> str:
    """Salted SHA-256 of an IP, truncated; used instead of the raw IP in aggregates."""
    salt = settings.IP_HASH_SALT if salt is None else salt
    return hashlib.sha256(f"{salt}:{ip}".encode()).hexdigest()[:16]


def is_reserved_code(code: str) -> bool:
    """Check if a code is reserved."""
    return code.lower() in [r.lower() for r in settings.RESERVED_CODES]


def format_short_url(code: str) -> str:
    """Format a short code into a full URL."""
    base = settings.BASE_URL.rstrip('/')
    return f"{base}/{code}"
