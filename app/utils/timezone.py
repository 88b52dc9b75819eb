import re
from datetime import datetime, timezone as dt_timezone
from typing import Optional, Union

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import settings


# "2025/8/15 18:00" style accepted by the reminder endpoints
_SLASH_FORMAT = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})\s+(\d{1,2}):(\d{2})$")


def get_zoneinfo(tz_name: Optional[str] = None) -> Optional[ZoneInfo]:
    tz_name = tz_name or getattr(settings, "DEFAULT_TIMEZONE", None)
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_valid_timezone(tz_name: str) -> bool:
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def to_utc_naive(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-naive (tzinfo=None) for storage/comparison in SQLite.
    - Aware datetimes are converted to UTC and tzinfo is stripped
    - Naive datetimes are returned as-is (assumed UTC)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(dt_timezone.utc).replace(tzinfo=None)


def parse_flexible_datetime(value: Union[str, datetime], tz_name: Optional[str] = None) -> datetime:
    """
    Parse a reminder timestamp into a UTC-aware datetime.

    Accepts datetime objects, "YYYY/M/D HH:MM" strings (interpreted in ``tz_name``,
    falling back to DEFAULT_TIMEZONE) and ISO 8601 strings. Naive ISO values are
    interpreted in the same local timezone. Raises ValueError when nothing matches.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Date string is required")
        text = value.strip()
        match = _SLASH_FORMAT.match(text)
        if match:
            year, month, day, hour, minute = (int(part) for part in match.groups())
            parsed = datetime(year, month, day, hour, minute)
        else:
            try:
                # Accept both Z and +00:00
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValueError(
                    'Invalid date format. Supported formats: "YYYY/M/D HH:MM" or ISO 8601'
                ) from exc

    if parsed.tzinfo is None:
        tz = get_zoneinfo(tz_name)
        parsed = parsed.replace(tzinfo=tz) if tz else parsed.replace(tzinfo=dt_timezone.utc)
    return parsed.astimezone(dt_timezone.utc)


def format_local(dt: datetime, tz_name: Optional[str] = None) -> str:
    """Render a timestamp as "YYYY/M/D HH:MM" in the given (or default) timezone."""
    aware = to_utc_aware(dt)
    tz = get_zoneinfo(tz_name)
    local = aware.astimezone(tz) if tz else aware
    return f"{local.year}/{local.month}/{local.day} {local.hour:02d}:{local.minute:02d}"
