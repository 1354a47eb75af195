"""
Date and Time utilities

Parses the timestamp formats found in XMLTV documents and provider JSON.
Unparsable values yield None so callers can drop the entry.
"""
from datetime import datetime, timedelta, timezone
import logging


logger = logging.getLogger(__name__)

XMLTV_TIME_FORMAT = "%Y%m%d%H%M%S"
PROVIDER_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_xmltv_time(time_str: str | None) -> datetime | None:
    """
    Convert XMLTV time format to a UTC datetime

    Args:
        time_str: XMLTV time like '20080715003000 -0600'. Without an offset the
                  first 14 digits are read as local time.

    Returns:
        Timezone-aware datetime in UTC, or None if the value is malformed
    """
    if not time_str:
        return None
    value = time_str.strip()
    if not value:
        return None

    try:
        parts = value.split()
        if len(parts) >= 2 and parts[1][:1] in ("+", "-"):
            dt = datetime.strptime(parts[0][:14], XMLTV_TIME_FORMAT)
            tz_part = parts[1]
            tz_sign = 1 if tz_part[0] == "+" else -1
            tz_hours = int(tz_part[1:3])
            tz_mins = int(tz_part[3:5])
            offset = timedelta(minutes=tz_sign * (tz_hours * 60 + tz_mins))
            return (dt - offset).replace(tzinfo=timezone.utc)

        if len(value) < 14:
            return None
        dt = datetime.strptime(value[:14], XMLTV_TIME_FORMAT)
        # Naive datetimes are interpreted as local time by astimezone()
        return dt.astimezone(timezone.utc)
    except (ValueError, IndexError, OverflowError):
        return None


def parse_provider_time(value: str | None) -> datetime | None:
    """Parse 'yyyy-MM-dd HH:mm:ss' provider timestamps, which are UTC."""
    if not value or not value.strip():
        return None
    try:
        return datetime.strptime(value.strip(), PROVIDER_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def from_epoch_seconds(value: int | None) -> datetime | None:
    if value is None or value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
