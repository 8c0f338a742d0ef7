"""
timestamps.py - UTC timestamps in the change log format.

Format: ISO-8601, millisecond precision, literal Z suffix
(2025-12-18T10:30:00.123Z). Values of this format sort correctly
as plain strings.
"""

from datetime import datetime, timezone


def format_timestamp(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def utc_now() -> str:
    """Current UTC time as a log timestamp."""
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: str) -> datetime:
    """Parse a log timestamp into an aware datetime."""
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)
