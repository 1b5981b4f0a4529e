"""Conversión de hora del dispositivo a UTC con una zona horaria fija."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo

from dateutil import tz

from glucolink.model import UtcInfo

DEVICE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
ACROSS_THE_BOARD = "across-the-board-timezone"


def format_device_time(value: datetime) -> str:
    """Format a naive device-local datetime as a device time string."""
    return value.replace(tzinfo=None, microsecond=0).strftime(DEVICE_TIME_FORMAT)


def utc_date_string(now: datetime | None = None) -> str:
    """Return an ISO-8601 UTC timestamp with millisecond precision."""
    current = now or datetime.now(timezone.utc)
    current = current.astimezone(timezone.utc)
    return current.strftime("%Y-%m-%dT%H:%M:%S.") + f"{current.microsecond // 1000:03d}Z"


def resolve_timezone(name: str) -> tzinfo:
    """Resolve an IANA zone name.

    Raises:
        ValueError: If the name is unknown.
    """
    zone = tz.gettz(name) if name else None
    if zone is None:
        raise ValueError(f"Unknown timezone: {name!r}")
    return zone


class TimezoneOffsetResolver:
    """Applies one timezone to every device time of a run.

    The devices handled here expose no history of date/time setting changes,
    so there is nothing to bootstrap from and the configured zone is used
    across the board.
    """

    type = ACROSS_THE_BOARD

    def __init__(self, timezone_name: str) -> None:
        self.timezone_name = timezone_name
        self._zone = resolve_timezone(timezone_name)

    def utc_info(self, local_time: datetime) -> UtcInfo:
        """Compute UTC time and offset for a naive device-local datetime."""
        aware = local_time.replace(tzinfo=self._zone)
        offset = aware.utcoffset()
        offset_minutes = int(offset.total_seconds() // 60) if offset else 0
        return UtcInfo(
            time=utc_date_string(aware),
            timezone_offset=offset_minutes,
        )
