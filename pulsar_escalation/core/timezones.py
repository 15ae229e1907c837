"""Time-zone conversion helpers.

All instants inside the engine are timezone-aware UTC datetimes. Schedules
and DND settings are expressed in a local IANA zone; this module is the one
place that converts between the two.
"""

import zoneinfo
from datetime import UTC, datetime, tzinfo

from pulsar_escalation.logging_config import get_logger

logger = get_logger(__name__)


def get_zone(name: str | None) -> tzinfo:
    """Resolve an IANA zone name, falling back to UTC when unknown.

    Args:
        name: IANA time zone name such as "Europe/Berlin"

    Returns:
        The zone, or UTC if the name is empty or not recognised
    """
    if not name:
        return UTC
    try:
        return zoneinfo.ZoneInfo(name)
    except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
        logger.warning("Unknown time zone, falling back to UTC", timezone=name)
        return UTC


def ensure_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_local(value: datetime, zone: tzinfo) -> datetime:
    """Convert an instant to naive wall-clock time in the given zone."""
    return ensure_utc(value).astimezone(zone).replace(tzinfo=None)


def from_local(value: datetime, zone: tzinfo) -> datetime:
    """Convert naive wall-clock time in the given zone to an aware UTC instant.

    Ambiguous and non-existent wall times resolve with fold=0, the
    zoneinfo default.
    """
    return value.replace(tzinfo=zone).astimezone(UTC)

