"""Timezone resolution with a fixed fallback chain."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_ZONE = "Asia/Kolkata"
FALLBACK_OFFSET = timezone(timedelta(hours=5, minutes=30), "IST")

DATE_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class ResolvedZone:
    """A usable civil clock for one timezone."""

    name: str
    tzinfo: tzinfo

    def now(self) -> datetime:
        return datetime.now(self.tzinfo)

    def today(self) -> date:
        """Current calendar date in this zone."""
        return self.now().date()

    def today_iso(self) -> str:
        return self.today().strftime(DATE_FORMAT)


def _load_zone(name: str | None) -> ZoneInfo | None:
    """Load an IANA zone, returning None for blank or unknown names."""
    if not name or not name.strip():
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # ValueError covers malformed keys such as "../etc" or absolute paths
        logger.debug(f"Timezone not loadable: {name!r}")
        return None


def resolve_timezone(requested: str | None, configured_default: str | None = None) -> ResolvedZone:
    """
    Resolve a requested timezone to a usable clock.

    Resolution order:
        1. requested, if non-blank and loadable
        2. configured_default, if non-blank and loadable
        3. Asia/Kolkata
        4. fixed +05:30 offset

    Never raises.
    """
    for candidate in (requested, configured_default, FALLBACK_ZONE):
        zone = _load_zone(candidate)
        if zone is not None:
            return ResolvedZone(name=zone.key, tzinfo=zone)

    logger.warning("No timezone database available, using fixed +05:30 offset")
    return ResolvedZone(name="IST", tzinfo=FALLBACK_OFFSET)
