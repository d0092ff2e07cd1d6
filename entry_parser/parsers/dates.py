"""Date normalization for extracted entries."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, MutableMapping

from entry_parser.config import settings
from entry_parser.parsers.timezone import DATE_FORMAT, resolve_timezone

logger = logging.getLogger(__name__)


class DateResolution(str, Enum):
    """How the final date of an entry was decided."""

    KEPT = "kept"  # Well-formed date from the extraction
    TRIMMED = "trimmed"  # Well-formed date with surrounding whitespace removed
    CONFIRMED_TODAY = "confirmed_today"  # Extraction asked for confirmation
    INFERRED_TODAY = "inferred_today"  # Date missing or malformed


def is_calendar_date(value: Any) -> bool:
    """Check for a real YYYY-MM-DD calendar date."""
    if not isinstance(value, str):
        return False
    value = value.strip()
    if len(value) != 10:
        return False
    try:
        datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        return False
    return True


def needs_date_confirmation(entry: MutableMapping[str, Any]) -> bool:
    """Read needs_confirmation.date; anything but a boolean true counts as false."""
    flags = entry.get("needs_confirmation")
    if not isinstance(flags, dict):
        return False
    return flags.get("date") is True


def resolve_date(
    entry: MutableMapping[str, Any],
    transcript: str,
    timezone: str | None,
    default_timezone: str | None = None,
) -> DateResolution:
    """
    Decide the entry's date, overwriting it with today when required.

    A flagged date or a missing/malformed one becomes today's date in the
    resolved timezone. A well-formed, unflagged date is kept, with any
    surrounding whitespace written back trimmed.
    """
    if default_timezone is None:
        default_timezone = settings.tz_default

    if needs_date_confirmation(entry):
        resolution = DateResolution.CONFIRMED_TODAY
    elif not is_calendar_date(entry.get("date")):
        resolution = DateResolution.INFERRED_TODAY
    else:
        date = entry["date"]
        if date == date.strip():
            return DateResolution.KEPT
        entry["date"] = date.strip()
        return DateResolution.TRIMMED

    zone = resolve_timezone(timezone, default_timezone)
    today = zone.today_iso()
    logger.debug(
        f"Setting date to {today} ({resolution.value}, zone {zone.name}, "
        f"was {entry.get('date')!r}, transcript {len(transcript)} chars)"
    )
    entry["date"] = today
    return resolution


def ensure_date(
    entry: MutableMapping[str, Any],
    transcript: str,
    timezone: str | None,
    default_timezone: str | None = None,
) -> bool:
    """Apply resolve_date and report whether the entry was mutated."""
    return resolve_date(entry, transcript, timezone, default_timezone) is not DateResolution.KEPT
