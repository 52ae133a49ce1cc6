"""
Business-hours check for candidate time blocks.

Pure: converts both ends of a block to facility-local time and compares them
with the facility's opening window. Whether the check runs at all is decided
by the facility settings (``warn_outside_business_hours``), not here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from facility_calendar.models.base import as_utc
from facility_calendar.services.recurrence import resolve_timezone

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class BusinessHoursPolicy:
    """Allowed weekdays (0 = Sunday … 6 = Saturday) and a local HH:MM window."""

    allowed_days: frozenset[int]
    start_hhmm: str = "08:00"
    end_hhmm: str = "17:00"

    def to_dict(self) -> dict:
        return {
            "start": self.start_hhmm,
            "end": self.end_hhmm,
            "days": sorted(self.allowed_days),
        }


def parse_hhmm(value: str) -> int | None:
    """``"08:30"`` → 510 minutes; None when malformed or out of range."""
    match = _HHMM.match((value or "").strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour * 60 + minute


def _sunday_based_weekday(local: datetime) -> int:
    return (local.weekday() + 1) % 7


def is_outside_business_hours(
    start_at: datetime,
    end_at: datetime,
    timezone_name: str,
    policy: BusinessHoursPolicy,
) -> bool:
    """Return True when the block is not fully inside business hours.

    Outside when:
        - either end falls on a weekday not in ``allowed_days``;
        - the block crosses local midnight (always flagged, even between two
          allowed days);
        - it starts before opening or ends after closing.
    """
    open_minutes = parse_hhmm(policy.start_hhmm)
    close_minutes = parse_hhmm(policy.end_hhmm)
    if open_minutes is None or close_minutes is None:
        logger.warning(
            "Unparseable business hours %s-%s; skipping outside-hours check",
            policy.start_hhmm, policy.end_hhmm,
        )
        return False

    tz = resolve_timezone(timezone_name)
    local_start = as_utc(start_at).astimezone(tz)
    local_end = as_utc(end_at).astimezone(tz)

    if _sunday_based_weekday(local_start) not in policy.allowed_days:
        return True
    if _sunday_based_weekday(local_end) not in policy.allowed_days:
        return True

    if local_start.date() != local_end.date():
        return True

    start_minutes = local_start.hour * 60 + local_start.minute
    end_minutes = local_end.hour * 60 + local_end.minute
    return start_minutes < open_minutes or end_minutes > close_minutes
