"""
Facility settings provider.

Reads the scheduling warning policy of one facility and hands it to
ScheduleService as an explicit value. Nothing is cached at module level:
every request builds its own ``SchedulingPolicy`` so tests can inject
fixtures directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from facility_calendar.models import db
from facility_calendar.models.facility import (
    DEFAULT_TIMEZONE,
    Facility,
    FacilitySettings,
    default_business_hours,
)
from facility_calendar.services.business_hours import BusinessHoursPolicy

logger = logging.getLogger(__name__)


def _default_business_hours_policy() -> BusinessHoursPolicy:
    defaults = default_business_hours()
    return BusinessHoursPolicy(
        allowed_days=frozenset(defaults["days"]),
        start_hhmm=defaults["start"],
        end_hhmm=defaults["end"],
    )


@dataclass(frozen=True)
class SchedulingPolicy:
    warn_therapy_overlap: bool = True
    warn_outside_business_hours: bool = True
    business_hours: BusinessHoursPolicy = field(default_factory=_default_business_hours_policy)
    timezone: str = DEFAULT_TIMEZONE


def business_hours_from_json(value) -> BusinessHoursPolicy:
    """Coerce the stored JSON into a policy, falling back per missing key."""
    fallback = default_business_hours()
    data = value if isinstance(value, dict) else {}

    start = data.get("start") if isinstance(data.get("start"), str) else fallback["start"]
    end = data.get("end") if isinstance(data.get("end"), str) else fallback["end"]

    raw_days = data.get("days")
    if isinstance(raw_days, list):
        days = set()
        for day in raw_days:
            try:
                day = int(day)
            except (TypeError, ValueError):
                continue
            if 0 <= day <= 6:
                days.add(day)
    else:
        days = set(fallback["days"])

    return BusinessHoursPolicy(allowed_days=frozenset(days), start_hhmm=start, end_hhmm=end)


def get_scheduling_policy(facility_id: int, default_timezone: str = DEFAULT_TIMEZONE) -> SchedulingPolicy:
    """Return the scheduling policy for ``facility_id``.

    A facility without a settings row gets the defaults (both warnings on,
    08:00-17:00 Monday-Friday) in its own timezone, or ``default_timezone``
    when the facility has none.
    """
    facility_tz = db.session.execute(
        select(Facility.timezone).where(Facility.id == facility_id)
    ).scalar_one_or_none()

    settings = db.session.execute(
        select(FacilitySettings).where(FacilitySettings.facility_id == facility_id)
    ).scalar_one_or_none()

    if settings is None:
        logger.debug("No settings row; using defaults", extra={"facility_id": facility_id})
        return SchedulingPolicy(timezone=facility_tz or default_timezone)

    return SchedulingPolicy(
        warn_therapy_overlap=bool(settings.warn_therapy_overlap),
        warn_outside_business_hours=bool(settings.warn_outside_business_hours),
        business_hours=business_hours_from_json(settings.business_hours),
        timezone=facility_tz or default_timezone,
    )
