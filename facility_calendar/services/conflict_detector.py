"""
Conflict detection for candidate time blocks.

Advisory only: the detector reports overlapping bookings and never locks.
Two concurrent creates for the same slot can both pass the check before
either commits; the product allows legitimate simultaneous programs, so
there is deliberately no unique constraint on (facility, time, location).

Overlap is half-open: ``[10:00, 11:00)`` and ``[11:00, 12:00)`` do not
conflict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select

from facility_calendar.models import db
from facility_calendar.models.base import as_utc, isoformat_utc
from facility_calendar.models.calendar import ActivityInstance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivitySummary:
    id: int
    title: str
    start_at: datetime
    end_at: datetime
    location: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "startAt": isoformat_utc(self.start_at),
            "endAt": isoformat_utc(self.end_at),
            "location": self.location,
        }


@dataclass
class ConflictReport:
    """Transient result of a scheduling check; never persisted."""

    conflicts: list[ActivitySummary] = field(default_factory=list)
    outside_business_hours: bool = False

    @property
    def has_issues(self) -> bool:
        return bool(self.conflicts) or self.outside_business_hours

    def merge(self, other: "ConflictReport") -> None:
        """Fold ``other`` in: conflicts de-duplicated by id, hours OR-ed."""
        seen = {c.id for c in self.conflicts}
        for conflict in other.conflicts:
            if conflict.id not in seen:
                self.conflicts.append(conflict)
                seen.add(conflict.id)
        self.conflicts.sort(key=lambda c: (c.start_at, c.id))
        self.outside_business_hours = self.outside_business_hours or other.outside_business_hours

    def to_dict(self) -> dict:
        return {
            "conflicts": [c.to_dict() for c in self.conflicts],
            "outsideBusinessHours": self.outside_business_hours,
        }


def has_time_overlap(
    candidate_start: datetime,
    candidate_end: datetime,
    existing_start: datetime,
    existing_end: datetime,
) -> bool:
    return as_utc(candidate_start) < as_utc(existing_end) and as_utc(candidate_end) > as_utc(existing_start)


def find_conflicts(
    facility_id: int,
    start_at: datetime,
    end_at: datetime,
    location_scope: str | None = None,
    exclude_instance_id: int | None = None,
) -> list[ActivitySummary]:
    """Return the facility's instances overlapping ``[start_at, end_at)``.

    Args:
        facility_id: Mandatory scope; other facilities are never compared.
        start_at / end_at: Candidate block.
        location_scope: When given, only rows with exactly this location count.
        exclude_instance_id: Row being edited, left out of its own check.

    Returns:
        ActivitySummary list ordered by start_at ascending.
    """
    start_utc = as_utc(start_at)
    end_utc = as_utc(end_at)

    stmt = select(ActivityInstance).where(
        ActivityInstance.facility_id == facility_id,
        ActivityInstance.start_at < end_utc,
        ActivityInstance.end_at > start_utc,
    )
    if location_scope:
        stmt = stmt.where(ActivityInstance.location == location_scope)
    if exclude_instance_id is not None:
        stmt = stmt.where(ActivityInstance.id != exclude_instance_id)
    stmt = stmt.order_by(ActivityInstance.start_at.asc(), ActivityInstance.id.asc())

    rows = db.session.execute(stmt).scalars().all()
    conflicts = [
        ActivitySummary(
            id=row.id,
            title=row.title,
            start_at=as_utc(row.start_at),
            end_at=as_utc(row.end_at),
            location=row.location,
        )
        for row in rows
        if has_time_overlap(start_utc, end_utc, row.start_at, row.end_at)
    ]

    if conflicts:
        logger.debug(
            "Found %d conflicting activities", len(conflicts),
            extra={"facility_id": facility_id},
        )
    return conflicts
