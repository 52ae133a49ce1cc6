"""
FacilityModel: abstract base class for facility-scoped models.

Every calendar table belongs to exactly one facility and inherits from
FacilityModel instead of db.Model directly. This adds:
  - facility_id FK column with index
  - query_for_facility(facility_id) classmethod

It also hosts the UTC helpers every model uses to serialize instants.
"""

from datetime import datetime, timezone

from facility_calendar.models import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime | None) -> str | None:
    """Render an instant as ``2024-01-01T15:00:00.000Z``."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FacilityModel(db.Model):
    """Abstract base for facility-scoped tables."""
    __abstract__ = True

    facility_id = db.Column(
        db.Integer,
        db.ForeignKey("facilities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_facility(cls, facility_id):
        """Return a query filtered by facility_id."""
        return cls.query.filter_by(facility_id=facility_id)
