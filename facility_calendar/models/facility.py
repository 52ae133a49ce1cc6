"""
Facility Calendar
Facility & scheduling-settings models.

Models:
    - Facility: the owning tenant of every calendar row
    - FacilitySettings: per-facility scheduling warning policy
"""

from facility_calendar.models import db
from facility_calendar.models.base import utcnow


DEFAULT_TIMEZONE = "America/Chicago"


def default_business_hours() -> dict:
    return {"start": "08:00", "end": "17:00", "days": [1, 2, 3, 4, 5]}


class Facility(db.Model):
    __tablename__ = "facilities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    timezone = db.Column(db.String(80), nullable=False, default=DEFAULT_TIMEZONE)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    settings = db.relationship(
        "FacilitySettings",
        back_populates="facility",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "timezone": self.timezone,
            "isActive": self.is_active,
        }

    def __repr__(self):
        return f"<Facility {self.slug}>"


class FacilitySettings(db.Model):
    """
    Scheduling warning policy for one facility.

    business_hours is stored as ``{"start": "HH:MM", "end": "HH:MM", "days": [0..6]}``
    with 0 = Sunday.
    """

    __tablename__ = "facility_settings"

    id = db.Column(db.Integer, primary_key=True)
    facility_id = db.Column(
        db.Integer,
        db.ForeignKey("facilities.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    business_hours = db.Column(db.JSON, default=default_business_hours)
    warn_therapy_overlap = db.Column(db.Boolean, default=True,
                                     comment="Reject overlapping bookings unless overridden")
    warn_outside_business_hours = db.Column(db.Boolean, default=True,
                                            comment="Reject out-of-hours bookings unless overridden")
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    facility = db.relationship("Facility", back_populates="settings")

    def __repr__(self):
        return f"<FacilitySettings facility={self.facility_id}>"
