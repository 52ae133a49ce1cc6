"""
Facility Calendar
Calendar domain models.

Models:
    - ActivitySeries: recurring activity definition (dtstart + rrule + timezone)
    - ActivityInstance: one concrete bookable time block
    - SeriesException: a suppressed occurrence (exdate) of a series

Value objects:
    - ChecklistItem, AdaptationFlag, Adaptations: typed forms of the
      checklist / adaptations JSON columns
"""

from dataclasses import dataclass, field

from facility_calendar.core.exceptions import ValidationError
from facility_calendar.models import db
from facility_calendar.models.base import FacilityModel, isoformat_utc, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_LOCATION = "Activity Room"

STATE_STANDALONE = "standalone"
STATE_SERIES_GENERATED = "series_generated"
STATE_SERIES_OVERRIDE = "series_override"

# Detach-on-edit is one-way; overrides and standalone rows never change state.
INSTANCE_TRANSITIONS = {
    STATE_SERIES_GENERATED: {STATE_SERIES_OVERRIDE},
    STATE_SERIES_OVERRIDE: set(),
    STATE_STANDALONE: set(),
}

ADAPTATION_KEYS = {
    "bedBound": "bed_bound",
    "dementiaFriendly": "dementia_friendly",
    "lowVisionHearing": "low_vision_hearing",
    "oneToOneMini": "one_to_one_mini",
}


def validate_instance_transition(current: str, target: str) -> bool:
    return target in INSTANCE_TRANSITIONS.get(current, set())


# ── Value objects ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChecklistItem:
    label: str
    done: bool = False

    def to_dict(self) -> dict:
        return {"label": self.label, "done": self.done}


@dataclass(frozen=True)
class AdaptationFlag:
    enabled: bool = False
    override_text: str | None = None

    def to_dict(self) -> dict:
        return {"enabled": self.enabled, "overrideText": self.override_text}


@dataclass(frozen=True)
class Adaptations:
    bed_bound: AdaptationFlag = field(default_factory=AdaptationFlag)
    dementia_friendly: AdaptationFlag = field(default_factory=AdaptationFlag)
    low_vision_hearing: AdaptationFlag = field(default_factory=AdaptationFlag)
    one_to_one_mini: AdaptationFlag = field(default_factory=AdaptationFlag)
    overrides: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            wire: getattr(self, attr).to_dict()
            for wire, attr in ADAPTATION_KEYS.items()
        }
        data["overrides"] = dict(self.overrides)
        return data


def _parse_flag(name: str, value) -> AdaptationFlag:
    if value is None:
        return AdaptationFlag()
    if isinstance(value, bool):
        return AdaptationFlag(enabled=value)
    if isinstance(value, dict):
        enabled = value.get("enabled", False)
        text = value.get("overrideText")
        if not isinstance(enabled, bool):
            raise ValidationError(
                "Invalid adaptations payload.",
                details={f"adaptationsEnabled.{name}.enabled": "Must be a boolean."},
            )
        if text is not None and not isinstance(text, str):
            raise ValidationError(
                "Invalid adaptations payload.",
                details={f"adaptationsEnabled.{name}.overrideText": "Must be a string."},
            )
        return AdaptationFlag(enabled=enabled, override_text=(text or "").strip() or None)
    raise ValidationError(
        "Invalid adaptations payload.",
        details={f"adaptationsEnabled.{name}": "Must be a boolean or {enabled, overrideText}."},
    )


def parse_adaptations(value) -> Adaptations:
    """Normalize a loose adaptations payload into ``Adaptations``.

    Accepts ``None`` (all disabled), booleans per key, or
    ``{"enabled": bool, "overrideText": str}`` per key, plus a free-text
    ``overrides`` map. Unknown keys are rejected.
    """
    if value is None:
        return Adaptations()
    if not isinstance(value, dict):
        raise ValidationError(
            "Invalid adaptations payload.",
            details={"adaptationsEnabled": "Must be an object."},
        )

    unknown = set(value) - set(ADAPTATION_KEYS) - {"overrides"}
    if unknown:
        raise ValidationError(
            "Invalid adaptations payload.",
            details={f"adaptationsEnabled.{k}": "Unknown adaptation." for k in sorted(unknown)},
        )

    overrides = value.get("overrides") or {}
    if not isinstance(overrides, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in overrides.items()
    ):
        raise ValidationError(
            "Invalid adaptations payload.",
            details={"adaptationsEnabled.overrides": "Must map strings to strings."},
        )

    flags = {
        attr: _parse_flag(wire, value.get(wire))
        for wire, attr in ADAPTATION_KEYS.items()
    }
    return Adaptations(overrides=dict(overrides), **flags)


def parse_checklist(value) -> list[ChecklistItem]:
    """Normalize a checklist payload (strings or ``{label, done}`` objects)."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("Invalid checklist payload.", details={"checklist": "Must be a list."})

    items = []
    for idx, raw in enumerate(value):
        if isinstance(raw, str) and raw.strip():
            items.append(ChecklistItem(label=raw.strip()))
            continue
        if isinstance(raw, dict):
            label = raw.get("label", raw.get("text"))
            done = raw.get("done", False)
            if isinstance(label, str) and label.strip() and isinstance(done, bool):
                items.append(ChecklistItem(label=label.strip(), done=done))
                continue
        raise ValidationError(
            "Invalid checklist payload.",
            details={f"checklist[{idx}]": "Must be a non-empty string or {label, done}."},
        )
    return items


def normalize_location(location: str | None) -> str:
    trimmed = (location or "").strip()
    return trimmed or DEFAULT_LOCATION


# ── ActivitySeries ───────────────────────────────────────────────────────────


class ActivitySeries(FacilityModel):
    """
    A recurring activity definition.

    ``dtstart`` and ``timezone`` anchor all occurrence arithmetic and are never
    recomputed from materialized instances.
    """

    __tablename__ = "activity_series"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(160), nullable=False, default=DEFAULT_LOCATION)
    template_id = db.Column(db.String(64), nullable=True)
    dtstart = db.Column(db.DateTime(timezone=True), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    rrule = db.Column(db.String(200), nullable=False,
                      comment="FREQ=..;INTERVAL=..[;BYDAY=..][;COUNT=..][;UNTIL=..]")
    until = db.Column(db.DateTime(timezone=True), nullable=True,
                      comment="Mirror of UNTIL for range queries")
    timezone = db.Column(db.String(80), nullable=False)
    checklist = db.Column(db.JSON, default=list)
    adaptations = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    instances = db.relationship(
        "ActivityInstance",
        back_populates="series",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )
    exceptions = db.relationship(
        "SeriesException",
        back_populates="series",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "location": self.location,
            "templateId": self.template_id,
            "dtstart": isoformat_utc(self.dtstart),
            "durationMin": self.duration_minutes,
            "rrule": self.rrule,
            "until": isoformat_utc(self.until),
            "timezone": self.timezone,
        }

    def __repr__(self):
        return f"<ActivitySeries {self.id}: {self.title} [{self.rrule}]>"


# ── ActivityInstance ─────────────────────────────────────────────────────────


class ActivityInstance(FacilityModel):
    """
    One concrete bookable time block.

    States: standalone | series_generated | series_override.
    Once an instance is series_override its fields are authoritative and the
    series is never allowed to regenerate that occurrence.
    """

    __tablename__ = "activity_instances"
    __table_args__ = (
        db.UniqueConstraint("series_id", "occurrence_key", name="uq_instance_series_occurrence"),
        db.Index("ix_activity_instances_facility_start", "facility_id", "start_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(
        db.Integer,
        db.ForeignKey("activity_series.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    occurrence_key = db.Column(db.String(40), nullable=True,
                               comment="Canonical ISO instant computed by the expander")
    state = db.Column(db.String(20), nullable=False, default=STATE_STANDALONE,
                      comment="standalone | series_generated | series_override")
    title = db.Column(db.String(200), nullable=False)
    start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    end_at = db.Column(db.DateTime(timezone=True), nullable=False)
    location = db.Column(db.String(160), nullable=False, default=DEFAULT_LOCATION)
    template_id = db.Column(db.String(64), nullable=True)
    checklist = db.Column(db.JSON, default=list)
    adaptations = db.Column(db.JSON, default=dict)
    conflict_override = db.Column(db.Boolean, default=False,
                                  comment="Creator explicitly accepted a scheduling warning")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    series = db.relationship("ActivitySeries", back_populates="instances")

    @property
    def is_override(self) -> bool:
        return self.state == STATE_SERIES_OVERRIDE

    @property
    def is_series_generated(self) -> bool:
        return self.state == STATE_SERIES_GENERATED

    def detach_from_series(self) -> bool:
        """Move a series_generated row to series_override. Returns True if it moved."""
        if not validate_instance_transition(self.state, STATE_SERIES_OVERRIDE):
            return False
        self.state = STATE_SERIES_OVERRIDE
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "startAt": isoformat_utc(self.start_at),
            "endAt": isoformat_utc(self.end_at),
            "location": self.location,
            "templateId": self.template_id,
            "seriesId": self.series_id,
            "occurrenceKey": self.occurrence_key,
            "state": self.state,
            "isOverride": self.is_override,
            "conflictOverride": bool(self.conflict_override),
            "checklist": self.checklist or [],
            "adaptationsEnabled": self.adaptations or Adaptations().to_dict(),
        }

    def __repr__(self):
        return f"<ActivityInstance {self.id}: {self.title} [{self.state}]>"


# ── SeriesException ─────────────────────────────────────────────────────────


class SeriesException(FacilityModel):
    """A recorded occurrence instant that must never be materialized again."""

    __tablename__ = "series_exceptions"
    __table_args__ = (
        db.UniqueConstraint("series_id", "occurrence_key", name="uq_series_exception_occurrence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    series_id = db.Column(
        db.Integer,
        db.ForeignKey("activity_series.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    occurrence_start_at = db.Column(db.DateTime(timezone=True), nullable=False)
    occurrence_key = db.Column(db.String(40), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    series = db.relationship("ActivitySeries", back_populates="exceptions")

    def to_dict(self):
        return {
            "id": self.id,
            "seriesId": self.series_id,
            "occurrenceStartAt": isoformat_utc(self.occurrence_start_at),
            "occurrenceKey": self.occurrence_key,
        }

    def __repr__(self):
        return f"<SeriesException series={self.series_id} {self.occurrence_key}>"
