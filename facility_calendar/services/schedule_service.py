"""
Schedule service: the orchestrator for activity writes and range reads.

Business context:
    Activity staff book resident programs either as single blocks or as
    recurring series. Every write is checked against the facility's existing
    bookings (same location) and its business hours. A failing check rejects
    the write with a ConflictReport unless the caller explicitly accepts that
    warning, in which case the stored instance carries ``conflict_override``.

Instance states:
    standalone        created directly, no series
    series_generated  materialized from a series, untouched since
    series_override   a generated occurrence that was edited (one-way)

Failure ordering:
    structural validation → existence lookup → conflict / hours evaluation →
    write. Nothing is persisted on any rejection. Storage errors roll the
    session back and propagate unchanged.

Security:
    Every query is scoped by the service's facility_id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from facility_calendar.core.exceptions import ConflictError, InternalError, ValidationError
from facility_calendar.models import db
from facility_calendar.models.base import as_utc, isoformat_utc
from facility_calendar.models.calendar import (
    STATE_SERIES_GENERATED,
    STATE_STANDALONE,
    ActivityInstance,
    ActivitySeries,
    Adaptations,
    ChecklistItem,
    normalize_location,
)
from facility_calendar.services.business_hours import is_outside_business_hours
from facility_calendar.services.conflict_detector import ConflictReport, find_conflicts
from facility_calendar.services.facility_settings import SchedulingPolicy
from facility_calendar.services.helpers.scoped_queries import get_scoped
from facility_calendar.services.recurrence import (
    DEFAULT_MAX_COUNT,
    RecurrenceRule,
    expand_occurrences,
    format_rrule,
    parse_rrule,
    validate_rule,
)
from facility_calendar.services.series_exceptions import add_exception, exception_keys

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 180

TITLE_MIN_LENGTH = 2
TITLE_MAX_LENGTH = 200
LOCATION_MAX_LENGTH = 160
MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 1440

UPDATE_SCOPES = ("instance", "series")


@dataclass
class ActivityCandidate:
    """A proposed time block, before validation."""

    title: str
    start_at: datetime
    end_at: datetime
    location: str | None = None
    template_id: str | None = None
    checklist: list[ChecklistItem] = field(default_factory=list)
    adaptations: Adaptations = field(default_factory=Adaptations)


@dataclass
class InstancePatch:
    """Fields of an instance edit; None means "leave unchanged"."""

    title: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    location: str | None = None
    template_id: str | None = None
    checklist: list[ChecklistItem] | None = None
    adaptations: Adaptations | None = None


# ── Validation helpers ───────────────────────────────────────────────────────


def _check_title(title, errors: dict) -> str | None:
    if not isinstance(title, str):
        errors["title"] = "Required."
        return None
    title = title.strip()
    if not TITLE_MIN_LENGTH <= len(title) <= TITLE_MAX_LENGTH:
        errors["title"] = f"Must be {TITLE_MIN_LENGTH}-{TITLE_MAX_LENGTH} characters."
        return None
    return title


def _check_location(location, errors: dict) -> str:
    if location is not None and not isinstance(location, str):
        errors["location"] = "Must be a string."
        return normalize_location(None)
    normalized = normalize_location(location)
    if len(normalized) > LOCATION_MAX_LENGTH:
        errors["location"] = f"Must be at most {LOCATION_MAX_LENGTH} characters."
    return normalized


def _check_instant(value, name: str, errors: dict) -> datetime | None:
    if not isinstance(value, datetime):
        errors[name] = "Required ISO-8601 timestamp."
        return None
    if value.tzinfo is None:
        errors[name] = "Must include a UTC offset."
        return None
    return as_utc(value)


def _validate_candidate(candidate: ActivityCandidate) -> tuple[str, str, datetime, datetime]:
    errors: dict[str, str] = {}
    title = _check_title(candidate.title, errors)
    location = _check_location(candidate.location, errors)
    start_at = _check_instant(candidate.start_at, "startAt", errors)
    end_at = _check_instant(candidate.end_at, "endAt", errors)
    if start_at and end_at and end_at <= start_at:
        errors["endAt"] = "Must be after startAt."
    if errors:
        raise ValidationError("Invalid activity.", details=errors)
    return title, location, start_at, end_at


def _serialize_checklist(items) -> list[dict]:
    return [item.to_dict() for item in items or []]


# ── Service ──────────────────────────────────────────────────────────────────


class ScheduleService:
    """Scheduling operations for one facility under one policy.

    The policy is injected, either built or as a zero-argument loader such
    as a bound ``get_scheduling_policy``. A loader runs on first use, so
    payloads that fail structural validation never read facility settings.
    """

    def __init__(
        self,
        facility_id: int,
        policy: SchedulingPolicy | Callable[[], SchedulingPolicy],
        *,
        horizon_days: int = DEFAULT_HORIZON_DAYS,
        max_count: int = DEFAULT_MAX_COUNT,
    ):
        self.facility_id = facility_id
        self._policy = policy
        self.horizon_days = horizon_days
        self.max_count = max_count

    @property
    def policy(self) -> SchedulingPolicy:
        if callable(self._policy):
            self._policy = self._policy()
        return self._policy

    # ── internals ────────────────────────────────────────────────────────

    def _log_extra(self, **kwargs) -> dict:
        return {"facility_id": self.facility_id, **kwargs}

    def _evaluate(self, start_at, end_at, location, exclude_instance_id=None) -> ConflictReport:
        report = ConflictReport()
        if self.policy.warn_therapy_overlap:
            report.conflicts = find_conflicts(
                self.facility_id,
                start_at,
                end_at,
                location_scope=location,
                exclude_instance_id=exclude_instance_id,
            )
        if self.policy.warn_outside_business_hours:
            report.outside_business_hours = is_outside_business_hours(
                start_at, end_at, self.policy.timezone, self.policy.business_hours,
            )
        return report

    def _gate(self, report: ConflictReport, allow_conflict_override: bool,
              allow_outside_hours_override: bool) -> bool:
        """Raise ConflictError for un-overridden warnings.

        Returns True when an override was actually exercised.
        """
        blocked_conflicts = bool(report.conflicts) and not allow_conflict_override
        blocked_hours = report.outside_business_hours and not allow_outside_hours_override
        if blocked_conflicts or blocked_hours:
            if blocked_conflicts and blocked_hours:
                message = "Activity overlaps existing bookings and falls outside business hours."
            elif blocked_conflicts:
                message = "Activity overlaps existing bookings."
            else:
                message = "Activity falls outside business hours."
            logger.info(
                "Scheduling rejected: %s", message,
                extra=self._log_extra(conflict_count=len(report.conflicts)),
            )
            raise ConflictError(message, report)
        return report.has_issues

    def _commit(self) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Calendar write failed", extra=self._log_extra())
            raise InternalError("Calendar write failed") from exc

    # ── standalone ───────────────────────────────────────────────────────

    def create_standalone_activity(
        self,
        candidate: ActivityCandidate,
        allow_conflict_override: bool = False,
        allow_outside_hours_override: bool = False,
    ) -> dict:
        """Create one standalone instance.

        Raises:
            ValidationError: Malformed candidate.
            ConflictError: Warnings present and not overridden.
        """
        title, location, start_at, end_at = _validate_candidate(candidate)

        report = self._evaluate(start_at, end_at, location)
        override_used = self._gate(report, allow_conflict_override, allow_outside_hours_override)

        instance = ActivityInstance(
            facility_id=self.facility_id,
            state=STATE_STANDALONE,
            title=title,
            start_at=start_at,
            end_at=end_at,
            location=location,
            template_id=candidate.template_id,
            checklist=_serialize_checklist(candidate.checklist),
            adaptations=candidate.adaptations.to_dict(),
            conflict_override=override_used,
        )
        db.session.add(instance)
        self._commit()

        logger.info(
            "Standalone activity created",
            extra=self._log_extra(instance_id=instance.id, conflict_override=override_used),
        )
        return {"mode": "single", "activity": instance.to_dict(), "warnings": report.to_dict()}

    # ── series ───────────────────────────────────────────────────────────

    def create_series(
        self,
        candidate: ActivityCandidate,
        rule: RecurrenceRule,
        allow_conflict_override: bool = False,
        allow_outside_hours_override: bool = False,
    ) -> dict:
        """Create a series and materialize its initial window atomically.

        The initial window is ``[dtstart, dtstart + horizon_days)``. Every
        generated occurrence is checked; the reports are merged into one.

        Raises:
            ValidationError: Malformed candidate or rule, duration out of
                range, or no occurrence inside the initial window.
            ConflictError: Any occurrence has un-overridden warnings.
        """
        title, location, start_at, end_at = _validate_candidate(candidate)

        duration_minutes = int((end_at - start_at).total_seconds() // 60)
        if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
            raise ValidationError(
                "Invalid activity.",
                details={"endAt": (
                    f"Series duration must be {MIN_DURATION_MINUTES}-{MAX_DURATION_MINUTES} minutes."
                )},
            )

        if not rule.timezone:
            rule = replace(rule, timezone=self.policy.timezone)
        # dateutil drops sub-second precision from dtstart.
        dtstart = start_at.replace(microsecond=0)
        validate_rule(rule, dtstart, max_count=self.max_count)

        window_end = dtstart + timedelta(days=self.horizon_days)
        occurrences = expand_occurrences(rule, dtstart, duration_minutes, dtstart, window_end)
        if not occurrences:
            raise ValidationError(
                "Recurrence produces no occurrences.",
                details={"recurrence": f"No occurrence within {self.horizon_days} days of startAt."},
            )

        report = ConflictReport()
        per_occurrence = []
        for occurrence in occurrences:
            occurrence_report = self._evaluate(occurrence.start_at, occurrence.end_at, location)
            per_occurrence.append((occurrence, occurrence_report.has_issues))
            report.merge(occurrence_report)
        self._gate(report, allow_conflict_override, allow_outside_hours_override)

        series = ActivitySeries(
            facility_id=self.facility_id,
            title=title,
            location=location,
            template_id=candidate.template_id,
            dtstart=dtstart,
            duration_minutes=duration_minutes,
            rrule=format_rrule(rule),
            until=as_utc(rule.until) if rule.until is not None and not rule.count else None,
            timezone=rule.timezone,
            checklist=_serialize_checklist(candidate.checklist),
            adaptations=candidate.adaptations.to_dict(),
        )
        db.session.add(series)
        try:
            db.session.flush()
            for occurrence, had_issues in per_occurrence:
                db.session.add(self._instance_for(series, occurrence, conflict_override=had_issues))
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Series materialization failed", extra=self._log_extra())
            raise InternalError("Series materialization failed") from exc
        self._commit()

        logger.info(
            "Activity series created with %d occurrences", len(occurrences),
            extra=self._log_extra(series_id=series.id, rrule=series.rrule),
        )
        return {
            "mode": "series",
            "series": series.to_dict(),
            "materialized": len(occurrences),
            "warnings": report.to_dict(),
        }

    def _instance_for(self, series: ActivitySeries, occurrence, conflict_override=False) -> ActivityInstance:
        return ActivityInstance(
            facility_id=self.facility_id,
            series_id=series.id,
            occurrence_key=occurrence.occurrence_key,
            state=STATE_SERIES_GENERATED,
            title=series.title,
            start_at=occurrence.start_at,
            end_at=occurrence.end_at,
            location=series.location,
            template_id=series.template_id,
            checklist=list(series.checklist or []),
            adaptations=dict(series.adaptations or {}),
            conflict_override=conflict_override,
        )

    # ── edit / move ──────────────────────────────────────────────────────

    def update_instance(
        self,
        instance_id: int,
        patch: InstancePatch,
        scope: str = "instance",
        allow_conflict_override: bool = False,
        allow_outside_hours_override: bool = False,
    ) -> dict:
        """Edit one instance.

        A series_generated instance becomes series_override and is never
        regenerated by its series afterwards.

        Raises:
            ValidationError: scope "series", or a malformed or inverted window.
            NotFoundError: Instance missing or owned by another facility.
            ConflictError: Warnings present and not overridden.
        """
        if scope not in UPDATE_SCOPES:
            raise ValidationError("Invalid scope.", details={"scope": "Must be 'instance'."})
        if scope == "series":
            raise ValidationError(
                "Series-wide edits are not supported.",
                details={"scope": "Only single-instance edits are supported."},
            )

        errors: dict[str, str] = {}
        title = _check_title(patch.title, errors) if patch.title is not None else None
        location = _check_location(patch.location, errors) if patch.location is not None else None
        new_start = _check_instant(patch.start_at, "startAt", errors) if patch.start_at is not None else None
        new_end = _check_instant(patch.end_at, "endAt", errors) if patch.end_at is not None else None
        if errors:
            raise ValidationError("Invalid activity.", details=errors)

        instance = get_scoped(ActivityInstance, instance_id, facility_id=self.facility_id)

        start_at = new_start or as_utc(instance.start_at)
        end_at = new_end or as_utc(instance.end_at)
        if end_at <= start_at:
            raise ValidationError("Invalid activity.", details={"endAt": "Must be after startAt."})
        location = location or instance.location

        report = self._evaluate(start_at, end_at, location, exclude_instance_id=instance.id)
        override_used = self._gate(report, allow_conflict_override, allow_outside_hours_override)

        detached = instance.detach_from_series()
        instance.start_at = start_at
        instance.end_at = end_at
        instance.location = location
        if title is not None:
            instance.title = title
        if patch.template_id is not None:
            instance.template_id = patch.template_id
        if patch.checklist is not None:
            instance.checklist = _serialize_checklist(patch.checklist)
        if patch.adaptations is not None:
            instance.adaptations = patch.adaptations.to_dict()
        instance.conflict_override = bool(instance.conflict_override) or override_used
        self._commit()

        logger.info(
            "Activity instance updated",
            extra=self._log_extra(
                instance_id=instance.id, series_id=instance.series_id, detached=detached,
            ),
        )
        return {"activity": instance.to_dict(), "warnings": report.to_dict()}

    def move_instance(
        self,
        instance_id: int,
        start_at: datetime,
        end_at: datetime,
        location: str | None = None,
        allow_conflict_override: bool = False,
        allow_outside_hours_override: bool = False,
    ) -> dict:
        """Drag-and-drop move: a time (and optionally location) only edit."""
        if start_at is None or end_at is None:
            raise ValidationError(
                "Invalid move.", details={"startAt": "startAt and endAt are both required."},
            )
        return self.update_instance(
            instance_id,
            InstancePatch(start_at=start_at, end_at=end_at, location=location),
            allow_conflict_override=allow_conflict_override,
            allow_outside_hours_override=allow_outside_hours_override,
        )

    # ── delete ───────────────────────────────────────────────────────────

    def delete_instance(self, instance_id: int) -> dict:
        """Delete one instance.

        Deleting a series_generated instance records a SeriesException for
        its occurrence in the same transaction, so the series never
        re-materializes it.
        """
        instance = get_scoped(ActivityInstance, instance_id, facility_id=self.facility_id)

        skipped = False
        series_id = instance.series_id
        if instance.is_series_generated and series_id is not None:
            add_exception(self.facility_id, series_id, instance.start_at)
            skipped = True

        db.session.delete(instance)
        self._commit()

        logger.info(
            "Activity instance deleted",
            extra=self._log_extra(instance_id=instance_id, series_id=series_id, skipped=skipped),
        )
        return {"deleted": True, "skippedSeriesOccurrence": skipped, "id": instance_id}

    # ── reads ────────────────────────────────────────────────────────────

    def ensure_series_materialized(self, window_start: datetime, window_end: datetime) -> dict:
        """Create missing series_generated rows for ``[window_start, window_end)``.

        Occurrences that are exceptions, or that already have a row
        (generated or override), are left alone. Lazily created rows skip the
        conflict checks: their series was accepted when it was created.
        """
        window_start, window_end = as_utc(window_start), as_utc(window_end)

        series_rows = ActivitySeries.query_for_facility(self.facility_id).filter(
            ActivitySeries.dtstart < window_end,
            or_(ActivitySeries.until.is_(None), ActivitySeries.until >= window_start),
        ).order_by(ActivitySeries.id.asc()).all()

        created = 0
        for series in series_rows:
            rule = parse_rrule(series.rrule, series.timezone)
            occurrences = expand_occurrences(
                rule, as_utc(series.dtstart), series.duration_minutes, window_start, window_end,
            )
            if not occurrences:
                continue

            skip = exception_keys(self.facility_id, series.id)
            skip |= set(db.session.execute(
                select(ActivityInstance.occurrence_key).where(
                    ActivityInstance.facility_id == self.facility_id,
                    ActivityInstance.series_id == series.id,
                    ActivityInstance.occurrence_key.in_([o.occurrence_key for o in occurrences]),
                )
            ).scalars())

            for occurrence in occurrences:
                if occurrence.occurrence_key in skip:
                    continue
                db.session.add(self._instance_for(series, occurrence))
                created += 1

        if created:
            self._commit()
            logger.info(
                "Lazily materialized %d occurrences", created,
                extra=self._log_extra(series_count=len(series_rows)),
            )
        return {"seriesCount": len(series_rows), "createdCount": created}

    def list_range(self, window_start: datetime, window_end: datetime) -> dict:
        """Materialize then list the facility's instances overlapping the window."""
        errors: dict[str, str] = {}
        start = _check_instant(window_start, "start", errors)
        end = _check_instant(window_end, "end", errors)
        if start and end and end <= start:
            errors["end"] = "Must be after start."
        if errors:
            raise ValidationError("Invalid range.", details=errors)

        materialized = self.ensure_series_materialized(start, end)

        rows = db.session.execute(
            select(ActivityInstance).where(
                ActivityInstance.facility_id == self.facility_id,
                ActivityInstance.start_at < end,
                ActivityInstance.end_at > start,
            ).order_by(ActivityInstance.start_at.asc(), ActivityInstance.id.asc())
        ).scalars().all()

        return {
            "range": {"start": isoformat_utc(start), "end": isoformat_utc(end)},
            "materialized": materialized,
            "activities": [row.to_dict() for row in rows],
        }
