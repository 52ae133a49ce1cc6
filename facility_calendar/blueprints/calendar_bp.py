"""
Calendar Blueprint: activity scheduling endpoints.

Endpoints:
    POST   /api/v1/calendar/activities             create standalone or series
    PATCH  /api/v1/calendar/activities/<id>        edit one instance
    POST   /api/v1/calendar/activities/<id>/move   drag-and-drop move
    DELETE /api/v1/calendar/activities/<id>        delete one instance
    GET    /api/v1/calendar/range?start=&end=      list (and lazily materialize)

Layer contract:
    - No ORM calls here; all DB work is delegated to ScheduleService.
    - No db.session.commit() here.
    - facility_id comes from g (facility_context middleware), never the body.
    - Typed service errors are mapped to HTTP once, in the handlers below.
"""

import logging
from datetime import timedelta
from functools import partial

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from facility_calendar.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from facility_calendar.middleware.facility_context import require_write_access
from facility_calendar.models.calendar import parse_adaptations, parse_checklist
from facility_calendar.services.facility_settings import get_scheduling_policy
from facility_calendar.services.recurrence import (
    RecurrenceRule,
    normalize_by_day,
    parse_compact_instant,
    parse_rrule,
)
from facility_calendar.services.schedule_service import (
    ActivityCandidate,
    InstancePatch,
    ScheduleService,
)
from facility_calendar.utils.errors import E, api_error
from facility_calendar.utils.helpers import parse_bool, parse_datetime

logger = logging.getLogger(__name__)

calendar_bp = Blueprint("calendar", __name__, url_prefix="/api/v1/calendar")


# ── Error handlers ────────────────────────────────────────────────────────────


@calendar_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(error.code, str(error), details=error.details)


@calendar_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(error.code, f"{error.resource} not found")


@calendar_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(error.code, str(error), extra=error.report.to_dict())


@calendar_bp.errorhandler(AuthorizationError)
def _handle_forbidden(error: AuthorizationError):
    return api_error(error.code, str(error))


@calendar_bp.errorhandler(InternalError)
def _handle_internal(error: InternalError):
    return api_error(error.code, "Internal server error")


@calendar_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    logger.exception(
        "Database error in calendar endpoint=%s", request.endpoint,
        extra={"facility_id": getattr(g, "facility_id", None)},
    )
    return api_error(E.DATABASE, "Database error")


@calendar_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in calendar endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Private helpers ───────────────────────────────────────────────────────────


def _service() -> ScheduleService:
    cfg = current_app.config
    policy_loader = partial(
        get_scheduling_policy,
        g.facility_id,
        default_timezone=cfg.get("DEFAULT_FACILITY_TIMEZONE", "America/Chicago"),
    )
    return ScheduleService(
        g.facility_id,
        policy_loader,
        horizon_days=cfg.get("SCHEDULE_MATERIALIZATION_HORIZON_DAYS", 180),
        max_count=cfg.get("MAX_RECURRENCE_COUNT", 3650),
    )


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _override_flags(data: dict) -> tuple[bool, bool]:
    """Read override flags from the top level or a nested ``overrides`` object."""
    nested = data.get("overrides") if isinstance(data.get("overrides"), dict) else {}
    allow_conflict = data.get("allowConflictOverride", nested.get("allowConflictOverride"))
    allow_hours = data.get(
        "allowOutsideBusinessHoursOverride", nested.get("allowOutsideBusinessHoursOverride"),
    )
    return parse_bool(allow_conflict), parse_bool(allow_hours)


def _optional_str(data: dict, key: str):
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"Invalid {key}.", details={key: "Must be a string."})
    return value


def _candidate_from_payload(data: dict) -> ActivityCandidate:
    return ActivityCandidate(
        title=data.get("title"),
        start_at=parse_datetime(data.get("startAt"), "startAt"),
        end_at=parse_datetime(data.get("endAt"), "endAt"),
        location=_optional_str(data, "location"),
        template_id=_optional_str(data, "templateId"),
        checklist=parse_checklist(data.get("checklist")),
        adaptations=parse_adaptations(data.get("adaptationsEnabled")),
    )


def _rule_from_payload(recurrence) -> RecurrenceRule:
    """Build a RecurrenceRule from ``{freq, interval, byDay, count, until, timezone}``
    or from the compact ``FREQ=...;...`` text form.

    A missing timezone is left blank; the service fills in the facility's.
    """
    if isinstance(recurrence, str):
        return parse_rrule(recurrence, timezone_name="")
    if not isinstance(recurrence, dict):
        raise ValidationError("Invalid recurrence.", details={"recurrence": "Must be an object."})

    by_day = recurrence.get("byDay") or ()
    if isinstance(by_day, str):
        by_day = by_day.split(",")
    if not isinstance(by_day, (list, tuple)):
        raise ValidationError("Invalid recurrence.", details={"byDay": "Must be a list of weekdays."})

    until = recurrence.get("until")
    if until not in (None, ""):
        until = parse_compact_instant(str(until))
    else:
        until = None

    return RecurrenceRule(
        freq=str(recurrence.get("freq") or "").strip().upper(),
        interval=1 if recurrence.get("interval") is None else recurrence.get("interval"),
        by_day=normalize_by_day(by_day),
        count=recurrence.get("count"),
        until=until,
        timezone=recurrence.get("timezone") or "",
    )


# ── Routes ────────────────────────────────────────────────────────────────────


@calendar_bp.route("/activities", methods=["POST"])
def create_activity():
    """Create a standalone activity, or a series when ``recurrence`` is given."""
    require_write_access()
    data = _json_body()
    candidate = _candidate_from_payload(data)
    allow_conflict, allow_hours = _override_flags(data)

    service = _service()
    recurrence = data.get("recurrence")
    if recurrence:
        rule = _rule_from_payload(recurrence)
        result = service.create_series(candidate, rule, allow_conflict, allow_hours)
    else:
        result = service.create_standalone_activity(candidate, allow_conflict, allow_hours)
    return jsonify(result), 201


@calendar_bp.route("/activities/<int:instance_id>", methods=["PATCH"])
def update_activity(instance_id: int):
    """Edit one instance. ``scope: "series"`` is rejected."""
    require_write_access()
    data = _json_body()
    allow_conflict, allow_hours = _override_flags(data)

    patch = InstancePatch(
        title=data.get("title"),
        start_at=parse_datetime(data.get("startAt"), "startAt", required=False),
        end_at=parse_datetime(data.get("endAt"), "endAt", required=False),
        location=_optional_str(data, "location"),
        template_id=_optional_str(data, "templateId"),
        checklist=parse_checklist(data["checklist"]) if "checklist" in data else None,
        adaptations=(
            parse_adaptations(data["adaptationsEnabled"]) if "adaptationsEnabled" in data else None
        ),
    )
    result = _service().update_instance(
        instance_id,
        patch,
        scope=data.get("scope") or "instance",
        allow_conflict_override=allow_conflict,
        allow_outside_hours_override=allow_hours,
    )
    return jsonify(result), 200


@calendar_bp.route("/activities/<int:instance_id>/move", methods=["POST"])
def move_activity(instance_id: int):
    """Move one instance to a new time (and optionally a new location)."""
    require_write_access()
    data = _json_body()
    allow_conflict, allow_hours = _override_flags(data)

    result = _service().move_instance(
        instance_id,
        parse_datetime(data.get("startAt"), "startAt"),
        parse_datetime(data.get("endAt"), "endAt"),
        location=_optional_str(data, "location"),
        allow_conflict_override=allow_conflict,
        allow_outside_hours_override=allow_hours,
    )
    return jsonify({"moved": True, **result}), 200


@calendar_bp.route("/activities/<int:instance_id>", methods=["DELETE"])
def delete_activity(instance_id: int):
    require_write_access()
    return jsonify(_service().delete_instance(instance_id)), 200


@calendar_bp.route("/range", methods=["GET"])
def get_range():
    """List the facility's activities overlapping ``[start, end)``."""
    start = parse_datetime(request.args.get("start"), "start")
    end = parse_datetime(request.args.get("end"), "end")

    max_days = current_app.config.get("MAX_RANGE_DAYS", 366)
    if end - start > timedelta(days=max_days):
        raise ValidationError("Range too long.", details={"end": f"Range must not exceed {max_days} days."})

    return jsonify(_service().list_range(start, end)), 200
