"""
Calendar-wide exception hierarchy.

Every service in the scheduling engine raises one of these types instead of
a generic failure. Each class carries the machine-readable ``code`` and the
HTTP ``status`` it maps to, so the blueprint layer registers one handler per
type and never inspects message text.

Usage:
    from facility_calendar.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ActivityInstance", resource_id=42)
    raise ValidationError("endAt must be after startAt", details={"endAt": "..."})
"""


class CalendarError(Exception):
    """Base class for all typed scheduling errors."""

    code = "ERR_INTERNAL"
    status = 500


class NotFoundError(CalendarError):
    """Raised when a requested resource does not exist within the given facility.

    Security note: Used for BOTH genuinely missing records AND cross-facility
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Args:
        resource: Human-readable model/entity name (e.g. "ActivityInstance").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        facility_id: Optional. The scope that was enforced. For debug logging only.
    """

    code = "ERR_NOT_FOUND"
    status = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        facility_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.facility_id = facility_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if facility_id is not None:
            msg += f" (facility={facility_id})"
        super().__init__(msg)


class ValidationError(CalendarError):
    """Raised when a payload or recurrence rule fails structural validation.

    Always raised before any persistence access.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
                 Keys are field names; values are error descriptions.
    """

    code = "ERR_VALIDATION_INVALID"
    status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(CalendarError):
    """Raised when a candidate time block overlaps existing bookings or falls
    outside business hours and the caller did not override the warning.

    The only error type with attached business data: the ConflictReport.

    Args:
        message: Human-readable summary.
        report: ``ConflictReport`` describing overlapping activities and the
                outside-hours verdict.
    """

    code = "CALENDAR_CONFLICT"
    status = 409

    def __init__(self, message: str, report) -> None:
        self.report = report
        super().__init__(message)

    @property
    def conflicts(self) -> list:
        return self.report.conflicts

    @property
    def outside_business_hours(self) -> bool:
        return self.report.outside_business_hours


class AuthorizationError(CalendarError):
    """Raised by the request-context guard when the caller may not write."""

    code = "ERR_FORBIDDEN"
    status = 403


class InternalError(CalendarError):
    """Storage or transport failure surfaced at the HTTP boundary."""

    code = "ERR_INTERNAL"
    status = 500
