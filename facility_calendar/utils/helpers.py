"""Shared request-parsing helpers for the calendar blueprint.

parse_datetime:  ISO-8601 instant → aware datetime (raises ValidationError)
parse_bool:      loose JSON / query flag → bool
"""
from datetime import datetime

from facility_calendar.core.exceptions import ValidationError


def parse_datetime(value, field: str, *, required: bool = True):
    """Parse an ISO-8601 timestamp with offset (``Z`` accepted).

    Returns None for a missing optional value. Naive timestamps are
    rejected: a booking instant without an offset is ambiguous.
    """
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required.", details={field: "Required."})
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(
                f"Invalid {field}.", details={field: "Must be an ISO-8601 timestamp."},
            ) from None
    if parsed.tzinfo is None:
        raise ValidationError(f"Invalid {field}.", details={field: "Must include a UTC offset."})
    return parsed


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(value, (int, float)):
        return bool(value)
    return False
