"""
Facility Context Middleware: resolves the calling facility for calendar requests.

Authentication lives upstream (API gateway). By the time a request reaches
this service the gateway has stamped two headers:

    X-Facility-ID   numeric id of the facility the caller acts for (required)
    X-User-Role     caller's role; ``read_only`` may read but never write

This middleware:
  1. Parses X-Facility-ID and rejects requests without a valid one (400)
  2. Verifies the facility exists and is active (403 otherwise)
  3. Sets g.facility, g.facility_id and g.user_role for the route handler

Write routes additionally call ``require_write_access()``.

Chain order:
  timing.py  →  facility_context.py  →  route handler
"""

import logging

from flask import g, request

from facility_calendar.core.exceptions import AuthorizationError
from facility_calendar.models import db
from facility_calendar.models.facility import Facility
from facility_calendar.utils.errors import E, api_error

logger = logging.getLogger(__name__)

FACILITY_HEADER = "X-Facility-ID"
ROLE_HEADER = "X-User-Role"

READ_ONLY_ROLES = frozenset({"read_only"})

# Only calendar routes need a facility; health checks etc. pass through.
FACILITY_SCOPED_PREFIXES = ("/api/v1/calendar",)


def require_write_access():
    """Raise AuthorizationError when the current caller may not write."""
    role = getattr(g, "user_role", None)
    if role in READ_ONLY_ROLES:
        logger.info(
            "Write blocked for role %s", role,
            extra={"facility_id": getattr(g, "facility_id", None), "user_role": role},
        )
        raise AuthorizationError("Your role does not allow changing the calendar.")


def init_facility_context(app):
    """Register facility context middleware as a before_request hook."""

    @app.before_request
    def _facility_context():
        g.facility = None
        g.facility_id = None
        g.user_role = (request.headers.get(ROLE_HEADER) or "").strip().lower() or None

        if not request.path.startswith(FACILITY_SCOPED_PREFIXES):
            return None
        if request.method == "OPTIONS":
            return None

        raw = (request.headers.get(FACILITY_HEADER) or "").strip()
        if not raw.isdigit():
            return api_error(
                E.VALIDATION_REQUIRED,
                f"{FACILITY_HEADER} header is required.",
                details={FACILITY_HEADER: "Must be a numeric facility id."},
            )

        facility_id = int(raw)
        facility = db.session.get(Facility, facility_id)
        if facility is None:
            logger.warning("Facility %d not found", facility_id, extra={"facility_id": facility_id})
            return api_error(E.FORBIDDEN, "Facility not found.")
        if not facility.is_active:
            logger.warning("Facility %d is deactivated", facility_id, extra={"facility_id": facility_id})
            return api_error(E.FORBIDDEN, "Facility is deactivated.")

        g.facility = facility
        g.facility_id = facility.id
        return None

    logger.info("Facility context middleware installed")
