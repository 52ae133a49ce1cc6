"""
Rate limiting configuration.

Applies per-route rate limits using Flask-Limiter. The Limiter instance is
created in facility_calendar/__init__.py with no default limits; this module
applies the calendar write limit.

Usage:
    from facility_calendar.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def facility_rate_limit_key():
    """Rate limit key: facility if resolved, else remote IP."""
    facility_id = getattr(g, "facility_id", None)
    if facility_id:
        return f"facility:{facility_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the calendar blueprint.

    Limits (per facility, falling back to remote IP):
        - Write endpoints:  CALENDAR_WRITE_RATE_LIMIT (default 60/minute)
        - Read endpoints:   unlimited

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=%s)", app.config.get("TESTING"))
        return

    write_limit = app.config.get("CALENDAR_WRITE_RATE_LIMIT", "60/minute")
    bp = app.blueprints.get("calendar")
    if bp:
        limiter.limit(
            write_limit,
            key_func=facility_rate_limit_key,
            exempt_when=lambda: flask_request.method not in WRITE_METHODS,
        )(bp)

    app.logger.info("Rate limiter configured: calendar writes %s", write_limit)
