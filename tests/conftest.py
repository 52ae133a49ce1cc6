"""
Shared pytest fixtures for the Facility Calendar test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - facility / other_facility: Pre-created Facility entities
    - policy: Default SchedulingPolicy (America/Chicago, Mon-Fri 08:00-17:00)
    - service: ScheduleService for ``facility`` under ``policy``
"""

import pytest

from facility_calendar import create_app
from facility_calendar.models import db as _db
from facility_calendar.models.facility import Facility
from facility_calendar.services.facility_settings import SchedulingPolicy
from facility_calendar.services.schedule_service import ScheduleService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM helpers ──────────────────────────────────────────────────────────


def _make_facility(name="Maple Grove", slug="maple-grove", tz="America/Chicago", **kw):
    facility = Facility(name=name, slug=slug, timezone=tz, **kw)
    _db.session.add(facility)
    _db.session.commit()
    return facility


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def facility():
    return _make_facility()


@pytest.fixture()
def other_facility():
    return _make_facility(name="Oak Ridge", slug="oak-ridge")


@pytest.fixture()
def policy():
    return SchedulingPolicy(timezone="America/Chicago")


@pytest.fixture()
def service(facility, policy):
    return ScheduleService(facility.id, policy)
