"""
Facility-scoped query helpers.

Every get-by-id in the calendar MUST go through ``get_scoped`` instead of
``Model.query.get(pk)`` or ``db.session.get(Model, pk)``. A bare ``.get()``
ignores facility_id and would let one facility read or mutate another
facility's bookings.

Usage:
    instance = get_scoped(ActivityInstance, instance_id, facility_id=facility_id)
"""

import logging

from sqlalchemy import select

from facility_calendar.core.exceptions import NotFoundError
from facility_calendar.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk: int, *, facility_id: int | None = None):
    """Fetch a single entity by PK with a mandatory facility filter.

    Cross-facility access is indistinguishable from a missing record: both
    raise NotFoundError → HTTP 404.

    Raises:
        ValueError: No facility_id given, or the model has no facility_id column.
        NotFoundError: Entity missing or owned by another facility.
    """
    if facility_id is None:
        raise ValueError(f"{model.__name__} id={pk} requires a facility_id scope filter.")
    if not hasattr(model, "facility_id"):
        raise ValueError(f"{model.__name__} has no facility_id column.")

    stmt = select(model).where(model.id == pk, model.facility_id == facility_id)
    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found for facility_id=%s", model.__name__, pk, facility_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, facility_id=facility_id)
    return result
