"""
Series exception store.

Records occurrence instants of a series that were deleted and must never be
materialized again. Exceptions are additive: they are created only by the
delete flow of ScheduleService and are never removed individually (they go
away with their series through the FK cascade).

``add_exception`` does not commit; it joins the caller's unit of work so the
exception row and the instance delete land in the same transaction.
"""

import logging
from datetime import datetime

from sqlalchemy import select

from facility_calendar.models import db
from facility_calendar.models.base import as_utc
from facility_calendar.models.calendar import SeriesException
from facility_calendar.services.recurrence import make_occurrence_key

logger = logging.getLogger(__name__)


def add_exception(facility_id: int, series_id: int, occurrence_start_at: datetime) -> SeriesException:
    """Record ``occurrence_start_at`` as an exception of ``series_id``.

    Idempotent on the occurrence key: a second call for the same instant
    returns the existing row.
    """
    key = make_occurrence_key(occurrence_start_at)
    existing = db.session.execute(
        select(SeriesException).where(
            SeriesException.facility_id == facility_id,
            SeriesException.series_id == series_id,
            SeriesException.occurrence_key == key,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    exc = SeriesException(
        facility_id=facility_id,
        series_id=series_id,
        occurrence_start_at=as_utc(occurrence_start_at),
        occurrence_key=key,
    )
    db.session.add(exc)
    db.session.flush()
    logger.info(
        "Series occurrence %s excluded", key,
        extra={"facility_id": facility_id, "series_id": series_id},
    )
    return exc


def _window_query(facility_id, series_id, window_start, window_end):
    query = SeriesException.query_for_facility(facility_id).filter(
        SeriesException.series_id == series_id,
    )
    if window_start is not None:
        query = query.filter(SeriesException.occurrence_start_at >= as_utc(window_start))
    if window_end is not None:
        query = query.filter(SeriesException.occurrence_start_at < as_utc(window_end))
    return query.order_by(SeriesException.occurrence_start_at.asc())


def list_exceptions(
    facility_id: int,
    series_id: int,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> list[datetime]:
    """Excluded occurrence instants of one series inside ``[window_start, window_end)``."""
    rows = _window_query(facility_id, series_id, window_start, window_end).all()
    return [as_utc(row.occurrence_start_at) for row in rows]


def exception_keys(
    facility_id: int,
    series_id: int,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> set[str]:
    """Occurrence keys to drop from expander output."""
    rows = _window_query(facility_id, series_id, window_start, window_end).all()
    return {row.occurrence_key for row in rows}
