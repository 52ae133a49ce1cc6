"""
Tests: ScheduleService.

Facility timezone is America/Chicago (CST in January, UTC-6); business
hours are Mon-Fri 08:00-17:00 local, so 16:00Z on a weekday is 10:00 local.
2024-01-08 is a Monday.

Covers:
  1. standalone create: success, conflict rejection, overrides, validation
  2. series create: materialization, aggregated conflicts, atomicity on
     storage failure
  3. instance edit / move: detach-on-edit, self-exclusion, scope rejection
  4. delete: exception bookkeeping per instance state
  5. range reads with lazy materialization
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from facility_calendar.core.exceptions import (
    ConflictError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from facility_calendar.models import db as _db
from facility_calendar.models.calendar import (
    STATE_SERIES_GENERATED,
    STATE_SERIES_OVERRIDE,
    STATE_STANDALONE,
    ActivityInstance,
    ActivitySeries,
    Adaptations,
    AdaptationFlag,
    ChecklistItem,
    SeriesException,
)
from facility_calendar.services.recurrence import RecurrenceRule
from facility_calendar.services.schedule_service import (
    ActivityCandidate,
    InstancePatch,
    ScheduleService,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _candidate(start=None, minutes=60, title="Chair Yoga", location=None, **kw):
    start = start or _utc(2024, 1, 8, 16)
    return ActivityCandidate(
        title=title, start_at=start, end_at=start + timedelta(minutes=minutes), location=location, **kw,
    )


def _weekly(**kw):
    kw.setdefault("by_day", ("MO", "WE", "FR"))
    kw.setdefault("timezone", "America/Chicago")
    return RecurrenceRule(freq="WEEKLY", **kw)


def _instances(**filters):
    return ActivityInstance.query.filter_by(**filters).order_by(ActivityInstance.start_at).all()


# ── Standalone ────────────────────────────────────────────────────────────────


def test_create_standalone_activity(service, facility):
    result = service.create_standalone_activity(_candidate(
        checklist=[ChecklistItem("Set out mats")],
        adaptations=Adaptations(bed_bound=AdaptationFlag(enabled=True)),
    ))

    assert result["mode"] == "single"
    activity = result["activity"]
    assert activity["state"] == STATE_STANDALONE
    assert activity["location"] == "Activity Room"
    assert activity["startAt"] == "2024-01-08T16:00:00.000Z"
    assert activity["conflictOverride"] is False
    assert activity["checklist"] == [{"label": "Set out mats", "done": False}]
    assert activity["adaptationsEnabled"]["bedBound"]["enabled"] is True
    assert result["warnings"] == {"conflicts": [], "outsideBusinessHours": False}
    assert _instances(facility_id=facility.id)[0].state == STATE_STANDALONE


def test_overlap_is_rejected_and_nothing_persisted(service):
    first = service.create_standalone_activity(_candidate())

    with pytest.raises(ConflictError) as exc:
        service.create_standalone_activity(_candidate(start=_utc(2024, 1, 8, 16, 30), title="Bingo"))

    assert [c.id for c in exc.value.conflicts] == [first["activity"]["id"]]
    assert exc.value.outside_business_hours is False
    assert ActivityInstance.query.count() == 1


def test_overlap_in_another_location_is_allowed(service):
    service.create_standalone_activity(_candidate())
    service.create_standalone_activity(_candidate(location="Chapel"))

    assert ActivityInstance.query.count() == 2


def test_conflict_override_is_recorded(service):
    service.create_standalone_activity(_candidate())

    result = service.create_standalone_activity(_candidate(), allow_conflict_override=True)

    assert result["activity"]["conflictOverride"] is True
    assert len(result["warnings"]["conflicts"]) == 1


def test_unused_override_flag_is_not_recorded(service):
    result = service.create_standalone_activity(
        _candidate(), allow_conflict_override=True, allow_outside_hours_override=True,
    )

    assert result["activity"]["conflictOverride"] is False


def test_outside_business_hours_requires_its_own_override(service):
    saturday = _utc(2024, 1, 6, 16)

    with pytest.raises(ConflictError) as exc:
        service.create_standalone_activity(_candidate(start=saturday), allow_conflict_override=True)
    assert exc.value.outside_business_hours is True
    assert exc.value.conflicts == []

    result = service.create_standalone_activity(_candidate(start=saturday), allow_outside_hours_override=True)
    assert result["activity"]["conflictOverride"] is True
    assert result["warnings"]["outsideBusinessHours"] is True


def test_disabled_warnings_skip_checks(facility, policy):
    quiet = ScheduleService(
        facility.id, replace(policy, warn_therapy_overlap=False, warn_outside_business_hours=False),
    )
    quiet.create_standalone_activity(_candidate(start=_utc(2024, 1, 6, 16)))
    result = quiet.create_standalone_activity(_candidate(start=_utc(2024, 1, 6, 16)))

    assert result["warnings"] == {"conflicts": [], "outsideBusinessHours": False}
    assert result["activity"]["conflictOverride"] is False


@pytest.mark.parametrize("candidate,field", [
    (ActivityCandidate(title="A", start_at=_utc(2024, 1, 8, 16), end_at=_utc(2024, 1, 8, 17)), "title"),
    (ActivityCandidate(title="Bingo", start_at=_utc(2024, 1, 8, 16), end_at=_utc(2024, 1, 8, 16)), "endAt"),
    (ActivityCandidate(title="Bingo", start_at=datetime(2024, 1, 8, 16), end_at=_utc(2024, 1, 8, 17)), "startAt"),
    (ActivityCandidate(title="Bingo", start_at=_utc(2024, 1, 8, 16), end_at=_utc(2024, 1, 8, 17),
                       location="x" * 161), "location"),
])
def test_invalid_candidate_is_rejected(service, candidate, field):
    with pytest.raises(ValidationError) as exc:
        service.create_standalone_activity(candidate)

    assert field in exc.value.details
    assert ActivityInstance.query.count() == 0


def test_policy_loader_is_not_called_for_invalid_payload(facility, policy):
    calls = []

    def _load():
        calls.append(facility.id)
        return policy

    lazy = ScheduleService(facility.id, _load)

    with pytest.raises(ValidationError):
        lazy.create_standalone_activity(_candidate(title="A"))
    assert calls == []

    lazy.create_standalone_activity(_candidate())
    lazy.create_standalone_activity(_candidate(start=_utc(2024, 1, 9, 16)))
    assert calls == [facility.id]

def test_blank_location_defaults_to_activity_room(service):
    result = service.create_standalone_activity(_candidate(location="   "))

    assert result["activity"]["location"] == "Activity Room"


# ── Series ────────────────────────────────────────────────────────────────────


def test_create_series_materializes_occurrences(service, facility):
    result = service.create_series(_candidate(), _weekly(count=6))

    assert result["mode"] == "series"
    assert result["materialized"] == 6
    assert result["series"]["rrule"] == "FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE,FR;COUNT=6"
    assert result["series"]["durationMin"] == 60

    rows = _instances(series_id=result["series"]["id"])
    assert [r.state for r in rows] == [STATE_SERIES_GENERATED] * 6
    assert [r.occurrence_key for r in rows][:3] == [
        "2024-01-08T16:00:00.000Z", "2024-01-10T16:00:00.000Z", "2024-01-12T16:00:00.000Z",
    ]
    assert all(r.facility_id == facility.id for r in rows)


def test_series_window_is_bounded_by_horizon(facility, policy):
    short = ScheduleService(facility.id, policy, horizon_days=14)
    result = short.create_series(_candidate(), _weekly())

    assert result["materialized"] == 6
    assert ActivitySeries.query.one().until is None


def test_series_conflicts_are_aggregated_and_nothing_persisted(service):
    blocker = service.create_standalone_activity(_candidate(start=_utc(2024, 1, 10, 16, 30), title="Music"))

    with pytest.raises(ConflictError) as exc:
        service.create_series(_candidate(), _weekly(count=6))

    assert [c.id for c in exc.value.conflicts] == [blocker["activity"]["id"]]
    assert ActivitySeries.query.count() == 0
    assert ActivityInstance.query.count() == 1


def test_series_override_marks_only_affected_occurrences(service):
    service.create_standalone_activity(_candidate(start=_utc(2024, 1, 10, 16, 30), title="Music"))

    result = service.create_series(_candidate(), _weekly(count=3), allow_conflict_override=True)

    flags = [r.conflict_override for r in _instances(series_id=result["series"]["id"])]
    assert flags == [False, True, False]
    assert len(result["warnings"]["conflicts"]) == 1


def test_series_outside_hours_when_any_occurrence_is(service):
    with pytest.raises(ConflictError) as exc:
        service.create_series(_candidate(), RecurrenceRule(freq="DAILY", count=7, timezone="America/Chicago"))

    assert exc.value.outside_business_hours is True


@pytest.mark.parametrize("failing", ["flush", "commit"])
def test_series_storage_failure_leaves_no_rows(service, monkeypatch, failing):
    def _fail(*args, **kwargs):
        raise OperationalError("INSERT INTO activity_instances", {}, Exception("disk I/O error"))

    monkeypatch.setattr(_db.session, failing, _fail)

    with pytest.raises(InternalError):
        service.create_series(_candidate(), _weekly(count=6))

    monkeypatch.undo()
    assert ActivitySeries.query.count() == 0
    assert ActivityInstance.query.count() == 0


def test_series_without_initial_occurrences_is_rejected(facility, policy):
    short = ScheduleService(facility.id, policy, horizon_days=1)

    with pytest.raises(ValidationError) as exc:
        short.create_series(_candidate(), _weekly(by_day=("FR",)))

    assert "recurrence" in exc.value.details
    assert ActivitySeries.query.count() == 0


def test_series_rule_validation(service):
    with pytest.raises(ValidationError) as exc:
        service.create_series(_candidate(), RecurrenceRule(freq="DAILY", interval=400, by_day=("MO",)))

    assert {"interval", "byDay"} <= set(exc.value.details)


def test_series_count_is_capped(facility, policy):
    capped = ScheduleService(facility.id, policy, max_count=10)

    with pytest.raises(ValidationError) as exc:
        capped.create_series(_candidate(), _weekly(count=11))
    assert "count" in exc.value.details


def test_series_duration_bounds(service):
    with pytest.raises(ValidationError):
        service.create_series(_candidate(minutes=3), _weekly(count=2))


def test_series_timezone_defaults_to_policy(service):
    result = service.create_series(_candidate(), RecurrenceRule(freq="WEEKLY", count=2, timezone=""))

    assert result["series"]["timezone"] == "America/Chicago"


# ── Update / move ─────────────────────────────────────────────────────────────


def test_edit_detaches_generated_instance(service):
    result = service.create_series(_candidate(), _weekly(count=3))
    row = _instances(series_id=result["series"]["id"])[1]

    updated = service.update_instance(row.id, InstancePatch(title="Chair Yoga (guest)"))

    assert updated["activity"]["state"] == STATE_SERIES_OVERRIDE
    assert updated["activity"]["isOverride"] is True
    assert updated["activity"]["title"] == "Chair Yoga (guest)"
    assert updated["activity"]["occurrenceKey"] == "2024-01-10T16:00:00.000Z"


def test_override_stays_override_on_second_edit(service):
    result = service.create_series(_candidate(), _weekly(count=1))
    row = _instances(series_id=result["series"]["id"])[0]

    service.update_instance(row.id, InstancePatch(title="First edit"))
    second = service.update_instance(row.id, InstancePatch(title="Second edit"))

    assert second["activity"]["state"] == STATE_SERIES_OVERRIDE


def test_standalone_edit_keeps_state(service):
    created = service.create_standalone_activity(_candidate())

    updated = service.update_instance(created["activity"]["id"], InstancePatch(location="Garden"))

    assert updated["activity"]["state"] == STATE_STANDALONE
    assert updated["activity"]["location"] == "Garden"


def test_edit_does_not_conflict_with_itself(service):
    created = service.create_standalone_activity(_candidate())

    updated = service.update_instance(
        created["activity"]["id"],
        InstancePatch(start_at=_utc(2024, 1, 8, 16, 30), end_at=_utc(2024, 1, 8, 17, 30)),
    )

    assert updated["activity"]["startAt"] == "2024-01-08T16:30:00.000Z"


def test_edit_into_conflict_is_rejected_without_changes(service):
    service.create_standalone_activity(_candidate(title="Music"))
    created = service.create_standalone_activity(_candidate(start=_utc(2024, 1, 8, 18), title="Bingo"))

    with pytest.raises(ConflictError):
        service.update_instance(created["activity"]["id"], InstancePatch(start_at=_utc(2024, 1, 8, 16, 30),
                                                                          end_at=_utc(2024, 1, 8, 17, 30)))

    _db.session.expire_all()
    row = _db.session.get(ActivityInstance, created["activity"]["id"])
    assert row.start_at.replace(tzinfo=timezone.utc) == _utc(2024, 1, 8, 18)


def test_series_scope_edit_is_rejected(service):
    created = service.create_standalone_activity(_candidate())

    with pytest.raises(ValidationError) as exc:
        service.update_instance(created["activity"]["id"], InstancePatch(title="All of them"), scope="series")
    assert "scope" in exc.value.details


def test_edit_with_inverted_window_is_rejected(service):
    created = service.create_standalone_activity(_candidate())

    with pytest.raises(ValidationError):
        service.update_instance(created["activity"]["id"], InstancePatch(end_at=_utc(2024, 1, 8, 15)))


def test_edit_missing_instance_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.update_instance(999, InstancePatch(title="Ghost"))


def test_move_instance(service):
    created = service.create_standalone_activity(_candidate())

    moved = service.move_instance(
        created["activity"]["id"], _utc(2024, 1, 9, 16), _utc(2024, 1, 9, 17), location="Garden",
    )

    assert moved["activity"]["startAt"] == "2024-01-09T16:00:00.000Z"
    assert moved["activity"]["location"] == "Garden"



def test_edit_keeps_earlier_conflict_override(service):
    service.create_standalone_activity(_candidate())
    overlapping = service.create_standalone_activity(_candidate(title="Bingo"), allow_conflict_override=True)
    assert overlapping["activity"]["conflictOverride"] is True

    moved = service.move_instance(overlapping["activity"]["id"], _utc(2024, 1, 9, 16), _utc(2024, 1, 9, 17))

    assert moved["warnings"]["conflicts"] == []
    assert moved["activity"]["conflictOverride"] is True


# ── Delete ────────────────────────────────────────────────────────────────────


def test_delete_generated_instance_records_one_exception(service):
    result = service.create_series(_candidate(), _weekly(count=3))
    series_id = result["series"]["id"]
    row_id = _instances(series_id=series_id)[1].id

    deleted = service.delete_instance(row_id)

    assert deleted == {"deleted": True, "skippedSeriesOccurrence": True, "id": row_id}
    exceptions = SeriesException.query.filter_by(series_id=series_id).all()
    assert [e.occurrence_key for e in exceptions] == ["2024-01-10T16:00:00.000Z"]


def test_deleted_occurrence_is_not_rematerialized(service):
    result = service.create_series(_candidate(), _weekly(count=3))
    service.delete_instance(_instances(series_id=result["series"]["id"])[1].id)

    materialized = service.ensure_series_materialized(_utc(2024, 1, 1), _utc(2024, 2, 1))

    assert materialized == {"seriesCount": 1, "createdCount": 0}
    assert len(_instances(series_id=result["series"]["id"])) == 2


@pytest.mark.parametrize("make_override", [True, False])
def test_delete_override_or_standalone_records_no_exception(service, make_override):
    if make_override:
        result = service.create_series(_candidate(), _weekly(count=1))
        instance_id = _instances(series_id=result["series"]["id"])[0].id
        service.update_instance(instance_id, InstancePatch(title="Edited"))
    else:
        instance_id = service.create_standalone_activity(_candidate())["activity"]["id"]

    deleted = service.delete_instance(instance_id)

    assert deleted["skippedSeriesOccurrence"] is False
    assert SeriesException.query.count() == 0
    assert _db.session.get(ActivityInstance, instance_id) is None


def test_delete_missing_instance_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.delete_instance(12345)


# ── Range reads ───────────────────────────────────────────────────────────────


def test_list_range_materializes_lazily(facility, policy):
    service = ScheduleService(facility.id, policy, horizon_days=7)
    created = service.create_series(_candidate(), _weekly(by_day=("MO", "TU", "WE", "TH", "FR")))
    assert created["materialized"] == 5

    listing = service.list_range(_utc(2024, 1, 15), _utc(2024, 1, 20))

    assert listing["materialized"] == {"seriesCount": 1, "createdCount": 5}
    assert [a["startAt"][:10] for a in listing["activities"]] == [
        "2024-01-15", "2024-01-16", "2024-01-17", "2024-01-18", "2024-01-19",
    ]
    assert all(a["state"] == STATE_SERIES_GENERATED for a in listing["activities"])

    again = service.list_range(_utc(2024, 1, 15), _utc(2024, 1, 20))
    assert again["materialized"]["createdCount"] == 0
    assert len(again["activities"]) == 5


def test_moved_override_is_not_regenerated(service):
    result = service.create_series(_candidate(), _weekly(count=3))
    row = _instances(series_id=result["series"]["id"])[0]
    service.move_instance(row.id, _utc(2024, 1, 8, 18), _utc(2024, 1, 8, 19))

    listing = service.list_range(_utc(2024, 1, 8), _utc(2024, 1, 9))

    assert [a["startAt"] for a in listing["activities"]] == ["2024-01-08T18:00:00.000Z"]
    assert listing["materialized"]["createdCount"] == 0


def test_list_range_includes_standalone_and_is_ordered(service):
    service.create_standalone_activity(_candidate(start=_utc(2024, 1, 9, 16), title="Bingo"))
    service.create_standalone_activity(_candidate(start=_utc(2024, 1, 8, 16), title="Music"))

    listing = service.list_range(_utc(2024, 1, 8), _utc(2024, 1, 10))

    assert [a["title"] for a in listing["activities"]] == ["Music", "Bingo"]
    assert listing["range"] == {"start": "2024-01-08T00:00:00.000Z", "end": "2024-01-10T00:00:00.000Z"}


def test_list_range_rejects_inverted_window(service):
    with pytest.raises(ValidationError):
        service.list_range(_utc(2024, 1, 10), _utc(2024, 1, 8))
