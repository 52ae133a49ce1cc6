"""
Recurrence expansion for activity series.

Pure functions only: no database, no Flask context. A series is described by
a ``RecurrenceRule`` (FREQ ∈ DAILY/WEEKLY/MONTHLY, INTERVAL, BYDAY, COUNT or
UNTIL, one IANA timezone) anchored at ``dtstart``. Expansion delegates the
calendar arithmetic to ``dateutil.rrule`` on the series' local wall clock, so
an activity keeps its local time of day across DST changes and BYDAY
weekdays are evaluated in the series timezone.

Semantics worth knowing:
    - COUNT bounds the global sequence from dtstart, not the queried window.
    - UNTIL is inclusive. When both COUNT and UNTIL are set, COUNT wins.
    - MONTHLY on a day a month lacks (e.g. the 31st) skips that month.
    - SeriesException records are NOT applied here; callers filter the
      output by occurrence key.

Storage form (compact text):
    FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;COUNT=10
    FREQ=DAILY;INTERVAL=2;UNTIL=20240115T000000Z
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import rrule as _rrule

from facility_calendar.core.exceptions import ValidationError
from facility_calendar.models.base import as_utc, isoformat_utc


# ── Constants ────────────────────────────────────────────────────────────────

FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")

# Index matches datetime.weekday() (Monday = 0).
WEEKDAY_TOKENS = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

_DATEUTIL_FREQ = {
    "DAILY": _rrule.DAILY,
    "WEEKLY": _rrule.WEEKLY,
    "MONTHLY": _rrule.MONTHLY,
}
_DATEUTIL_WEEKDAYS = (
    _rrule.MO, _rrule.TU, _rrule.WE, _rrule.TH, _rrule.FR, _rrule.SA, _rrule.SU,
)

MAX_INTERVAL = 365
DEFAULT_MAX_COUNT = 3650

_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_COMPACT_DATETIME = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})Z$")


@dataclass(frozen=True)
class RecurrenceRule:
    freq: str
    interval: int = 1
    by_day: tuple[str, ...] = ()
    count: int | None = None
    until: datetime | None = None
    timezone: str = "UTC"


@dataclass(frozen=True)
class Occurrence:
    """One computed slot of a series, before any instance row exists for it."""

    start_at: datetime
    end_at: datetime
    occurrence_key: str


# ── Helpers ──────────────────────────────────────────────────────────────────


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for ``name`` or raise ValidationError."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValidationError(
            f"Unknown timezone '{name}'.",
            details={"timezone": "Must be a valid IANA timezone name."},
        ) from None


def make_occurrence_key(instant: datetime) -> str:
    """Canonical key for an occurrence: ``2024-01-01T15:00:00.000Z``."""
    return isoformat_utc(instant)


def format_compact_instant(instant: datetime) -> str:
    """``2024-01-15T00:00:00.250Z`` → ``20240115T000000Z``."""
    return as_utc(instant).strftime("%Y%m%dT%H%M%SZ")


def parse_compact_instant(token: str) -> datetime:
    """Parse an UNTIL token.

    ``YYYYMMDD`` is read as the last millisecond of that UTC day;
    ``YYYYMMDDTHHMMSSZ`` as an exact UTC instant; anything else is tried as
    ISO-8601.
    """
    token = (token or "").strip()
    match = _COMPACT_DATE.match(token)
    if match:
        year, month, day = (int(p) for p in match.groups())
        return datetime(year, month, day, 23, 59, 59, 999000, tzinfo=timezone.utc)

    match = _COMPACT_DATETIME.match(token)
    if match:
        parts = [int(p) for p in match.groups()]
        return datetime(*parts, tzinfo=timezone.utc)

    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            f"Invalid UNTIL value '{token}'.",
            details={"until": "Must be YYYYMMDD, YYYYMMDDTHHMMSSZ or ISO-8601."},
        ) from None
    return as_utc(parsed)


def normalize_by_day(tokens) -> tuple[str, ...]:
    unique = {str(t).strip().upper() for t in tokens if str(t).strip()}
    return tuple(sorted(unique, key=lambda t: WEEKDAY_TOKENS.index(t) if t in WEEKDAY_TOKENS else 99))


# ── Text form ────────────────────────────────────────────────────────────────


def format_rrule(rule: RecurrenceRule) -> str:
    parts = [f"FREQ={rule.freq}", f"INTERVAL={rule.interval}"]
    if rule.by_day:
        parts.append(f"BYDAY={','.join(rule.by_day)}")
    if rule.count:
        parts.append(f"COUNT={rule.count}")
    if rule.until is not None:
        parts.append(f"UNTIL={format_compact_instant(rule.until)}")
    return ";".join(parts)


def parse_rrule(text: str, timezone_name: str = "UTC") -> RecurrenceRule:
    """Parse the compact text form back into a ``RecurrenceRule``.

    Raises:
        ValidationError: On an unknown FREQ or a malformed INTERVAL/COUNT/UNTIL.
    """
    values: dict[str, str] = {}
    for segment in (text or "").split(";"):
        key, sep, value = segment.strip().partition("=")
        if not sep or not key:
            continue
        values[key.strip().upper()] = value.strip()

    freq = values.get("FREQ", "").upper()
    if freq not in FREQUENCIES:
        raise ValidationError(
            f"Unsupported recurrence frequency '{freq}'.",
            details={"freq": f"Must be one of: {', '.join(FREQUENCIES)}."},
        )

    def _int(name: str) -> int | None:
        raw = values.get(name)
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except ValueError:
            raise ValidationError(
                f"Invalid {name} value '{raw}'.",
                details={name.lower(): "Must be an integer."},
            ) from None

    by_day = normalize_by_day(values["BYDAY"].split(",")) if values.get("BYDAY") else ()
    until = parse_compact_instant(values["UNTIL"]) if values.get("UNTIL") else None

    return RecurrenceRule(
        freq=freq,
        interval=_int("INTERVAL") or 1,
        by_day=by_day,
        count=_int("COUNT"),
        until=until,
        timezone=timezone_name,
    )


# ── Validation ───────────────────────────────────────────────────────────────


def validate_rule(
    rule: RecurrenceRule,
    dtstart: datetime | None = None,
    *,
    max_count: int = DEFAULT_MAX_COUNT,
) -> None:
    """Raise ValidationError (with every field problem) if ``rule`` is unusable."""
    errors: dict[str, str] = {}

    if rule.freq not in FREQUENCIES:
        errors["freq"] = f"Must be one of: {', '.join(FREQUENCIES)}."

    if not isinstance(rule.interval, int) or isinstance(rule.interval, bool) \
            or not 1 <= rule.interval <= MAX_INTERVAL:
        errors["interval"] = f"Must be an integer between 1 and {MAX_INTERVAL}."

    if rule.by_day:
        if rule.freq != "WEEKLY":
            errors["byDay"] = "Only allowed with WEEKLY frequency."
        elif any(token not in WEEKDAY_TOKENS for token in rule.by_day):
            errors["byDay"] = f"Must contain only: {', '.join(WEEKDAY_TOKENS)}."

    if rule.count is not None:
        if not isinstance(rule.count, int) or isinstance(rule.count, bool) \
                or not 1 <= rule.count <= max_count:
            errors["count"] = f"Must be an integer between 1 and {max_count}."

    if rule.until is not None:
        if rule.until.tzinfo is None:
            errors["until"] = "Must include a UTC offset."
        elif dtstart is not None and dtstart.tzinfo is not None and rule.until < dtstart:
            errors["until"] = "Must not be before the first occurrence."

    try:
        resolve_timezone(rule.timezone)
    except ValidationError as exc:
        errors.update(exc.details)

    if errors:
        raise ValidationError("Invalid recurrence rule.", details=errors)


# ── Expansion ────────────────────────────────────────────────────────────────


def _build(rule: RecurrenceRule, dtstart: datetime):
    tz = resolve_timezone(rule.timezone)
    local_start = as_utc(dtstart).astimezone(tz)

    kwargs = {"dtstart": local_start, "interval": rule.interval, "wkst": _rrule.MO}
    if rule.freq == "WEEKLY":
        if rule.by_day:
            kwargs["byweekday"] = [
                _DATEUTIL_WEEKDAYS[WEEKDAY_TOKENS.index(t)] for t in rule.by_day
            ]
        else:
            kwargs["byweekday"] = [_DATEUTIL_WEEKDAYS[local_start.weekday()]]

    # dateutil refuses count+until together; count is authoritative.
    if rule.count:
        kwargs["count"] = rule.count
    elif rule.until is not None:
        kwargs["until"] = as_utc(rule.until).astimezone(tz)

    return _rrule.rrule(_DATEUTIL_FREQ[rule.freq], **kwargs), tz


def expand(
    rule: RecurrenceRule,
    dtstart: datetime,
    window_start: datetime,
    window_end: datetime,
) -> list[datetime]:
    """Return occurrence instants within ``[window_start, window_end)``.

    Deterministic: identical inputs always give the identical ascending list
    of aware UTC datetimes.
    """
    if as_utc(window_end) <= as_utc(window_start):
        return []

    recurrence, tz = _build(rule, dtstart)
    start_utc = as_utc(window_start)
    end_utc = as_utc(window_end)

    # Same-zone aware datetimes compare by wall clock and ignore fold, so the
    # window edges are checked in UTC. Start a day early to cover the
    # repeated fall-back hour.
    instants = []
    for occurrence in recurrence.xafter(start_utc.astimezone(tz) - timedelta(days=1), inc=True):
        instant = occurrence.astimezone(timezone.utc)
        if instant < start_utc:
            continue
        if instant >= end_utc:
            break
        instants.append(instant)
    return instants


def expand_occurrences(
    rule: RecurrenceRule,
    dtstart: datetime,
    duration_minutes: int,
    window_start: datetime,
    window_end: datetime,
) -> list[Occurrence]:
    """``expand`` plus the end instant and occurrence key of every slot."""
    duration = timedelta(minutes=duration_minutes)
    return [
        Occurrence(
            start_at=instant,
            end_at=instant + duration,
            occurrence_key=make_occurrence_key(instant),
        )
        for instant in expand(rule, dtstart, window_start, window_end)
    ]
