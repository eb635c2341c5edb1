"""Recurrence rule expansion.

Every RRULE is mapped onto one of a fixed set of variants. Each variant has
its own expansion function that builds a `dateutil.rrule.rrule` with the
BY* parts that are valid for it:

| Variant              | RRULE shape                                          |
|----------------------|------------------------------------------------------|
| NONE                 | no RRULE                                             |
| DAILY                | FREQ=DAILY, optional BYDAY / BYMONTHDAY / BYMONTH    |
| WEEKLY               | FREQ=WEEKLY, optional BYDAY / BYMONTH / WKST         |
| MONTHLY_BY_MONTHDAY  | FREQ=MONTHLY, optional BYMONTHDAY=1,15,-1            |
| MONTHLY_BY_WEEKDAY   | FREQ=MONTHLY;BYDAY=2TU / -1FR / MO,TU;BYSETPOS=1     |
| YEARLY               | FREQ=YEARLY, optional BYMONTH / BYMONTHDAY / BYDAY / |
|                      | BYYEARDAY / BYWEEKNO / BYSETPOS                      |

All variants accept INTERVAL, COUNT and UNTIL. Sub-daily frequencies and
BYHOUR/BYMINUTE/BYSECOND raise `UnsupportedRecurrence`.

Occurrences keep the wall-clock time of DTSTART, so a 09:00 meeting stays at
09:00 across DST changes. DTSTART is always the first occurrence and counts
towards COUNT.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

from dateutil.rrule import DAILY, MONTHLY, WEEKLY, YEARLY, rrule, weekday

WEEKDAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}

BYDAY_PATTERN = re.compile(r"^(?P<ordinal>[+-]?\d{1,2})?(?P<day>MO|TU|WE|TH|FR|SA|SU)$")

COMMON_PARTS = {"FREQ", "INTERVAL", "COUNT", "UNTIL", "WKST"}

ALLOWED_PARTS = {
    "DAILY": COMMON_PARTS | {"BYDAY", "BYMONTHDAY", "BYMONTH", "BYSETPOS"},
    "WEEKLY": COMMON_PARTS | {"BYDAY", "BYMONTH", "BYSETPOS"},
    "MONTHLY": COMMON_PARTS | {"BYDAY", "BYMONTHDAY", "BYMONTH", "BYSETPOS"},
    "YEARLY": COMMON_PARTS
    | {"BYDAY", "BYMONTHDAY", "BYMONTH", "BYYEARDAY", "BYWEEKNO", "BYSETPOS"},
}


class UnsupportedRecurrence(ValueError):
    """Raised for RRULEs outside the supported variants."""

    pass


class RecurrenceKind(str, Enum):
    """Recurrence variants."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY_BY_MONTHDAY = "monthly_by_monthday"
    MONTHLY_BY_WEEKDAY = "monthly_by_weekday"
    YEARLY = "yearly"


@dataclass(frozen=True)
class RecurrenceRule:
    """A parsed recurrence rule.

    Attributes:
        kind: Which expansion applies
        interval: Step between periods (days, weeks, months or years)
        count: Total number of occurrences including DTSTART
        until: Last allowed occurrence (inclusive)
        weekdays: BYDAY as (ordinal, weekday) pairs, weekday 0=Monday;
            ordinal 0 means every such weekday in the period
        month_days: BYMONTHDAY values, negative counts from month end
        months: BYMONTH values (1-12)
        set_positions: BYSETPOS values, negative counts from period end
        year_days: BYYEARDAY values
        week_numbers: BYWEEKNO values
        week_start: WKST as a weekday number
    """

    kind: RecurrenceKind = RecurrenceKind.NONE
    interval: int = 1
    count: int | None = None
    until: date | datetime | None = None
    weekdays: tuple[tuple[int, int], ...] = ()
    month_days: tuple[int, ...] = ()
    months: tuple[int, ...] = ()
    set_positions: tuple[int, ...] = ()
    year_days: tuple[int, ...] = ()
    week_numbers: tuple[int, ...] = ()
    week_start: int = 0

    @classmethod
    def single(cls) -> RecurrenceRule:
        return cls(kind=RecurrenceKind.NONE)

    @classmethod
    def from_ical(cls, rrule_parts: Mapping[str, Any]) -> RecurrenceRule:
        """Build a rule from an icalendar ``vRecur`` (or any mapping of lists).

        Raises:
            UnsupportedRecurrence: If the rule cannot be expressed
        """
        parts = {str(key).upper(): _as_list(value) for key, value in rrule_parts.items()}

        freq = str(parts.get("FREQ", [""])[0]).upper()
        if freq not in ALLOWED_PARTS:
            raise UnsupportedRecurrence(f"Unsupported FREQ: {freq or '(missing)'}")

        unknown = set(parts) - ALLOWED_PARTS[freq]
        if unknown:
            raise UnsupportedRecurrence(
                f"Unsupported RRULE parts for FREQ={freq}: {sorted(unknown)}"
            )

        interval = _int(parts.get("INTERVAL", [1])[0], "INTERVAL")
        if interval < 1:
            raise UnsupportedRecurrence(f"Invalid INTERVAL: {interval}")
        count = _int(parts["COUNT"][0], "COUNT") if "COUNT" in parts else None
        if count is not None and count < 1:
            raise UnsupportedRecurrence(f"Invalid COUNT: {count}")
        until = _until_value(parts["UNTIL"][0]) if "UNTIL" in parts else None

        wkst = str(parts.get("WKST", ["MO"])[0]).upper()
        if wkst not in WEEKDAY_CODES:
            raise UnsupportedRecurrence(f"Invalid WKST: {wkst}")

        weekdays = tuple(_parse_byday(value) for value in parts.get("BYDAY", []))
        if freq in ("DAILY", "WEEKLY") and any(ordinal for ordinal, _ in weekdays):
            raise UnsupportedRecurrence(f"Ordinal BYDAY with FREQ={freq}")

        month_days = _ints(parts, "BYMONTHDAY", 31)
        months = _ints(parts, "BYMONTH", 12)
        if any(month < 1 for month in months):
            raise UnsupportedRecurrence(f"Invalid BYMONTH: {months}")

        if freq == "MONTHLY":
            kind = (
                RecurrenceKind.MONTHLY_BY_WEEKDAY
                if weekdays
                else RecurrenceKind.MONTHLY_BY_MONTHDAY
            )
        else:
            kind = RecurrenceKind[freq]

        return cls(
            kind=kind,
            interval=interval,
            count=count,
            until=until,
            weekdays=weekdays,
            month_days=month_days,
            months=months,
            set_positions=_ints(parts, "BYSETPOS", 366),
            year_days=_ints(parts, "BYYEARDAY", 366),
            week_numbers=_ints(parts, "BYWEEKNO", 53),
            week_start=WEEKDAY_CODES[wkst],
        )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise UnsupportedRecurrence(f"Invalid {name}: {value!r}") from e


def _ints(parts: dict[str, list[Any]], name: str, limit: int) -> tuple[int, ...]:
    values = tuple(_int(value, name) for value in parts.get(name, []))
    if any(value == 0 or abs(value) > limit for value in values):
        raise UnsupportedRecurrence(f"Invalid {name}: {values}")
    return values


def _until_value(value: Any) -> date | datetime:
    value = getattr(value, "dt", value)
    if isinstance(value, date):
        return value
    raise UnsupportedRecurrence(f"Invalid UNTIL: {value!r}")


def _parse_byday(value: Any) -> tuple[int, int]:
    match = BYDAY_PATTERN.match(str(value).strip().upper())
    if not match:
        raise UnsupportedRecurrence(f"Invalid BYDAY value: {value}")
    ordinal = int(match.group("ordinal") or 0)
    if abs(ordinal) > 53:
        raise UnsupportedRecurrence(f"Unsupported BYDAY ordinal: {value}")
    return ordinal, WEEKDAY_CODES[match.group("day")]


def _byweekday(rule: RecurrenceRule) -> list[weekday] | None:
    if not rule.weekdays:
        return None
    return [weekday(day, ordinal or None) for ordinal, day in rule.weekdays]


def _or_none(values: tuple[int, ...]) -> tuple[int, ...] | None:
    return values or None


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time())


def _until_for(until: date | datetime, start: datetime) -> datetime:
    """Bring UNTIL to the same awareness as the expansion start."""
    if not isinstance(until, datetime):
        return datetime.combine(until, time.max, tzinfo=start.tzinfo)
    if start.tzinfo is None:
        # Floating or all-day DTSTART with a UTC UNTIL: compare wall time
        return until.replace(tzinfo=None)
    if until.tzinfo is None:
        return until.replace(tzinfo=start.tzinfo)
    return until


def _base_options(rule: RecurrenceRule, start: datetime) -> dict[str, Any]:
    options: dict[str, Any] = {
        "dtstart": start,
        "interval": rule.interval,
        "wkst": rule.week_start,
        "bymonth": _or_none(rule.months),
        "bysetpos": _or_none(rule.set_positions),
    }
    if rule.count is not None:
        options["count"] = rule.count
    elif rule.until is not None:
        options["until"] = _until_for(rule.until, start)
    return options


# =============================================================================
# Per-variant expansion
# =============================================================================


def _daily(rule: RecurrenceRule, start: datetime) -> rrule:
    return rrule(
        DAILY,
        byweekday=_byweekday(rule),
        bymonthday=_or_none(rule.month_days),
        **_base_options(rule, start),
    )


def _weekly(rule: RecurrenceRule, start: datetime) -> rrule:
    return rrule(WEEKLY, byweekday=_byweekday(rule), **_base_options(rule, start))


def _monthly_by_monthday(rule: RecurrenceRule, start: datetime) -> rrule:
    return rrule(MONTHLY, bymonthday=_or_none(rule.month_days), **_base_options(rule, start))


def _monthly_by_weekday(rule: RecurrenceRule, start: datetime) -> rrule:
    return rrule(
        MONTHLY,
        byweekday=_byweekday(rule),
        bymonthday=_or_none(rule.month_days),
        **_base_options(rule, start),
    )


def _yearly(rule: RecurrenceRule, start: datetime) -> rrule:
    return rrule(
        YEARLY,
        byweekday=_byweekday(rule),
        bymonthday=_or_none(rule.month_days),
        byyearday=_or_none(rule.year_days),
        byweekno=_or_none(rule.week_numbers),
        **_base_options(rule, start),
    )


_EXPANDERS: dict[RecurrenceKind, Callable[[RecurrenceRule, datetime], rrule]] = {
    RecurrenceKind.DAILY: _daily,
    RecurrenceKind.WEEKLY: _weekly,
    RecurrenceKind.MONTHLY_BY_MONTHDAY: _monthly_by_monthday,
    RecurrenceKind.MONTHLY_BY_WEEKDAY: _monthly_by_weekday,
    RecurrenceKind.YEARLY: _yearly,
}


def _day_of(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def expand(
    rule: RecurrenceRule,
    dtstart: date | datetime,
    first_day: date,
    last_day: date,
) -> Iterator[date | datetime]:
    """Yield occurrence starts whose day lies in ``[first_day, last_day]``.

    Args:
        rule: Parsed recurrence rule
        dtstart: First occurrence; date for all-day entries
        first_day: Earliest day of interest
        last_day: Latest day of interest (inclusive)

    Yields:
        Occurrence starts in ascending order, with the same type and tzinfo
        as ``dtstart``
    """
    if _day_of(dtstart) > last_day:
        return

    if first_day <= _day_of(dtstart):
        yield dtstart
    if rule.kind is RecurrenceKind.NONE:
        return

    start = _as_datetime(dtstart)
    after = datetime.combine(first_day, time(), tzinfo=start.tzinfo)
    before = datetime.combine(last_day, time.max, tzinfo=start.tzinfo)
    until = (
        _until_for(rule.until, start)
        if rule.count is not None and rule.until is not None
        else None
    )

    recurrence = _EXPANDERS[rule.kind](rule, start)
    if rule.count is not None and recurrence.after(start, inc=True) != start:
        # DTSTART always counts, even when the rule itself would not produce it
        if rule.count == 1:
            return
        recurrence = recurrence.replace(count=rule.count - 1)

    for occurrence in recurrence.between(after, before, inc=True):
        if occurrence == start:
            continue
        if until is not None and occurrence > until:
            return
        yield occurrence if isinstance(dtstart, datetime) else occurrence.date()
