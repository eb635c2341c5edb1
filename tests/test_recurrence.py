"""Tests for recurrence expansion."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from matrix_calendar_bot.calendar.recurrence import (
    RecurrenceKind,
    RecurrenceRule,
    UnsupportedRecurrence,
    expand,
)

UTC = timezone.utc
EPOCH = date(1970, 1, 1)


def rule(**parts) -> RecurrenceRule:
    return RecurrenceRule.from_ical({key.upper(): value for key, value in parts.items()})


def days(parsed: RecurrenceRule, start, last_day: date, first_day: date = EPOCH) -> list:
    return list(expand(parsed, start, first_day, last_day))


class TestFromIcal:
    """Tests for mapping RRULEs onto variants."""

    def test_daily(self):
        parsed = rule(freq=["DAILY"], interval=[2], count=[5])
        assert parsed.kind is RecurrenceKind.DAILY
        assert parsed.interval == 2
        assert parsed.count == 5

    def test_weekly_byday(self):
        parsed = rule(freq=["WEEKLY"], byday=["MO", "WE", "FR"])
        assert parsed.kind is RecurrenceKind.WEEKLY
        assert parsed.weekdays == ((0, 0), (0, 2), (0, 4))

    def test_monthly_by_weekday(self):
        parsed = rule(freq=["MONTHLY"], byday=["-1FR"])
        assert parsed.kind is RecurrenceKind.MONTHLY_BY_WEEKDAY
        assert parsed.weekdays == ((-1, 4),)

    def test_monthly_by_monthday(self):
        parsed = rule(freq=["MONTHLY"], bymonthday=[1, -1])
        assert parsed.kind is RecurrenceKind.MONTHLY_BY_MONTHDAY
        assert parsed.month_days == (1, -1)

    def test_yearly_by_month(self):
        parsed = rule(freq=["YEARLY"], bymonth=[6], bymonthday=[5])
        assert parsed.kind is RecurrenceKind.YEARLY
        assert parsed.months == (6,)

    def test_set_position(self):
        parsed = rule(freq=["MONTHLY"], byday=["MO", "TU"], bysetpos=[-1])
        assert parsed.set_positions == (-1,)

    @pytest.mark.parametrize(
        "parts",
        [
            {"freq": ["HOURLY"]},
            {"freq": ["DAILY"], "byhour": [9, 17]},
            {"freq": ["WEEKLY"], "byday": ["2MO"]},
            {"freq": ["DAILY"], "byyearday": [1]},
            {"freq": ["YEARLY"], "bymonth": [13]},
            {"freq": ["DAILY"], "interval": [0]},
        ],
    )
    def test_unsupported(self, parts):
        with pytest.raises(UnsupportedRecurrence):
            rule(**parts)


class TestExpand:
    """Tests for occurrence generation."""

    def test_single_yields_dtstart_only(self):
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)
        assert days(RecurrenceRule.single(), start, date(2024, 12, 31)) == [start]

    def test_dtstart_after_last_day(self):
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)
        assert days(rule(freq=["DAILY"]), start, date(2024, 6, 1)) == []

    def test_first_day_skips_earlier_occurrences(self):
        start = datetime(2024, 6, 1, 9, tzinfo=UTC)
        occurrences = days(rule(freq=["DAILY"]), start, date(2024, 6, 6), date(2024, 6, 5))
        assert [o.day for o in occurrences] == [5, 6]

    def test_daily_count(self):
        """Test COUNT includes DTSTART."""
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)
        occurrences = days(rule(freq=["DAILY"], count=[3]), start, date(2024, 6, 30))
        assert [o.day for o in occurrences] == [3, 4, 5]

    def test_count_includes_unmatched_dtstart(self):
        """Test a Monday DTSTART counts towards a Tuesday-only COUNT."""
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)
        parsed = rule(freq=["WEEKLY"], byday=["TU"], count=[2])
        assert [o.day for o in days(parsed, start, date(2024, 6, 30))] == [3, 4]

    def test_daily_until_inclusive(self):
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)
        until = datetime(2024, 6, 5, 9, tzinfo=UTC)
        occurrences = days(rule(freq=["DAILY"], until=[until]), start, date(2024, 6, 30))
        assert [o.day for o in occurrences] == [3, 4, 5]

    def test_all_day_with_utc_until(self):
        until = datetime(2024, 6, 5, 0, tzinfo=UTC)
        parsed = rule(freq=["DAILY"], until=[until])
        assert days(parsed, date(2024, 6, 3), date(2024, 6, 30)) == [
            date(2024, 6, 3),
            date(2024, 6, 4),
            date(2024, 6, 5),
        ]

    def test_weekly_byday(self):
        start = datetime(2024, 6, 3, 9, tzinfo=UTC)  # Monday
        parsed = rule(freq=["WEEKLY"], byday=["MO", "TH"])
        assert [o.day for o in days(parsed, start, date(2024, 6, 13))] == [3, 6, 10, 13]

    def test_biweekly(self):
        parsed = rule(freq=["WEEKLY"], interval=[2])
        assert days(parsed, date(2024, 6, 3), date(2024, 7, 1)) == [
            date(2024, 6, 3),
            date(2024, 6, 17),
            date(2024, 7, 1),
        ]

    def test_monthly_last_day(self):
        parsed = rule(freq=["MONTHLY"], bymonthday=[-1])
        assert days(parsed, date(2024, 1, 31), date(2024, 4, 30)) == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
        ]

    def test_monthly_skips_short_months(self):
        """Test the 31st only occurs in months that have one."""
        parsed = rule(freq=["MONTHLY"])
        assert days(parsed, date(2024, 1, 31), date(2024, 5, 31)) == [
            date(2024, 1, 31),
            date(2024, 3, 31),
            date(2024, 5, 31),
        ]

    def test_monthly_second_tuesday(self):
        parsed = rule(freq=["MONTHLY"], byday=["2TU"])
        assert days(parsed, date(2024, 6, 11), date(2024, 8, 31)) == [
            date(2024, 6, 11),
            date(2024, 7, 9),
            date(2024, 8, 13),
        ]

    def test_first_weekday_of_month(self):
        start = datetime(2024, 1, 1, 9, tzinfo=UTC)
        parsed = rule(freq=["MONTHLY"], byday=["MO", "TU", "WE", "TH", "FR"], bysetpos=[1])
        occurrences = days(parsed, start, date(2024, 6, 10), date(2024, 6, 3))
        assert occurrences == [datetime(2024, 6, 3, 9, tzinfo=UTC)]

    def test_last_weekday_of_month(self):
        start = datetime(2024, 1, 31, 9, tzinfo=UTC)
        parsed = rule(freq=["MONTHLY"], byday=["MO", "TU", "WE", "TH", "FR"], bysetpos=[-1])
        occurrences = days(parsed, start, date(2024, 6, 3), date(2024, 5, 27))
        assert occurrences == [datetime(2024, 5, 31, 9, tzinfo=UTC)]

    def test_yearly_by_month_years_after_dtstart(self):
        start = datetime(2020, 6, 5, 9, tzinfo=UTC)
        parsed = rule(freq=["YEARLY"], bymonth=[6], bymonthday=[5])
        occurrences = days(parsed, start, date(2024, 6, 10), date(2024, 6, 3))
        assert occurrences == [datetime(2024, 6, 5, 9, tzinfo=UTC)]

    def test_yearly_leap_day(self):
        parsed = rule(freq=["YEARLY"])
        assert days(parsed, date(2020, 2, 29), date(2028, 12, 31)) == [
            date(2020, 2, 29),
            date(2024, 2, 29),
            date(2028, 2, 29),
        ]

    def test_keeps_wall_time_across_dst(self):
        """Test a 09:00 Berlin meeting stays at 09:00 after the DST switch."""
        berlin = ZoneInfo("Europe/Berlin")
        start = datetime(2024, 3, 29, 9, tzinfo=berlin)
        occurrences = days(rule(freq=["DAILY"]), start, date(2024, 4, 2))
        assert all(o.hour == 9 for o in occurrences)
        assert occurrences[0].utcoffset() != occurrences[-1].utcoffset()

    def test_series_started_decades_ago(self):
        start = date(1990, 1, 1)
        occurrences = days(rule(freq=["DAILY"]), start, date(2024, 6, 9), date(2024, 6, 3))
        assert occurrences[0] == date(2024, 6, 3)
        assert len(occurrences) == 7
