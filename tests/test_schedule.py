# SPDX-License-Identifier: MPL-2.0
"""
Unit tests for the time-of-use schedule resolver.

The default table is the weekday/weekend split:
  weekday: 00-07 off_peak, 07-14 partial_peak, 14-21 peak, 21-23 partial_peak, 23-24 off_peak
  weekend: 00-15 off_peak, 15-19 peak, 19-24 off_peak
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from rainforest_recorder.day_types import DayType, HolidayCalendar
from rainforest_recorder.schedule import (
    DEFAULT_TABLE,
    Phase,
    PhaseWindow,
    ScheduleEntry,
    ScheduleError,
    ScheduleTable,
    SymbolicTime,
    parse_schedule,
    parse_schedule_entry,
    resolve,
    resolve_window,
    to_epoch,
)

WEEKDAY = DayType.WEEKDAY
WEEKEND = DayType.WEEKEND_OR_HOLIDAY


class TestParseScheduleEntry:
    """Tests for parsing the HH-HH=phase text form."""

    def test_parse_simple_entry(self) -> None:
        entry = parse_schedule_entry("07-14=partial_peak")
        assert entry == ScheduleEntry(7, 14, Phase.PARTIAL_PEAK)
        assert not entry.wraps

    def test_parse_is_case_insensitive_for_phase(self) -> None:
        assert parse_schedule_entry("14-21=PEAK").phase == Phase.PEAK

    def test_parse_wrapping_entry(self) -> None:
        entry = parse_schedule_entry("23-07=off_peak")
        assert entry.wraps
        assert entry.contains(23)
        assert entry.contains(0)
        assert entry.contains(6)
        assert not entry.contains(7)

    def test_parse_missing_phase(self) -> None:
        with pytest.raises(ValueError, match="Invalid schedule entry"):
            parse_schedule_entry("07-14")

    def test_parse_unknown_phase(self) -> None:
        with pytest.raises(ValueError, match="Unknown phase 'super_peak'"):
            parse_schedule_entry("07-14=super_peak")

    def test_parse_hour_out_of_range(self) -> None:
        with pytest.raises(ValueError, match="End hour must be in 0-24"):
            parse_schedule_entry("07-25=peak")

    def test_parse_schedule_splits_on_whitespace(self) -> None:
        entries = parse_schedule("00-15=off_peak  15-19=peak\n19-24=off_peak")
        assert [str(e) for e in entries] == ["00-15=off_peak", "15-19=peak", "19-24=off_peak"]


class TestScheduleTable:
    """Tests for schedule table validation."""

    def test_default_table_partitions_every_day(self) -> None:
        for day_type in DayType:
            entries = DEFAULT_TABLE.entries(day_type)
            assert entries[0].start_hour == 0
            assert entries[-1].end_hour == 24
            for current, following in zip(entries, entries[1:]):
                assert current.end_hour == following.start_hour
                assert current.phase != following.phase

    def test_every_hour_belongs_to_exactly_one_entry(self) -> None:
        for day_type in DayType:
            for hour in range(24):
                matches = [e for e in DEFAULT_TABLE.entries(day_type) if e.contains(hour)]
                assert len(matches) == 1

    def test_gap_rejected(self) -> None:
        with pytest.raises(ScheduleError, match="no phase covers 07-08"):
            ScheduleTable.uniform(parse_schedule("00-07=off_peak 08-24=peak"))

    def test_overlap_rejected(self) -> None:
        with pytest.raises(ScheduleError, match="overlaps"):
            ScheduleTable.uniform(parse_schedule("00-10=off_peak 08-24=peak"))

    def test_short_day_rejected(self) -> None:
        with pytest.raises(ScheduleError, match="no phase covers 20-24"):
            ScheduleTable.uniform(parse_schedule("00-07=off_peak 07-20=peak"))

    def test_adjacent_same_phase_rejected(self) -> None:
        with pytest.raises(ScheduleError, match="share a phase"):
            ScheduleTable.uniform(parse_schedule("00-07=off_peak 07-12=off_peak 12-24=peak"))

    def test_missing_day_type_rejected(self) -> None:
        with pytest.raises(ScheduleError, match="No schedule entries for weekend"):
            ScheduleTable({WEEKDAY: parse_schedule("00-12=off_peak 12-24=peak")})

    def test_wrapping_entry_is_split_at_midnight(self) -> None:
        table = ScheduleTable.uniform(parse_schedule("07-23=peak 23-07=off_peak"))
        assert [str(e) for e in table.entries(WEEKDAY)] == [
            "00-07=off_peak", "07-23=peak", "23-24=off_peak"
        ]

    def test_uniform_table_equal_for_both_day_types(self) -> None:
        table = ScheduleTable.uniform(parse_schedule("00-12=off_peak 12-24=peak"))
        assert table.entries(WEEKDAY) == table.entries(WEEKEND)

    def test_tables_compare_by_entries(self) -> None:
        a = ScheduleTable.uniform(parse_schedule("00-12=off_peak 12-24=peak"))
        b = ScheduleTable.uniform(parse_schedule("12-00=peak 00-12=off_peak"))
        assert a == b


class TestResolve:
    """Tests for resolving the active phase and its boundary."""

    @pytest.mark.parametrize("today", list(DayType))
    @pytest.mark.parametrize("tomorrow", list(DayType))
    def test_every_hour_resolves_to_a_change(self, today: DayType, tomorrow: DayType) -> None:
        for hour in range(24):
            window = resolve(DEFAULT_TABLE, hour, today, tomorrow)
            assert window.phase != window.next_phase

    def test_weekend_afternoon_peak(self) -> None:
        window = resolve(DEFAULT_TABLE, 16, WEEKEND, WEEKEND)
        assert window == PhaseWindow(Phase.PEAK, SymbolicTime(0, 19), Phase.OFF_PEAK)
        assert str(window.boundary) == "today 19:00"

    def test_weekday_late_night_before_weekend(self) -> None:
        window = resolve(DEFAULT_TABLE, 23, WEEKDAY, WEEKEND)
        assert window.phase == Phase.OFF_PEAK
        assert window.boundary == SymbolicTime(1, 15)
        assert window.next_phase == Phase.PEAK

    def test_weekday_late_night_before_weekday(self) -> None:
        window = resolve(DEFAULT_TABLE, 23, WEEKDAY, WEEKDAY)
        assert window.phase == Phase.OFF_PEAK
        assert str(window.boundary) == "tomorrow 07:00"
        assert window.next_phase == Phase.PARTIAL_PEAK

    def test_weekend_evening_before_weekday(self) -> None:
        window = resolve(DEFAULT_TABLE, 20, WEEKEND, WEEKDAY)
        assert window == PhaseWindow(Phase.OFF_PEAK, SymbolicTime(1, 7), Phase.PARTIAL_PEAK)

    def test_weekday_morning(self) -> None:
        window = resolve(DEFAULT_TABLE, 3, WEEKDAY, WEEKEND)
        assert window == PhaseWindow(Phase.OFF_PEAK, SymbolicTime(0, 7), Phase.PARTIAL_PEAK)

    def test_hour_at_end_belongs_to_next_entry(self) -> None:
        # 14 is the end of partial_peak and the start of peak
        window = resolve(DEFAULT_TABLE, 14, WEEKDAY, WEEKDAY)
        assert window.phase == Phase.PEAK
        assert window.boundary == SymbolicTime(0, 21)
        assert window.next_phase == Phase.PARTIAL_PEAK

    def test_last_hour_before_boundary(self) -> None:
        window = resolve(DEFAULT_TABLE, 13, WEEKDAY, WEEKDAY)
        assert window.phase == Phase.PARTIAL_PEAK
        assert window.boundary == SymbolicTime(0, 14)

    def test_phase_change_at_midnight(self) -> None:
        table = ScheduleTable.uniform(parse_schedule(
            "00-15=off_peak 15-16=partial_peak 16-21=peak 21-24=partial_peak"
        ))
        window = resolve(table, 22, WEEKDAY, WEEKDAY)
        assert window == PhaseWindow(Phase.PARTIAL_PEAK, SymbolicTime(1, 0), Phase.OFF_PEAK)

    def test_invalid_hour(self) -> None:
        with pytest.raises(ValueError, match="hour must be in 0-23"):
            resolve(DEFAULT_TABLE, 24, WEEKDAY, WEEKDAY)

    def test_no_change_within_horizon(self) -> None:
        table = ScheduleTable({
            WEEKDAY: parse_schedule("00-12=peak 12-24=off_peak"),
            WEEKEND: parse_schedule("00-24=off_peak"),
        })
        with pytest.raises(ScheduleError, match="does not change"):
            resolve(table, 13, WEEKDAY, WEEKEND)

    def test_start_unknown_without_yesterday(self) -> None:
        assert resolve(DEFAULT_TABLE, 10, WEEKDAY, WEEKDAY).start is None

    def test_start_same_day(self) -> None:
        window = resolve(DEFAULT_TABLE, 10, WEEKDAY, WEEKDAY, yesterday=WEEKDAY)
        assert window.start == SymbolicTime(0, 7)

    def test_start_after_weekday(self) -> None:
        window = resolve(DEFAULT_TABLE, 3, WEEKDAY, WEEKDAY, yesterday=WEEKDAY)
        assert str(window.start) == "yesterday 23:00"

    def test_start_after_weekend(self) -> None:
        window = resolve(DEFAULT_TABLE, 3, WEEKDAY, WEEKDAY, yesterday=WEEKEND)
        assert str(window.start) == "yesterday 19:00"

    def test_start_at_midnight_when_phase_changes(self) -> None:
        table = ScheduleTable.uniform(parse_schedule(
            "00-15=off_peak 15-16=partial_peak 16-21=peak 21-24=partial_peak"
        ))
        window = resolve(table, 5, WEEKDAY, WEEKDAY, yesterday=WEEKDAY)
        assert window.start == SymbolicTime(0, 0)


class TestResolveWindow:
    """Tests for resolving against a calendar date."""

    def test_friday_night_before_weekend(self) -> None:
        calendar = HolidayCalendar("US", holiday_set=set())
        # 2025-11-14 is a Friday
        window = resolve_window(DEFAULT_TABLE, calendar, datetime(2025, 11, 14, 23, 30))
        assert window.phase == Phase.OFF_PEAK
        assert window.boundary == SymbolicTime(1, 15)
        assert window.next_phase == Phase.PEAK
        assert window.start == SymbolicTime(0, 23)

    def test_holiday_tomorrow(self) -> None:
        # 2025-07-03 is a Thursday; July 4th is a holiday
        calendar = HolidayCalendar("US", holiday_set={date(2025, 7, 4)})
        window = resolve_window(DEFAULT_TABLE, calendar, datetime(2025, 7, 3, 23, 5))
        assert window.boundary == SymbolicTime(1, 15)
        assert window.next_phase == Phase.PEAK

    def test_monday_early_morning_after_weekend(self) -> None:
        calendar = HolidayCalendar("US", holiday_set=set())
        # 2025-11-17 is a Monday
        window = resolve_window(DEFAULT_TABLE, calendar, datetime(2025, 11, 17, 6, 59))
        assert window.phase == Phase.OFF_PEAK
        assert window.boundary == SymbolicTime(0, 7)
        assert str(window.start) == "yesterday 19:00"


class TestSymbolicTime:
    """Tests for anchoring symbolic times to a calendar day."""

    def test_resolve_tomorrow_in_zone(self) -> None:
        tz = ZoneInfo("America/Los_Angeles")
        moment = SymbolicTime(1, 7).resolve(date(2020, 8, 14), tz)
        assert moment == datetime(2020, 8, 15, 14, 0, tzinfo=timezone.utc)
        assert to_epoch(moment) == 1597500000

    def test_resolve_yesterday(self) -> None:
        moment = SymbolicTime(-1, 19, 30).resolve(date(2025, 3, 1), timezone.utc)
        assert moment == datetime(2025, 2, 28, 19, 30, tzinfo=timezone.utc)

    def test_resolve_without_zone_is_aware(self) -> None:
        moment = SymbolicTime(0, 12).resolve(date(2025, 1, 1))
        assert moment.tzinfo is not None
        assert moment.hour == 12

    def test_invalid_offset(self) -> None:
        with pytest.raises(ValueError, match="day_offset"):
            SymbolicTime(2, 0)

    def test_invalid_hour(self) -> None:
        with pytest.raises(ValueError, match="hour must be in 0-23"):
            SymbolicTime(0, 24)

    def test_str(self) -> None:
        assert str(SymbolicTime(-1, 23)) == "yesterday 23:00"
        assert str(SymbolicTime(0, 9, 5)) == "today 09:05"
