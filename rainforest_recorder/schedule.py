# SPDX-License-Identifier: MPL-2.0
"""
Time-of-use Phase Schedule Module

Maps the local wall-clock hour and the day classification of yesterday,
today and tomorrow to the active billing phase, the instant it ends and the
phase that follows.

The schedule table is configuration: each day type carries its own list of
hour ranges, so the number of phases per day and the weekday/weekend split
can change without touching the resolver.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, tzinfo
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from rainforest_recorder.day_types import DayType, HolidayCalendar

logger = logging.getLogger(__name__)

HOURS_PER_DAY = 24


class ScheduleError(Exception):
    """Raised when a schedule table is invalid or cannot be resolved."""
    pass


class Phase(Enum):
    """Time-of-use billing phases. The value is the stored series name."""
    OFF_PEAK = "off_peak"
    PARTIAL_PEAK = "partial_peak"
    PEAK = "peak"


@dataclass(frozen=True)
class ScheduleEntry:
    """
    One phase of a day, covering the half-open hour range [start_hour, end_hour).

    An entry whose end_hour is not after its start_hour wraps past midnight;
    ScheduleTable splits it in two before use.
    """
    start_hour: int
    end_hour: int
    phase: Phase

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour < HOURS_PER_DAY:
            raise ScheduleError(f"Start hour must be in 0-23, got {self.start_hour}")
        if not 0 <= self.end_hour <= HOURS_PER_DAY:
            raise ScheduleError(f"End hour must be in 0-24, got {self.end_hour}")

    @property
    def wraps(self) -> bool:
        return self.end_hour <= self.start_hour

    def contains(self, hour: int) -> bool:
        if self.wraps:
            return hour >= self.start_hour or hour < self.end_hour
        return self.start_hour <= hour < self.end_hour

    def __str__(self) -> str:
        return f"{self.start_hour:02d}-{self.end_hour:02d}={self.phase.value}"


@dataclass(frozen=True)
class SymbolicTime:
    """
    A wall-clock time relative to the local calendar day.

    Attributes:
        day_offset: -1 for yesterday, 0 for today, 1 for tomorrow
        hour: Hour of day (0-23)
        minute: Minute of hour (0-59)
    """
    day_offset: int
    hour: int
    minute: int = 0

    def __post_init__(self) -> None:
        if self.day_offset not in (-1, 0, 1):
            raise ValueError(f"day_offset must be -1, 0 or 1, got {self.day_offset}")
        if not 0 <= self.hour < HOURS_PER_DAY:
            raise ValueError(f"hour must be in 0-23, got {self.hour}")
        if not 0 <= self.minute < 60:
            raise ValueError(f"minute must be in 0-59, got {self.minute}")

    def resolve(self, today: date, tz: Optional[tzinfo] = None) -> datetime:
        """
        Anchor this time to a calendar day.

        Args:
            today: The local date the offset is relative to
            tz: Timezone of the wall clock; the process's local zone if None

        Returns:
            Timezone-aware datetime
        """
        day = today + timedelta(days=self.day_offset)
        naive = datetime.combine(day, dt_time(self.hour, self.minute))
        if tz is None:
            return naive.astimezone()
        return naive.replace(tzinfo=tz)

    def __str__(self) -> str:
        day = {-1: "yesterday", 0: "today", 1: "tomorrow"}[self.day_offset]
        return f"{day} {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class PhaseWindow:
    """
    Result of resolving the schedule at a point in time.

    Attributes:
        phase: The phase active now
        boundary: When the active phase ends
        next_phase: The phase that starts at the boundary
        start: When the active phase began (only when yesterday's day type is known)
    """
    phase: Phase
    boundary: SymbolicTime
    next_phase: Phase
    start: Optional[SymbolicTime] = None

    def __str__(self) -> str:
        return (f"start: {self.start or 'unknown'}, {self.phase.value}, "
                f"finish: {self.boundary}, {self.next_phase.value}")


def _normalize_day(entries: Sequence[ScheduleEntry]) -> Tuple[ScheduleEntry, ...]:
    """Split wrapping entries at midnight and order the day by start hour."""
    split: List[ScheduleEntry] = []
    for entry in entries:
        if entry.wraps:
            split.append(ScheduleEntry(entry.start_hour, HOURS_PER_DAY, entry.phase))
            if entry.end_hour > 0:
                split.append(ScheduleEntry(0, entry.end_hour, entry.phase))
        else:
            split.append(entry)
    return tuple(sorted(split, key=lambda e: e.start_hour))


def _validate_day(day_type: DayType, entries: Sequence[ScheduleEntry]) -> None:
    if not entries:
        raise ScheduleError(f"No schedule entries for {day_type.value}")

    expected_start = 0
    previous: Optional[ScheduleEntry] = None
    for entry in entries:
        if entry.start_hour < expected_start:
            raise ScheduleError(f"{day_type.value}: entry {entry} overlaps {previous}")
        if entry.start_hour > expected_start:
            raise ScheduleError(
                f"{day_type.value}: no phase covers {expected_start:02d}-{entry.start_hour:02d}"
            )
        if previous is not None and previous.phase == entry.phase:
            raise ScheduleError(
                f"{day_type.value}: adjacent entries {previous} and {entry} share a phase"
            )
        expected_start = entry.end_hour
        previous = entry

    if expected_start != HOURS_PER_DAY:
        raise ScheduleError(f"{day_type.value}: no phase covers {expected_start:02d}-24")


class ScheduleTable:
    """
    Schedule entries for each day type.

    Entries of each day type must cover [0, 24) with no gaps or overlaps,
    and neighbouring entries must have different phases.

    Raises:
        ScheduleError: If the table does not satisfy these rules
    """

    def __init__(self, days: Mapping[DayType, Sequence[ScheduleEntry]]) -> None:
        self._days: Dict[DayType, Tuple[ScheduleEntry, ...]] = {}
        for day_type in DayType:
            entries = _normalize_day(days.get(day_type, ()))
            _validate_day(day_type, entries)
            self._days[day_type] = entries

    @classmethod
    def uniform(cls, entries: Sequence[ScheduleEntry]) -> "ScheduleTable":
        """Build a table that is the same on every day type."""
        return cls({day_type: entries for day_type in DayType})

    def entries(self, day_type: DayType) -> Tuple[ScheduleEntry, ...]:
        return self._days[day_type]

    def entry_at(self, day_type: DayType, hour: int) -> Tuple[int, ScheduleEntry]:
        for index, entry in enumerate(self._days[day_type]):
            if entry.contains(hour):
                return index, entry
        # Unreachable for a validated table
        raise ScheduleError(f"No {day_type.value} entry covers hour {hour}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScheduleTable):
            return NotImplemented
        return self._days == other._days

    def __repr__(self) -> str:
        days = ", ".join(
            f"{day_type.value}: {' '.join(str(e) for e in entries)}"
            for day_type, entries in self._days.items()
        )
        return f"ScheduleTable({days})"


def parse_schedule_entry(value: str) -> ScheduleEntry:
    """
    Parse a schedule entry in the format HH-HH=phase.

    Examples: '07-14=partial_peak', '23-07=off_peak' (wraps midnight)

    Raises:
        ValueError: If the format is invalid
    """
    try:
        hours, phase_name = value.strip().split('=')
        start_str, end_str = hours.split('-')
        start_hour = int(start_str)
        end_hour = int(end_str)
    except ValueError:
        raise ValueError(
            f"Invalid schedule entry: '{value}'. Expected HH-HH=phase, e.g. '07-14=partial_peak'"
        )

    try:
        phase = Phase(phase_name.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in Phase)
        raise ValueError(f"Unknown phase '{phase_name}' in '{value}'. Valid phases: {valid}")

    try:
        return ScheduleEntry(start_hour, end_hour, phase)
    except ScheduleError as e:
        raise ValueError(f"Invalid schedule entry '{value}': {e}")


def parse_schedule(value: str) -> List[ScheduleEntry]:
    """Parse whitespace-separated schedule entries."""
    return [parse_schedule_entry(item) for item in value.split()]


DEFAULT_TABLE = ScheduleTable({
    DayType.WEEKDAY: parse_schedule(
        "00-07=off_peak 07-14=partial_peak 14-21=peak 21-23=partial_peak 23-24=off_peak"
    ),
    DayType.WEEKEND_OR_HOLIDAY: parse_schedule(
        "00-15=off_peak 15-19=peak 19-24=off_peak"
    ),
})


def resolve(
    table: ScheduleTable,
    hour: int,
    today: DayType,
    tomorrow: DayType,
    yesterday: Optional[DayType] = None,
) -> PhaseWindow:
    """
    Find the active phase at an hour of the day and when it ends.

    A phase running up to midnight continues into tomorrow's first entry
    when that entry has the same phase, so the boundary and next phase
    depend on tomorrow's day type.

    Args:
        table: Schedule table to resolve against
        hour: Local wall-clock hour (0-23)
        today: Day type of today
        tomorrow: Day type of tomorrow
        yesterday: Day type of yesterday; when given, the start of the
                   active phase is resolved as well

    Returns:
        PhaseWindow with phase != next_phase

    Raises:
        ValueError: If hour is outside 0-23
        ScheduleError: If the phase does not change before the end of tomorrow
    """
    if not 0 <= hour < HOURS_PER_DAY:
        raise ValueError(f"hour must be in 0-23, got {hour}")

    today_entries = table.entries(today)
    index, entry = table.entry_at(today, hour)
    phase = entry.phase

    if entry.end_hour < HOURS_PER_DAY:
        boundary = SymbolicTime(0, entry.end_hour)
        next_phase = today_entries[index + 1].phase
    else:
        tomorrow_entries = table.entries(tomorrow)
        first = tomorrow_entries[0]
        if first.phase != phase:
            boundary = SymbolicTime(1, 0)
            next_phase = first.phase
        elif len(tomorrow_entries) > 1:
            boundary = SymbolicTime(1, first.end_hour)
            next_phase = tomorrow_entries[1].phase
        else:
            raise ScheduleError(
                f"Phase {phase.value} does not change before the end of tomorrow"
            )

    start = None
    if yesterday is not None:
        start = SymbolicTime(0, entry.start_hour)
        if entry.start_hour == 0:
            last = table.entries(yesterday)[-1]
            if last.phase == phase:
                start = SymbolicTime(-1, last.start_hour)

    return PhaseWindow(phase=phase, boundary=boundary, next_phase=next_phase, start=start)


def resolve_window(table: ScheduleTable, calendar: HolidayCalendar, now: datetime) -> PhaseWindow:
    """
    Resolve the schedule for a local datetime.

    Args:
        table: Schedule table to resolve against
        calendar: Holiday calendar used to classify the surrounding days
        now: Local wall-clock time

    Returns:
        PhaseWindow relative to now's calendar day
    """
    today = now.date()
    window = resolve(
        table,
        now.hour,
        today=calendar.day_type(today),
        tomorrow=calendar.day_type(today + timedelta(days=1)),
        yesterday=calendar.day_type(today - timedelta(days=1)),
    )
    logger.debug(f"Resolved {now.isoformat()} to {window}")
    return window


def to_epoch(moment: datetime) -> int:
    """Convert an aware datetime to UTC epoch seconds."""
    return int(moment.timestamp())
