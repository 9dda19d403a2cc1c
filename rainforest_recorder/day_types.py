# SPDX-License-Identifier: MPL-2.0
"""
Day classification for time-of-use schedules.

A calendar date is either a weekday or a weekend-or-holiday day. Holidays
come from a named ruleset of the `holidays` library.
"""

import logging
from datetime import date
from enum import Enum
from typing import Container, Optional

import holidays

logger = logging.getLogger(__name__)

FINANCIAL_PREFIX = "financial:"


class DayType(Enum):
    """Classification of a calendar date."""
    WEEKDAY = "weekday"
    WEEKEND_OR_HOLIDAY = "weekend"


def classify_day(day: date, holiday_set: Container[date]) -> DayType:
    """
    Classify a date as weekday or weekend-or-holiday.

    Args:
        day: The calendar date
        holiday_set: Dates that count as holidays

    Returns:
        DayType.WEEKEND_OR_HOLIDAY on Saturdays, Sundays and holidays,
        DayType.WEEKDAY otherwise
    """
    if day.weekday() >= 5 or day in holiday_set:
        return DayType.WEEKEND_OR_HOLIDAY
    return DayType.WEEKDAY


def load_holiday_set(ruleset: str) -> Container[date]:
    """
    Build a holiday set from a ruleset name.

    Accepted names:
    - country code, e.g. 'US' (federal holidays, as observed by the Federal Reserve)
    - country code with subdivision, e.g. 'US-CA'
    - financial market, e.g. 'financial:NYSE'

    Raises:
        ValueError: If the ruleset is unknown
    """
    name = ruleset.strip()
    if not name:
        raise ValueError("Holiday ruleset cannot be empty")

    try:
        if name.startswith(FINANCIAL_PREFIX):
            return holidays.financial_holidays(name[len(FINANCIAL_PREFIX):].upper())
        country, _, subdiv = name.partition('-')
        return holidays.country_holidays(country.upper(), subdiv=subdiv.upper() or None)
    except NotImplementedError as e:
        raise ValueError(f"Unknown holiday ruleset '{ruleset}': {e}")


class HolidayCalendar:
    """
    Classifies dates under a named holiday ruleset.

    Args:
        ruleset: Ruleset name understood by load_holiday_set()
        holiday_set: Optional pre-built set of holiday dates; when given,
                     the ruleset name is only used for display
    """

    def __init__(self, ruleset: str = "US", holiday_set: Optional[Container[date]] = None) -> None:
        self.ruleset = ruleset
        self._holidays = holiday_set if holiday_set is not None else load_holiday_set(ruleset)

    def is_holiday(self, day: date) -> bool:
        return day in self._holidays

    def day_type(self, day: date) -> DayType:
        return classify_day(day, self._holidays)

    def __repr__(self) -> str:
        return f"HolidayCalendar(ruleset={self.ruleset!r})"
