# SPDX-License-Identifier: MPL-2.0
"""
Top-level fault handling for a recording run.

The gateway vendor pushes updates every day shortly after 10:00 UTC, and
the gateway is unreachable for a few minutes while that happens. A
transient fault that outlives the retries inside that window is expected
and is logged at INFO. Everything else is an error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Optional

from rainforest_recorder.retry import FaultKind, TransientNetworkFault, classify_fault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceWindow:
    """
    Daily maintenance window in UTC, bounds inclusive.

    Attributes:
        hour: UTC hour of the window
        start_minute: First minute of the window
        end_minute: Last minute of the window
    """
    hour: int = 10
    start_minute: int = 5
    end_minute: int = 15

    def __post_init__(self) -> None:
        if not 0 <= self.hour < 24:
            raise ValueError(f"Maintenance hour must be in 0-23, got {self.hour}")
        if not 0 <= self.start_minute <= self.end_minute < 60:
            raise ValueError(
                f"Invalid maintenance minutes {self.start_minute}-{self.end_minute}"
            )

    def contains(self, moment: datetime) -> bool:
        """Check whether a moment falls in the window (naive moments are taken as UTC)."""
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return moment.hour == self.hour and self.start_minute <= moment.minute <= self.end_minute

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.start_minute:02d}-{self.hour:02d}:{self.end_minute:02d} UTC"


def parse_maintenance_window(value: str) -> MaintenanceWindow:
    """
    Parse a maintenance window in the format HH:MM-HH:MM (UTC, same hour).

    Raises:
        ValueError: If the format is invalid or the window spans hours
    """
    try:
        start_str, end_str = value.strip().split('-')
        start_hour, start_minute = (int(part) for part in start_str.split(':'))
        end_hour, end_minute = (int(part) for part in end_str.split(':'))
    except ValueError:
        raise ValueError(
            f"Invalid maintenance window: '{value}'. Expected HH:MM-HH:MM, e.g. '10:05-10:15'"
        )

    if start_hour != end_hour:
        raise ValueError(f"Maintenance window must start and end in the same hour: '{value}'")

    return MaintenanceWindow(hour=start_hour, start_minute=start_minute, end_minute=end_minute)


class FaultSuppressionPolicy:
    """
    Decides how a fault that ended a run is reported.

    A transient fault is a TransientNetworkFault from the gateway client, or
    a raw network error from any other step (such as the store write) that
    classify_fault() maps onto one of the whitelisted fault kinds.

    Args:
        window: Maintenance window during which transient faults are expected
        log: Logger to report faults on (module logger by default)
        fault_kinds: Fault kinds that may be suppressed
    """

    def __init__(self, window: Optional[MaintenanceWindow] = None,
                 log: Optional[logging.Logger] = None,
                 fault_kinds: FrozenSet[FaultKind] = frozenset(FaultKind)) -> None:
        self.window = window or MaintenanceWindow()
        self.log = log or logger
        self.fault_kinds = fault_kinds

    def is_transient(self, error: BaseException) -> bool:
        return classify_fault(error) in self.fault_kinds

    def is_suppressed(self, error: BaseException, now: Optional[datetime] = None) -> bool:
        if not self.is_transient(error):
            return False
        return self.window.contains(now or datetime.now(timezone.utc))

    def handle(self, error: BaseException, now: Optional[datetime] = None) -> bool:
        """
        Log a fault at the appropriate level.

        Args:
            error: The fault that ended the run
            now: Current time (UTC now if None)

        Returns:
            True if the fault was suppressed and the run should end cleanly
        """
        if self.is_suppressed(error, now):
            self.log.info(f"Network fault during maintenance window ({self.window}): {error}")
            return True

        if isinstance(error, TransientNetworkFault):
            self.log.error(f"Gateway unavailable: {error}")
        else:
            self.log.error(f"Recording failed: {error}", exc_info=error)
        return False
