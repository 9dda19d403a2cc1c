# SPDX-License-Identifier: MPL-2.0
"""
Recording pipeline for demand readings and phase transitions.

Each run produces one batch of three points: the demand reading, the end of
the active phase and the start of the next one. The batch is written to
InfluxDB in a single call, or only logged in dry-run mode.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Union

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from rainforest_recorder.eagle import DemandReading
from rainforest_recorder.schedule import PhaseWindow

logger = logging.getLogger(__name__)

DEMAND_SERIES = "demand"
VALUE_FIELD = "value"


@dataclass(frozen=True)
class TelemetryPoint:
    """
    A single time-series value.

    Attributes:
        series: Series (measurement) name
        value: Numeric reading or phase on/off flag
        timestamp: UTC epoch seconds
    """
    series: str
    value: Union[float, bool]
    timestamp: int

    def __str__(self) -> str:
        return f"{self.series}={self.value}@{self.timestamp}"


class TelemetryStore(Protocol):
    """Anything that can persist a batch of points in one call."""

    def write(self, points: Sequence[TelemetryPoint]) -> None:
        ...


def build_batch(reading: DemandReading, window: PhaseWindow, boundary: int) -> List[TelemetryPoint]:
    """
    Build the ordered batch for one run.

    Args:
        reading: Demand reading from the gateway
        window: Resolved schedule window
        boundary: UTC epoch seconds at which window.phase hands over to window.next_phase

    Returns:
        [demand, phase off at boundary, next phase on at boundary]
    """
    return [
        TelemetryPoint(DEMAND_SERIES, reading.value, reading.timestamp),
        TelemetryPoint(window.phase.value, False, boundary),
        TelemetryPoint(window.next_phase.value, True, boundary),
    ]


class InfluxStore:
    """
    InfluxDB 2.x store for telemetry points.

    Each point becomes a measurement named after its series with a single
    'value' field, at second precision. Rewriting a batch overwrites the
    same points.
    """

    def __init__(self, url: str, token: str, org: str, bucket: str, timeout: int = 10) -> None:
        self.url = url
        self.org = org
        self.bucket = bucket
        # influxdb-client expects the timeout in milliseconds
        self.client = InfluxDBClient(url=url, token=token, org=org, timeout=timeout * 1000)
        self.write_api = self.client.write_api(write_options=SYNCHRONOUS)

    @staticmethod
    def to_point(point: TelemetryPoint) -> Point:
        return (
            Point(point.series)
            .field(VALUE_FIELD, point.value)
            .time(point.timestamp, WritePrecision.S)
        )

    def write(self, points: Sequence[TelemetryPoint]) -> None:
        """Write all points in one request."""
        self.write_api.write(
            bucket=self.bucket,
            org=self.org,
            record=[self.to_point(p) for p in points],
            write_precision=WritePrecision.S,
        )
        logger.debug(f"Wrote {len(points)} points to {self.url} bucket {self.bucket}")

    def close(self) -> None:
        self.write_api.close()
        self.client.close()

    def __enter__(self) -> 'InfluxStore':
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class RecordingPipeline:
    """
    Builds the batch for a run and submits it to the store.

    Args:
        store: Destination for the batch; may be None in dry-run mode
        dry_run: Compute and log the batch but never call the store
        log: Logger to report the batch on (module logger by default)
    """

    def __init__(
        self,
        store: Optional[TelemetryStore],
        dry_run: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        if store is None and not dry_run:
            raise ValueError("A store is required unless running in dry-run mode")
        self.store = store
        self.dry_run = dry_run
        self.log = log or logger

    def record(self, reading: DemandReading, window: PhaseWindow, boundary: int) -> List[TelemetryPoint]:
        """
        Record a reading and the phase transition at the boundary.

        Returns:
            The batch that was written (or would have been, in dry-run mode)
        """
        points = build_batch(reading, window, boundary)
        batch = ", ".join(str(p) for p in points)

        if self.dry_run:
            self.log.info(f"Dry run, not writing: {batch}")
            return points

        assert self.store is not None
        self.store.write(points)
        self.log.info(f"Recorded: {batch}")
        return points
