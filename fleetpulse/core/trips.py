"""
FleetPulse Trip Analysis

Stop detection and speed aggregation over the position samples of a single
trip.

Both analyses run over a snapshot of their input (an immutable tuple taken
on entry), so a sample appended by the ingestion side while an analysis is
running can never be half-observed. Neither function keeps state between
calls: the same ordered sequence always yields the same result.

Stop definition:
    A stop is a maximal run of zero-speed samples. Its duration runs from
    the first zero-speed sample to the last one (not to the sample that
    ends the run). Only runs strictly longer than the threshold
    (120 000 ms by default) are reported, so idling at a light is not a
    stop. A run still open when the trip ends is not reported unless the
    caller asks for it with ``include_trailing=True``.

Example:
    summary = analyze_trip(samples)
    for stop in summary.stops:
        print(stop.started_at, stop.duration_seconds)
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple
import logging

from ..errors import DataError
from ..models import PositionSample, StopInterval, TripSummary


logger = logging.getLogger(__name__)


DEFAULT_MIN_STOP_DURATION_MS = 120_000


def snapshot(samples: Iterable[PositionSample]) -> Tuple[PositionSample, ...]:
    """Copy the input sequence so later appends cannot leak into an analysis."""
    return tuple(samples)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return (end - start) // timedelta(milliseconds=1)


def validate_sample(sample: PositionSample) -> PositionSample:
    """
    Check that a sample can take part in analysis.

    Raises:
        DataError: If coordinates are non-finite or outside WGS84 bounds,
            or the speed is not finite
    """
    if not (math.isfinite(sample.lat) and math.isfinite(sample.lng)):
        raise DataError(
            f"Non-finite coordinates ({sample.lat}, {sample.lng})", payload=sample
        )
    if not (-90.0 <= sample.lat <= 90.0 and -180.0 <= sample.lng <= 180.0):
        raise DataError(
            f"Coordinates out of range ({sample.lat}, {sample.lng})", payload=sample
        )
    if not math.isfinite(sample.speed_kmh):
        raise DataError(f"Non-finite speed {sample.speed_kmh}", payload=sample)
    return sample


def well_formed(samples: Sequence[PositionSample]) -> Iterator[PositionSample]:
    """Yield the valid samples, logging and skipping malformed ones."""
    for index, sample in enumerate(samples):
        try:
            yield validate_sample(sample)
        except DataError as e:
            logger.warning(f"Skipping malformed sample #{index}: {e}")


def detect_stops(
    samples: Iterable[PositionSample],
    min_duration_ms: int = DEFAULT_MIN_STOP_DURATION_MS,
    include_trailing: bool = False,
) -> List[StopInterval]:
    """
    Detect qualifying stops in one trip.

    Args:
        samples: Position samples ordered by captured_at ascending
        min_duration_ms: A stop must last strictly longer than this
        include_trailing: Close a run still open at the end of the sequence
            at the last sample instead of dropping it

    Returns:
        Stops in detection order (empty for empty input)
    """
    stops: List[StopInterval] = []
    open_stop: Optional[PositionSample] = None
    previous: Optional[PositionSample] = None

    def close(last: PositionSample) -> None:
        duration_ms = max(0, elapsed_ms(open_stop.captured_at, last.captured_at))
        if duration_ms > min_duration_ms:
            stops.append(
                StopInterval(
                    lat=open_stop.lat,
                    lng=open_stop.lng,
                    started_at=open_stop.captured_at,
                    duration_ms=duration_ms,
                )
            )
        else:
            logger.debug(
                f"Discarding {duration_ms}ms halt at {open_stop.location}"
            )

    for sample in well_formed(snapshot(samples)):
        if sample.speed_kmh == 0:
            if open_stop is None:
                open_stop = sample
        elif open_stop is not None:
            # The vehicle was stationary only through the previous sample
            close(previous)
            open_stop = None
        previous = sample

    if open_stop is not None:
        if include_trailing:
            close(previous)
        else:
            logger.debug(
                f"Unresolved stop at {open_stop.location} since "
                f"{open_stop.captured_at.isoformat()} left open at end of trip"
            )

    return stops


def aggregate_speeds(samples: Iterable[PositionSample]) -> Tuple[float, float, int]:
    """
    Compute (max speed, average speed, sample count).

    An empty trip yields (0.0, 0.0, 0) instead of failing, so a trip with
    no GPS fixes still renders a summary.
    """
    speeds = [sample.speed_kmh for sample in well_formed(snapshot(samples))]
    if not speeds:
        return 0.0, 0.0, 0
    return max(speeds), sum(speeds) / len(speeds), len(speeds)


def analyze_trip(
    samples: Iterable[PositionSample],
    min_stop_duration_ms: int = DEFAULT_MIN_STOP_DURATION_MS,
    include_trailing_stop: bool = False,
) -> TripSummary:
    """
    Build the full summary for one trip from a single snapshot.

    Args:
        samples: Position samples ordered by captured_at ascending
        min_stop_duration_ms: Stop threshold in milliseconds
        include_trailing_stop: See detect_stops

    Returns:
        TripSummary with speeds and stops
    """
    frozen = snapshot(samples)
    max_speed, avg_speed, count = aggregate_speeds(frozen)
    stops = detect_stops(
        frozen,
        min_duration_ms=min_stop_duration_ms,
        include_trailing=include_trailing_stop,
    )
    return TripSummary(
        max_speed_kmh=max_speed,
        avg_speed_kmh=avg_speed,
        sample_count=count,
        stops=stops,
    )
