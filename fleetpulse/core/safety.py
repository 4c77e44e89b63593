"""
FleetPulse Safety Scoring

Turns a window of security events into the fleet safety index and the
supporting report figures shown on the analytics dashboard.

Safety Index Formula:
    penalty = sum(weight(event.severity))
    index   = max(0, round(100 - penalty / max(active_vehicles, 1)))

    Weights: critical = 5, high = 2, medium = 0.5, low = 0, info = 0

    With no active vehicles the penalty is divided by 1 rather than 0, so
    the index degrades instead of becoming NaN. The result is never above
    100 because penalties are never negative.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence
import logging

from ..config import AnalyticsConfig
from ..models import (
    EventType,
    IncidentCount,
    SafetyReport,
    SecurityEvent,
    Severity,
    Vehicle,
)


logger = logging.getLogger(__name__)


DEFAULT_SEVERITY_WEIGHTS: Dict[str, float] = {
    Severity.CRITICAL.value: 5.0,
    Severity.HIGH.value: 2.0,
    Severity.MEDIUM.value: 0.5,
    Severity.LOW.value: 0.0,
    Severity.INFO.value: 0.0,
}

# Sunday first, matching the dashboard's weekly chart
WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def severity_weight(
    severity: Severity, weights: Optional[Dict[str, float]] = None
) -> float:
    """Penalty contributed by one event of the given severity."""
    weights = weights or DEFAULT_SEVERITY_WEIGHTS
    return weights.get(Severity(severity).value, 0.0)


def compute_penalty(
    events: Iterable[SecurityEvent], weights: Optional[Dict[str, float]] = None
) -> float:
    """Sum of severity weights over the events."""
    return sum(severity_weight(event.severity, weights) for event in events)


def compute_safety_index(
    events: Iterable[SecurityEvent],
    active_vehicle_count: int,
    weights: Optional[Dict[str, float]] = None,
) -> int:
    """
    Compute the 0-100 safety index.

    Args:
        events: Security events in the reporting window
        active_vehicle_count: Vehicles currently online or in warning
        weights: Severity weights (defaults to DEFAULT_SEVERITY_WEIGHTS)

    Returns:
        Integer index, clamped below at 0
    """
    penalty = compute_penalty(events, weights)
    divisor = max(active_vehicle_count, 1)
    return max(0, _round_half_up(100 - penalty / divisor))


def count_active_vehicles(vehicles: Iterable[Vehicle]) -> int:
    return sum(1 for vehicle in vehicles if vehicle.status.is_active)


def filter_relevant_events(
    events: Iterable[SecurityEvent],
    vehicle_ids: Optional[Iterable[str]] = None,
) -> List[SecurityEvent]:
    """
    Keep the events belonging to the viewed fleet.

    Events without a vehicle are always kept. ``None`` means no fleet
    filter is applied.
    """
    if vehicle_ids is None:
        return list(events)
    allowed = set(vehicle_ids)
    return [e for e in events if not e.vehicle_id or e.vehicle_id in allowed]


def events_since(
    events: Iterable[SecurityEvent], since: datetime
) -> List[SecurityEvent]:
    return [e for e in events if e.timestamp >= since]


def count_critical(events: Iterable[SecurityEvent], since: datetime) -> int:
    """Critical or SOS events strictly after ``since``."""
    return sum(
        1
        for e in events
        if (e.severity == Severity.CRITICAL or e.type == EventType.SOS)
        and e.timestamp > since
    )


def count_geofence_violations(events: Iterable[SecurityEvent]) -> int:
    return sum(1 for e in events if e.type == EventType.GEOFENCE_VIOLATION)


def fatigue_trend(events: Iterable[SecurityEvent]) -> Dict[str, int]:
    """Fatigue alerts per weekday, Sunday first."""
    counts = {day: 0 for day in WEEKDAYS}
    for event in events:
        if event.type == EventType.FATIGUE_ALERT:
            counts[WEEKDAYS[event.timestamp.isoweekday() % 7]] += 1
    return counts


def top_incidents(
    events: Iterable[SecurityEvent], limit: int = 5
) -> List[IncidentCount]:
    """Vehicles with the most events, most first."""
    counter = Counter(e.vehicle_id for e in events if e.vehicle_id)
    return [
        IncidentCount(vehicle_id=vehicle_id, count=count)
        for vehicle_id, count in counter.most_common(limit)
    ]


def build_safety_report(
    events: Sequence[SecurityEvent],
    vehicles: Sequence[Vehicle],
    now: Optional[datetime] = None,
    config: Optional[AnalyticsConfig] = None,
    restrict_to_fleet: bool = False,
) -> SafetyReport:
    """
    Build the dashboard safety report for one window.

    Args:
        events: Security events (anything older than the window is ignored)
        vehicles: The viewed fleet
        now: Reference time (defaults to current UTC time)
        config: Analytics configuration
        restrict_to_fleet: Drop events attributed to vehicles outside
            ``vehicles``

    Returns:
        SafetyReport for the window ending at ``now``
    """
    config = config or AnalyticsConfig()
    now = now or datetime.now(timezone.utc)
    window_start = now - timedelta(days=config.report_window_days)

    relevant = filter_relevant_events(
        events_since(events, window_start),
        [v.id for v in vehicles] if restrict_to_fleet else None,
    )
    active = count_active_vehicles(vehicles)
    index = compute_safety_index(relevant, active, config.severity_weights)

    logger.debug(
        f"Safety index {index} from {len(relevant)} events over {active} active vehicles"
    )

    return SafetyReport(
        safety_index=index,
        active_vehicles=active,
        event_count=len(relevant),
        critical_last_24h=count_critical(
            relevant, now - timedelta(hours=config.critical_window_hours)
        ),
        geofence_violations=count_geofence_violations(relevant),
        fatigue_trend=fatigue_trend(relevant),
        top_incidents=top_incidents(relevant, config.top_incidents_limit),
        window_start=window_start,
        generated_at=now,
    )
