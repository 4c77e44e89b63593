"""
FleetPulse - Fleet Monitor

This module ties the analytics core, the backend and the tracking layer
together. FleetMonitor is the single object a dashboard or a driver app
holds on to:

    - analyze_trip(): stops and speed summary for a stored trip
    - process_position(): geofence evaluation for a live position, sealing
      a GEOFENCE_VIOLATION event on entry
    - log_security_event(): seal and append any security event (SOS,
      fatigue alerts)
    - safety_report(): the fleet safety index and dashboard figures
    - trip_history(): past trips visible to the signed-in user
    - start_tracking() / fatigue_monitor(): live sessions wired back into
      the monitor

Geofence evaluation for one vehicle is serialized with a per-vehicle lock,
so two positions of the same vehicle can never both observe "outside" and
both raise a violation. Different vehicles are evaluated concurrently.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
import logging

from .config import FleetPulseConfig, get_config
from .core.geofence import GeofenceCheck, GeofenceEvaluator
from .core.safety import build_safety_report
from .core.trips import analyze_trip as summarize_samples, validate_sample
from .integrity import seal_event
from .models import (
    EventType,
    GeoPoint,
    Geofence,
    PositionSample,
    SafetyReport,
    SecurityEvent,
    Severity,
    Trip,
    TripSummary,
    UserProfile,
    UserRole,
)
from .backend.geofence_state import (
    GeofenceStateStore,
    InMemoryGeofenceStateStore,
    RedisGeofenceStateStore,
)
from .backend.store import TelemetryStore
from .tracking.fatigue import FatigueMonitor
from .tracking.gps import GeolocationProvider, TrackingSession


logger = logging.getLogger(__name__)


class FleetMonitor:
    """
    The FleetPulse orchestrator.

    Example:
        monitor = FleetMonitor(store, geofences=[quarry_zone], user_id=session.user_id)

        summary = await monitor.analyze_trip(trip_id)
        check = await monitor.process_position("veh-1", sample)
        report = await monitor.safety_report()
    """

    def __init__(
        self,
        store: TelemetryStore,
        geofences: Optional[Iterable[Geofence]] = None,
        state_store: Optional[GeofenceStateStore] = None,
        config: Optional[FleetPulseConfig] = None,
        user_id: Optional[str] = None,
    ):
        """
        Initialize the monitor.

        Args:
            store: Telemetry data access
            geofences: Initial geofences
            state_store: Per-vehicle geofence state (Redis when
                config.redis.enabled, in-memory otherwise)
            config: Configuration (global configuration if not provided)
            user_id: Signed-in user recorded on sealed events
        """
        self._store = store
        self._config = config or get_config()
        self._evaluator = GeofenceEvaluator(geofences)
        if state_store is None:
            if self._config.redis.enabled:
                state_store = RedisGeofenceStateStore(self._config.redis)
            else:
                state_store = InMemoryGeofenceStateStore()
        self._state_store = state_store
        self._user_id = user_id

        # Locks live only while a position of that vehicle is being evaluated
        self._vehicle_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def store(self) -> TelemetryStore:
        return self._store

    @property
    def state_store(self) -> GeofenceStateStore:
        return self._state_store

    @property
    def evaluator(self) -> GeofenceEvaluator:
        return self._evaluator

    def add_geofence(self, geofence: Geofence) -> None:
        self._evaluator.add_geofence(geofence)

    async def close(self) -> None:
        """Clean up resources."""
        await self._state_store.close()
        await self._store.close()

    # =========================================================================
    # TRIP ANALYSIS
    # =========================================================================

    async def analyze_trip(
        self, trip_id: str, include_trailing_stop: bool = False
    ) -> TripSummary:
        """
        Fetch a trip's samples and summarize them.

        Raises:
            BackendConnectionError: If the samples could not be read
        """
        samples = await self._store.fetch_samples(trip_id)
        summary = summarize_samples(
            samples,
            self._config.analytics.min_stop_duration_ms,
            include_trailing_stop=include_trailing_stop,
        )
        logger.info(
            f"Trip {trip_id}: {summary.sample_count} samples, "
            f"max={summary.max_speed_kmh:.1f} avg={summary.avg_speed_kmh:.1f} km/h, "
            f"{len(summary.stops)} stops"
        )
        return summary

    # =========================================================================
    # SECURITY EVENTS
    # =========================================================================

    async def log_security_event(
        self,
        event_type: EventType,
        severity: Severity,
        vehicle_id: Optional[str] = None,
        location: Optional[GeoPoint] = None,
        details: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> SecurityEvent:
        """Seal a new security event and append it to the store."""
        event = seal_event(
            event_type,
            severity,
            user_id=self._user_id,
            vehicle_id=vehicle_id,
            location=location,
            details=details,
            timestamp=timestamp,
        )
        stored = await self._store.append_event(event)
        logger.info(
            f"Security event {stored.type.value} ({stored.severity.value}) "
            f"logged for vehicle {vehicle_id or '-'}"
        )
        return stored

    async def process_position(
        self, vehicle_id: str, sample: PositionSample
    ) -> GeofenceCheck:
        """
        Evaluate one live position against the geofences.

        On entry into a geofence a GEOFENCE_VIOLATION (severity high) is
        sealed and appended before the new state is remembered, so a failed
        append is retried on the next position.

        Raises:
            DataError: If the sample is malformed
            BackendConnectionError: If the event or state could not be stored
        """
        validate_sample(sample)
        lock = self._vehicle_locks.setdefault(vehicle_id, asyncio.Lock())
        self._lock_users[vehicle_id] = self._lock_users.get(vehicle_id, 0) + 1
        try:
            async with lock:
                return await self._evaluate_position(vehicle_id, sample)
        finally:
            self._lock_users[vehicle_id] -= 1
            if not self._lock_users[vehicle_id]:
                del self._lock_users[vehicle_id]
                del self._vehicle_locks[vehicle_id]

    async def _evaluate_position(
        self, vehicle_id: str, sample: PositionSample
    ) -> GeofenceCheck:
        state = await self._state_store.get(vehicle_id)
        check = self._evaluator.evaluate(state, sample.lat, sample.lng)

        if check.entered is not None:
            geofence = check.entered
            logger.warning(
                f"Vehicle {vehicle_id} entered geofence {geofence.id} '{geofence.name}'"
            )
            await self.log_security_event(
                EventType.GEOFENCE_VIOLATION,
                Severity.HIGH,
                vehicle_id=vehicle_id,
                location=sample.location,
                timestamp=sample.captured_at,
                details={
                    "geofence_id": geofence.id,
                    "geofence_name": geofence.name,
                    "risk_level": geofence.risk_level.value,
                    "location": {"lat": sample.lat, "lng": sample.lng},
                },
            )
        elif check.exited_id is not None:
            logger.info(f"Vehicle {vehicle_id} left geofence {check.exited_id}")

        if check.state != state:
            await self._state_store.set(vehicle_id, check.state)

        return check

    async def on_sample(self, vehicle_id: str, sample: PositionSample) -> None:
        """Sample callback for tracking sessions."""
        await self.process_position(vehicle_id, sample)

    async def on_fatigue_alert(self, driver_id: str, level: float) -> None:
        """Alert callback for fatigue monitors."""
        await self.log_security_event(
            EventType.FATIGUE_ALERT,
            Severity.MEDIUM,
            details={"level": round(level, 1), "driver_id": driver_id},
        )

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def safety_report(
        self,
        company_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SafetyReport:
        """
        Build the fleet safety report over the configured window.

        Args:
            company_id: Restrict vehicles (and their events) to one company
            now: Reference time (defaults to current UTC time)
        """
        now = now or datetime.now(timezone.utc)
        analytics = self._config.analytics
        since = now - timedelta(days=analytics.report_window_days)

        events = await self._store.fetch_security_events(since, now)
        vehicles = await self._store.fetch_vehicles(company_id)
        report = build_safety_report(
            events,
            vehicles,
            now=now,
            config=analytics,
            restrict_to_fleet=company_id is not None,
        )
        logger.info(
            f"Safety index {report.safety_index} "
            f"({report.event_count} events, {report.active_vehicles} active vehicles)"
        )
        return report

    async def trip_history(self, caller: UserProfile) -> List[Trip]:
        """
        List the trips visible to the caller, most recent first.

        Admins see every company's trips; everyone else sees their own
        company, or only their own trips when they have no company.
        """
        if caller.role == UserRole.ADMIN:
            return await self._store.fetch_trips()
        if caller.company_id:
            return await self._store.fetch_trips(company_id=caller.company_id)
        return await self._store.fetch_trips(driver_id=caller.id)

    # =========================================================================
    # LIVE SESSIONS
    # =========================================================================

    async def start_tracking(
        self,
        provider: GeolocationProvider,
        driver: UserProfile,
        plate: str,
        vehicle_id: Optional[str] = None,
    ) -> TrackingSession:
        """Start a tracking session whose samples feed process_position()."""
        session = TrackingSession(
            self._store,
            provider,
            driver,
            plate,
            vehicle_id=vehicle_id,
            config=self._config.gps,
            analytics=self._config.analytics,
            on_sample=self.on_sample,
        )
        await session.start()
        return session

    def fatigue_monitor(
        self, driver_id: str, rng: Optional[random.Random] = None
    ) -> FatigueMonitor:
        """Create a fatigue monitor whose alerts are sealed as events."""
        return FatigueMonitor(
            driver_id,
            config=self._config.fatigue,
            on_alert=self.on_fatigue_alert,
            rng=rng,
        )


async def analyze_trip(
    trip_id: str,
    store: TelemetryStore,
    config: Optional[FleetPulseConfig] = None,
) -> TripSummary:
    """
    Convenience function to analyze one stored trip.

    Example:
        summary = await analyze_trip(trip_id, SupabaseTelemetryStore(config.backend))
        for stop in summary.stops:
            print(stop.started_at, stop.duration_seconds)
    """
    monitor = FleetMonitor(store, config=config)
    return await monitor.analyze_trip(trip_id)
