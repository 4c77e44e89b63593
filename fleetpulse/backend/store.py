"""
FleetPulse Telemetry Store Interface

The analytics core never talks to a particular backend. It depends on the
TelemetryStore capability defined here, which is satisfied by:
    - InMemoryTelemetryStore: development, demos and tests
    - SupabaseTelemetryStore: the hosted PostgREST backend (supabase.py)

Contract:
    - Position samples are append-only and returned ordered by capture time
    - Security events are append-only; the store never alters the seal
    - Reads return fresh lists (callers may treat them as snapshots)

Example:
    store = InMemoryTelemetryStore()
    await store.append_sample(trip.id, sample)
    samples = await store.fetch_samples(trip.id)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
import logging

from ..errors import BackendConnectionError
from ..models import (
    PositionSample,
    SecurityEvent,
    Trip,
    TripStatus,
    TripSummary,
    Vehicle,
    utcnow,
)


logger = logging.getLogger(__name__)


class TelemetryStore(ABC):
    """
    Abstract data-access interface for trips, samples, events and vehicles.

    All methods may raise BackendConnectionError when the backend is
    unreachable and AuthError when the session is not allowed to act.
    """

    @abstractmethod
    async def fetch_samples(self, trip_id: str) -> List[PositionSample]:
        """
        Read all position samples of a trip.

        Returns:
            Samples ordered by captured_at ascending
        """
        pass

    @abstractmethod
    async def append_sample(
        self,
        trip_id: str,
        sample: PositionSample,
        company_id: Optional[str] = None,
    ) -> None:
        """Append one position sample to a trip's log."""
        pass

    @abstractmethod
    async def append_event(self, event: SecurityEvent) -> SecurityEvent:
        """
        Append a sealed security event.

        Returns:
            The stored event (the backend may assign its id)
        """
        pass

    @abstractmethod
    async def fetch_security_events(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        """
        Read security events in [since, until).

        Returns:
            Events ordered by timestamp ascending
        """
        pass

    @abstractmethod
    async def fetch_vehicles(self, company_id: Optional[str] = None) -> List[Vehicle]:
        """Read the fleet, optionally restricted to one company."""
        pass

    @abstractmethod
    async def create_trip(self, trip: Trip) -> Trip:
        """Persist a new in-progress trip and return the stored record."""
        pass

    @abstractmethod
    async def finish_trip(
        self,
        trip_id: str,
        summary: TripSummary,
        ended_at: Optional[datetime] = None,
    ) -> None:
        """Mark a trip finished and store its speed summary."""
        pass

    @abstractmethod
    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        """Read one trip, or None if it does not exist."""
        pass

    @abstractmethod
    async def fetch_trips(
        self,
        company_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[Trip]:
        """
        Read trip history, optionally restricted to one company or driver.

        Returns:
            Trips ordered by start_time descending (most recent first)
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is available.

        Returns:
            True if healthy, False otherwise
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


class InMemoryTelemetryStore(TelemetryStore):
    """
    Process-local TelemetryStore.

    Behaves like the hosted backend for ordering and append-only semantics,
    and can simulate an outage so callers' error paths can be exercised.
    """

    def __init__(self):
        self._samples: Dict[str, List[PositionSample]] = {}
        self._events: List[SecurityEvent] = []
        self._vehicles: Dict[str, Vehicle] = {}
        self._trips: Dict[str, Trip] = {}
        self._lock = asyncio.Lock()
        self._available = True

    def set_available(self, available: bool) -> None:
        """Simulate the backend going down (False) or coming back (True)."""
        self._available = available

    def _ensure_available(self) -> None:
        if not self._available:
            raise BackendConnectionError("In-memory backend marked unavailable")

    def add_vehicle(self, vehicle: Vehicle) -> None:
        """Register or replace a vehicle (mirrors a realtime UPDATE)."""
        self._vehicles[vehicle.id] = vehicle

    @property
    def events(self) -> List[SecurityEvent]:
        return list(self._events)

    async def fetch_samples(self, trip_id: str) -> List[PositionSample]:
        self._ensure_available()
        samples = self._samples.get(trip_id, [])
        return sorted(samples, key=lambda s: s.captured_at)

    async def append_sample(
        self,
        trip_id: str,
        sample: PositionSample,
        company_id: Optional[str] = None,
    ) -> None:
        self._ensure_available()
        async with self._lock:
            self._samples.setdefault(trip_id, []).append(sample)

    async def append_event(self, event: SecurityEvent) -> SecurityEvent:
        self._ensure_available()
        async with self._lock:
            self._events.append(event)
        logger.debug(f"Stored {event.type.value} event {event.id}")
        return event

    async def fetch_security_events(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        self._ensure_available()
        selected = [
            e for e in self._events
            if e.timestamp >= since and (until is None or e.timestamp < until)
        ]
        return sorted(selected, key=lambda e: e.timestamp)

    async def fetch_vehicles(self, company_id: Optional[str] = None) -> List[Vehicle]:
        self._ensure_available()
        return [
            v for v in self._vehicles.values()
            if company_id is None or v.company_id == company_id
        ]

    async def create_trip(self, trip: Trip) -> Trip:
        self._ensure_available()
        self._trips[trip.id] = trip
        logger.info(f"Trip {trip.id} started for driver {trip.driver_id}")
        return trip

    async def finish_trip(
        self,
        trip_id: str,
        summary: TripSummary,
        ended_at: Optional[datetime] = None,
    ) -> None:
        self._ensure_available()
        trip = self._trips.get(trip_id)
        if trip is None:
            logger.warning(f"Cannot finish unknown trip {trip_id}")
            return
        self._trips[trip_id] = trip.model_copy(update={
            "end_time": ended_at or utcnow(),
            "status": TripStatus.FINISHED,
            "max_speed": summary.max_speed_kmh,
            "avg_speed": summary.avg_speed_kmh,
        })

    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        self._ensure_available()
        return self._trips.get(trip_id)

    async def fetch_trips(
        self,
        company_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[Trip]:
        self._ensure_available()
        trips = [
            t for t in self._trips.values()
            if (company_id is None or t.company_id == company_id)
            and (driver_id is None or t.driver_id == driver_id)
        ]
        return sorted(trips, key=lambda t: t.start_time, reverse=True)

    async def health_check(self) -> bool:
        return self._available
