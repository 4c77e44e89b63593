"""
FleetPulse Realtime Snapshot Refresher

Backend change notifications are treated purely as triggers: the payload is
never merged into local state. Instead the affected snapshot (vehicles or
security events) is refetched from the TelemetryStore. A burst of
notifications for the same table collapses into at most one refetch in
flight plus one follow-up.

An INSERT on the security events table additionally raises an operator
Alert when the event is critical or high severity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
import logging

from ..config import AnalyticsConfig, BackendConfig
from ..errors import BackendConnectionError, DataError
from ..models import Alert, EventType, SecurityEvent, Severity, Vehicle, utcnow
from .rows import row_to_event
from .store import TelemetryStore


logger = logging.getLogger(__name__)


VEHICLES = "vehicles"
EVENTS = "events"

ALERT_SEVERITIES = (Severity.CRITICAL, Severity.HIGH)

ALERT_TYPES = {
    EventType.SOS: "sos",
    EventType.GEOFENCE_VIOLATION: "geofence",
    EventType.FATIGUE_ALERT: "fatigue",
}


@dataclass(frozen=True)
class RealtimeNotification:
    """A row change pushed by the backend."""
    table: str
    event: str  # INSERT, UPDATE or DELETE
    record: Dict[str, Any] = field(default_factory=dict)


def alert_for_event(event: SecurityEvent) -> Optional[Alert]:
    """Build the operator alert for an event, or None below high severity."""
    if event.severity not in ALERT_SEVERITIES:
        return None
    return Alert(
        id=f"alert-{event.id}",
        vehicle_id=event.vehicle_id or "unknown",
        type=ALERT_TYPES.get(event.type, event.type.value.lower()),
        severity=event.severity,
        timestamp=event.timestamp,
    )


class SnapshotRefresher:
    """
    Keeps vehicle and event snapshots fresh in response to notifications.

    Example:
        refresher = SnapshotRefresher(store, on_alert=notify_operator)
        await refresher.refresh_all()
        await refresher.handle(RealtimeNotification("vehicles", "UPDATE", row))
    """

    def __init__(
        self,
        store: TelemetryStore,
        backend: Optional[BackendConfig] = None,
        analytics: Optional[AnalyticsConfig] = None,
        company_id: Optional[str] = None,
        on_alert: Optional[Callable[[Alert], Awaitable[None]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._backend = backend or BackendConfig()
        self._analytics = analytics or AnalyticsConfig()
        self._company_id = company_id
        self._on_alert = on_alert
        self._clock = clock

        self._vehicles: Tuple[Vehicle, ...] = ()
        self._events: Tuple[SecurityEvent, ...] = ()
        self._alerts: List[Alert] = []

        self._in_flight: Set[str] = set()
        self._pending: Set[str] = set()
        self.refresh_counts: Dict[str, int] = {VEHICLES: 0, EVENTS: 0}

    @property
    def vehicles(self) -> Tuple[Vehicle, ...]:
        return self._vehicles

    @property
    def events(self) -> Tuple[SecurityEvent, ...]:
        return self._events

    @property
    def alerts(self) -> List[Alert]:
        return list(self._alerts)

    def _snapshot_for(self, table: str) -> Optional[str]:
        if table == self._backend.vehicles_table:
            return VEHICLES
        if table == self._backend.events_table:
            return EVENTS
        return None

    async def handle(self, notification: RealtimeNotification) -> None:
        """Process one backend notification."""
        kind = self._snapshot_for(notification.table)
        if kind is None:
            logger.debug(f"Ignoring notification for table {notification.table}")
            return

        if kind == EVENTS and notification.event.upper() == "INSERT":
            await self._raise_alert(notification.record)

        await self._schedule(kind)

    async def refresh_all(self) -> None:
        """Refetch every snapshot."""
        await self._schedule(VEHICLES)
        await self._schedule(EVENTS)

    async def _schedule(self, kind: str) -> None:
        if kind in self._in_flight:
            self._pending.add(kind)
            return

        self._in_flight.add(kind)
        try:
            while True:
                self._pending.discard(kind)
                await self._refresh(kind)
                if kind not in self._pending:
                    break
        finally:
            self._in_flight.discard(kind)

    async def _refresh(self, kind: str) -> None:
        self.refresh_counts[kind] += 1
        try:
            if kind == VEHICLES:
                vehicles = await self._store.fetch_vehicles(self._company_id)
                self._vehicles = tuple(vehicles)
                logger.debug(f"Vehicle snapshot refreshed ({len(vehicles)} vehicles)")
            else:
                since = self._clock() - timedelta(days=self._analytics.report_window_days)
                events = await self._store.fetch_security_events(since)
                self._events = tuple(events)
                logger.debug(f"Event snapshot refreshed ({len(events)} events)")
        except BackendConnectionError as e:
            logger.warning(f"Snapshot refresh of {kind} failed, keeping previous: {e}")

    async def _raise_alert(self, record: Dict[str, Any]) -> None:
        try:
            event = row_to_event(record)
        except DataError as e:
            logger.warning(f"Cannot build alert from notification: {e}")
            return

        alert = alert_for_event(event)
        if alert is None:
            return

        self._alerts.insert(0, alert)
        logger.warning(
            f"ALERT {alert.type} ({alert.severity.value}) for vehicle {alert.vehicle_id}"
        )
        if self._on_alert is not None:
            await self._on_alert(alert)
