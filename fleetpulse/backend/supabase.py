"""
FleetPulse Supabase Telemetry Store

Production TelemetryStore backed by the hosted Supabase project, spoken to
over its PostgREST interface (``/rest/v1``) with httpx.

Row-level security on the backend scopes every read and write to the
signed-in user's company, so the store simply forwards the user's access
token. Rows that cannot be mapped are logged and skipped rather than
failing the whole read.

Requirements:
    - SUPABASE_URL and SUPABASE_ANON_KEY (see BackendConfig)
    - An access token from SupabaseAuthClient for RLS-protected tables
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import httpx

from ..config import BackendConfig
from ..errors import BackendConnectionError, FleetPulseError
from ..models import (
    PositionSample,
    SecurityEvent,
    Trip,
    TripStatus,
    TripSummary,
    Vehicle,
    utcnow,
)
from .http import BackendHttpClient
from .rows import (
    event_to_row,
    map_rows,
    row_to_event,
    row_to_sample,
    row_to_trip,
    row_to_vehicle,
    sample_to_row,
    summary_to_trip_update,
    trip_to_row,
)
from .store import TelemetryStore


logger = logging.getLogger(__name__)


RETURN_REPRESENTATION = {"Prefer": "return=representation"}


class SupabaseTelemetryStore(TelemetryStore):
    """
    TelemetryStore over Supabase PostgREST.

    Example:
        store = SupabaseTelemetryStore(config, access_token=session.access_token)
        samples = await store.fetch_samples(trip_id)
        await store.close()
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the store.

        Args:
            config: Backend configuration
            access_token: Bearer token of the signed-in user
            transport: Optional httpx transport (for testing)
        """
        self._config = config or BackendConfig()
        self._http = BackendHttpClient(
            self._config.rest_url,
            self._config,
            access_token=access_token,
            transport=transport,
        )

    def set_access_token(self, token: Optional[str]) -> None:
        self._http.set_access_token(token)

    async def close(self) -> None:
        await self._http.close()

    def _path(self, table: str) -> str:
        return f"/{table}"

    async def _select(self, table: str, params: Any) -> List[Dict[str, Any]]:
        rows = await self._http.request_json("GET", self._path(table), params=params)
        return rows or []

    async def fetch_samples(self, trip_id: str) -> List[PositionSample]:
        rows = await self._select(
            self._config.samples_table,
            {"select": "*", "trip_id": f"eq.{trip_id}", "order": "created_at.asc"},
        )
        samples = map_rows(rows, row_to_sample)
        logger.debug(f"Fetched {len(samples)}/{len(rows)} samples for trip {trip_id}")
        return samples

    async def append_sample(
        self,
        trip_id: str,
        sample: PositionSample,
        company_id: Optional[str] = None,
    ) -> None:
        await self._http.request(
            "POST",
            self._path(self._config.samples_table),
            json=sample_to_row(trip_id, sample, company_id),
        )

    async def append_event(self, event: SecurityEvent) -> SecurityEvent:
        rows = await self._http.request_json(
            "POST",
            self._path(self._config.events_table),
            json=event_to_row(event),
            headers=RETURN_REPRESENTATION,
        )
        if rows:
            stored_id = rows[0].get("id")
            if stored_id:
                event = event.model_copy(update={"id": str(stored_id)})
        logger.info(
            f"Security event {event.type.value}/{event.severity.value} stored as {event.id}"
        )
        return event

    async def fetch_security_events(
        self,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[SecurityEvent]:
        params = [
            ("select", "*"),
            ("timestamp", f"gte.{since.isoformat()}"),
            ("order", "timestamp.asc"),
        ]
        if until is not None:
            params.append(("timestamp", f"lt.{until.isoformat()}"))
        rows = await self._select(self._config.events_table, params)
        return map_rows(rows, row_to_event)

    async def fetch_vehicles(self, company_id: Optional[str] = None) -> List[Vehicle]:
        params = {"select": "*"}
        if company_id:
            params["company_id"] = f"eq.{company_id}"
        rows = await self._select(self._config.vehicles_table, params)
        return map_rows(rows, row_to_vehicle)

    async def create_trip(self, trip: Trip) -> Trip:
        rows = await self._http.request_json(
            "POST",
            self._path(self._config.trips_table),
            json=trip_to_row(trip),
            headers=RETURN_REPRESENTATION,
        )
        if not rows:
            raise BackendConnectionError("Trip insert returned no row")
        stored = row_to_trip(rows[0])
        logger.info(f"Trip {stored.id} started for driver {stored.driver_id}")
        return stored

    async def finish_trip(
        self,
        trip_id: str,
        summary: TripSummary,
        ended_at: Optional[datetime] = None,
    ) -> None:
        update = {
            "end_time": (ended_at or utcnow()).isoformat(),
            "status": TripStatus.FINISHED.value,
            **summary_to_trip_update(summary),
        }
        await self._http.request(
            "PATCH",
            self._path(self._config.trips_table),
            params={"id": f"eq.{trip_id}"},
            json=update,
            retry=True,
        )
        logger.info(f"Trip {trip_id} finished")

    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        rows = await self._select(
            self._config.trips_table, {"select": "*", "id": f"eq.{trip_id}"}
        )
        trips = map_rows(rows, row_to_trip)
        return trips[0] if trips else None

    async def fetch_trips(
        self,
        company_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> List[Trip]:
        params = {"select": "*", "order": "start_time.desc"}
        if company_id:
            params["company_id"] = f"eq.{company_id}"
        if driver_id:
            params["driver_id"] = f"eq.{driver_id}"
        rows = await self._select(self._config.trips_table, params)
        return map_rows(rows, row_to_trip)

    async def health_check(self) -> bool:
        try:
            await self._select(
                self._config.vehicles_table, {"select": "id", "limit": "1"}
            )
            return True
        except FleetPulseError as e:
            logger.warning(f"Backend health check failed: {e}")
            return False
