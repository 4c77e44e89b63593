"""
Backend row mapping.

Converts PostgREST rows (snake_case columns, ISO timestamps, nullable
numerics) to FleetPulse models and back. Any row that cannot be mapped
raises DataError so callers can skip it.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar
import logging

from pydantic import ValidationError

from ..errors import DataError
from ..models import (
    GeoPoint,
    PositionSample,
    SecurityEvent,
    Trip,
    TripSummary,
    UserProfile,
    UserRole,
    Vehicle,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _mapped(kind: str, row: Dict[str, Any], build: Callable[[], T]) -> T:
    try:
        return build()
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise DataError(f"Malformed {kind} row: {e}", payload=row) from e


def map_rows(
    rows: Optional[Iterable[Dict[str, Any]]],
    mapper: Callable[[Dict[str, Any]], T],
) -> List[T]:
    """Map every row, logging and skipping the malformed ones."""
    result: List[T] = []
    for row in rows or []:
        try:
            result.append(mapper(row))
        except DataError as e:
            logger.warning(f"Skipping row: {e}")
    return result


def row_to_sample(row: Dict[str, Any]) -> PositionSample:
    return _mapped("position", row, lambda: PositionSample(
        lat=float(row["lat"]),
        lng=float(row["lng"]),
        speed_kmh=float(row.get("speed") or 0),
        captured_at=row["created_at"],
    ))


def sample_to_row(
    trip_id: str, sample: PositionSample, company_id: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "trip_id": trip_id,
        "lat": sample.lat,
        "lng": sample.lng,
        "speed": sample.speed_kmh,
        "created_at": sample.captured_at.isoformat(),
        "company_id": company_id,
    }


def row_to_event(row: Dict[str, Any]) -> SecurityEvent:
    def build() -> SecurityEvent:
        location = row.get("location")
        return SecurityEvent(
            id=str(row["id"]),
            type=row["type"],
            severity=row["severity"],
            user_id=row.get("user_id"),
            vehicle_id=row.get("vehicle_id"),
            timestamp=row["timestamp"],
            location=GeoPoint(**location) if location else None,
            details=row.get("details") or {},
            integrity_hash=row["legal_hash"],
        )
    return _mapped("security event", row, build)


def event_to_row(event: SecurityEvent) -> Dict[str, Any]:
    return {
        "user_id": event.user_id,
        "vehicle_id": event.vehicle_id,
        "type": event.type.value,
        "severity": event.severity.value,
        "location": event.location.model_dump() if event.location else None,
        "timestamp": event.timestamp.isoformat(),
        "legal_hash": event.integrity_hash,
        "details": event.details,
    }


def row_to_vehicle(row: Dict[str, Any]) -> Vehicle:
    return _mapped("vehicle", row, lambda: Vehicle(
        id=str(row["id"]),
        plate=row["plate"],
        status=row.get("status") or "offline",
        lat=row.get("lat") or 0.0,
        lng=row.get("lng") or 0.0,
        speed=row.get("speed") or 0.0,
        heading=row.get("heading") or 0.0,
        last_update=row.get("last_update"),
        battery_level=row.get("battery_level"),
        fatigue_level=row.get("fatigue_level"),
        company_id=row.get("company_id"),
    ))


def row_to_trip(row: Dict[str, Any]) -> Trip:
    return _mapped("trip", row, lambda: Trip(
        id=str(row["id"]),
        plate=row["plate"],
        vehicle_id=str(row["vehicle_id"]),
        driver_id=str(row["driver_id"]),
        driver_name=row.get("driver_name"),
        company_id=row.get("company_id"),
        start_time=row["start_time"],
        end_time=row.get("end_time"),
        status=row.get("status") or "en_curso",
        max_speed=row.get("max_speed") or 0.0,
        avg_speed=row.get("avg_speed") or 0.0,
    ))


def trip_to_row(trip: Trip) -> Dict[str, Any]:
    return {
        "plate": trip.plate,
        "vehicle_id": trip.vehicle_id,
        "driver_id": trip.driver_id,
        "driver_name": trip.driver_name,
        "company_id": trip.company_id,
        "status": trip.status.value,
        "start_time": trip.start_time.isoformat(),
    }


def summary_to_trip_update(summary: TripSummary) -> Dict[str, Any]:
    return {
        "max_speed": round(summary.max_speed_kmh, 1),
        "avg_speed": round(summary.avg_speed_kmh, 1),
    }


def row_to_profile(row: Dict[str, Any]) -> UserProfile:
    return _mapped("profile", row, lambda: UserProfile(
        id=str(row["id"]),
        full_name=row.get("full_name"),
        email=row.get("email"),
        company_id=row.get("company_id"),
        role=normalize_role(row.get("role")),
    ))


def normalize_role(value: Optional[str]) -> UserRole:
    """Unknown or missing roles fall back to the least privileged one."""
    try:
        return UserRole(value)
    except ValueError:
        return UserRole.CONDUCTOR
