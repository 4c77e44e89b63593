"""
FleetPulse Event Integrity Seal

Every security event is sealed once, at creation, with a SHA-256 digest
over its canonical fields. The seal is tamper evidence for audits: it is
stored alongside the event and only ever verified, never recomputed in
place.

Canonical form:
    JSON with sorted keys and compact separators over
    type, severity, user_id, vehicle_id, timestamp (ISO 8601), location
    and details. The event id is assigned by the backend and is not part
    of the seal.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import DataError
from .models import EventType, GeoPoint, SecurityEvent, Severity, utcnow


def canonical_fields(
    event_type: EventType,
    severity: Severity,
    timestamp: datetime,
    user_id: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    location: Optional[GeoPoint] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "type": EventType(event_type).value,
        "severity": Severity(severity).value,
        "user_id": user_id,
        "vehicle_id": vehicle_id,
        "timestamp": timestamp.isoformat(),
        "location": {"lat": location.lat, "lng": location.lng} if location else None,
        "details": details or {},
    }


def compute_integrity_hash(fields: Dict[str, Any]) -> str:
    """
    Digest the canonical fields.

    Raises:
        DataError: If the details are not JSON serializable
    """
    try:
        payload = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise DataError(f"Event is not serializable for sealing: {e}", payload=fields) from e
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def seal_event(
    event_type: EventType,
    severity: Severity,
    user_id: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    location: Optional[GeoPoint] = None,
    details: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> SecurityEvent:
    """Create a new security event carrying its integrity hash."""
    timestamp = timestamp or utcnow()
    details = dict(details or {})
    fields = canonical_fields(
        event_type, severity, timestamp, user_id, vehicle_id, location, details
    )
    return SecurityEvent(
        type=event_type,
        severity=severity,
        user_id=user_id,
        vehicle_id=vehicle_id,
        timestamp=timestamp,
        location=location,
        details=details,
        integrity_hash=compute_integrity_hash(fields),
    )


def verify_event(event: SecurityEvent) -> bool:
    """Check that an event still matches its seal."""
    try:
        expected = compute_integrity_hash(
            canonical_fields(
                event.type,
                event.severity,
                event.timestamp,
                event.user_id,
                event.vehicle_id,
                event.location,
                event.details,
            )
        )
    except DataError:
        return False
    return hmac.compare_digest(expected, event.integrity_hash)
