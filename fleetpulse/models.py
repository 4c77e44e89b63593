"""
FleetPulse Core Data Models

This module defines the data structures shared by the analytics core, the
backend adapters and the tracking layer. Pydantic gives validation at the
boundary where rows arrive from the backend or samples arrive from devices.

Design Philosophy:
    - Recorded data (samples, events) is frozen once created
    - Derived data (stops, summaries, reports) is recomputed, never persisted
    - Enum values match the backend's stored strings
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Backend Vocabulary
# =============================================================================

class EventType(str, Enum):
    """
    Security event type.

    SOS_RESOLVED is only ever read back from the backend; the core never
    emits it.
    """
    SOS = "SOS"
    GEOFENCE_VIOLATION = "GEOFENCE_VIOLATION"
    FATIGUE_ALERT = "FATIGUE_ALERT"
    SOS_RESOLVED = "SOS_RESOLVED"


class Severity(str, Enum):
    """Security event severity, most severe first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class RiskLevel(str, Enum):
    """Geofence risk classification."""
    DANGER = "danger"
    WARNING = "warning"
    INFO = "info"


class VehicleStatus(str, Enum):
    """Vehicle connectivity status as reported by the backend."""
    ONLINE = "online"
    WARNING = "warning"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"

    @property
    def is_active(self) -> bool:
        """Online and warning vehicles count towards the active fleet."""
        return self in (VehicleStatus.ONLINE, VehicleStatus.WARNING)


class TripStatus(str, Enum):
    """Trip lifecycle status (stored values are the backend's)."""
    IN_PROGRESS = "en_curso"
    FINISHED = "finalizado"


class UserRole(str, Enum):
    """
    Account role.

    ADMIN: manages the whole tenant, may create coordinators and drivers
    COORDINATOR: manages drivers of their own company
    CONDUCTOR: a driver; tracked, manages nobody
    """
    ADMIN = "admin"
    COORDINATOR = "coordinator"
    CONDUCTOR = "conductor"


# =============================================================================
# POSITION DATA
# =============================================================================

class GeoPoint(BaseModel):
    """A WGS84 coordinate pair."""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float

    def __str__(self) -> str:
        return f"({self.lat:.6f}, {self.lng:.6f})"


class PositionSample(BaseModel):
    """
    One GPS fix belonging to a trip.

    Coordinates are not range-checked on construction; see
    fleetpulse.core.trips.validate_sample().
    """
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    speed_kmh: float = Field(..., ge=0.0)
    captured_at: datetime

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class GpsFix(BaseModel):
    """Raw fix as produced by a geolocation provider."""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    speed_mps: Optional[float] = None
    accuracy_m: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_sample(self) -> PositionSample:
        """Convert to a sample; missing or negative speed reads as 0 km/h."""
        speed = self.speed_mps if self.speed_mps and self.speed_mps > 0 else 0.0
        return PositionSample(
            lat=self.lat,
            lng=self.lng,
            speed_kmh=float(round(speed * 3.6)),
            captured_at=self.timestamp,
        )


# =============================================================================
# DERIVED TRIP DATA
# =============================================================================

class StopInterval(BaseModel):
    """A qualifying period of zero speed."""
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float
    started_at: datetime
    duration_ms: int = Field(..., ge=0)

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0


class TripSummary(BaseModel):
    """Speed statistics and stops for one trip."""
    model_config = ConfigDict(frozen=True)

    max_speed_kmh: float = 0.0
    avg_speed_kmh: float = 0.0
    sample_count: int = 0
    stops: List[StopInterval] = Field(default_factory=list)


# =============================================================================
# SECURITY EVENTS & GEOFENCES
# =============================================================================

class SecurityEvent(BaseModel):
    """
    A sealed, append-only record of a safety-relevant occurrence.

    The integrity hash is computed once by fleetpulse.integrity when the
    event is created and is carried unchanged afterwards.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    severity: Severity
    user_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    location: Optional[GeoPoint] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    integrity_hash: str


class Geofence(BaseModel):
    """A named polygonal risk zone."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    risk_level: RiskLevel = RiskLevel.DANGER
    polygon: List[GeoPoint] = Field(..., min_length=3)


class Alert(BaseModel):
    """Operator-facing alert raised for critical and high severity events."""
    id: str
    vehicle_id: str = "unknown"
    type: str
    severity: Severity
    timestamp: datetime
    resolved: bool = False


# =============================================================================
# BACKEND RECORDS
# =============================================================================

class Vehicle(BaseModel):
    """Current state of a fleet vehicle."""
    id: str
    plate: str
    status: VehicleStatus = VehicleStatus.OFFLINE
    lat: float = 0.0
    lng: float = 0.0
    speed: float = 0.0
    heading: float = 0.0
    last_update: Optional[datetime] = None
    battery_level: Optional[int] = None
    fatigue_level: Optional[int] = None
    company_id: Optional[str] = None


class Trip(BaseModel):
    """One tracked driving session."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plate: str
    vehicle_id: str
    driver_id: str
    driver_name: Optional[str] = None
    company_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: TripStatus = TripStatus.IN_PROGRESS
    max_speed: float = 0.0
    avg_speed: float = 0.0


class UserProfile(BaseModel):
    """Account profile linked to an authenticated user."""
    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    company_id: Optional[str] = None
    role: UserRole = UserRole.CONDUCTOR


class Company(BaseModel):
    """A tenant."""
    id: str
    name: str
    plan: str = "basic"


class Session(BaseModel):
    """An authenticated backend session."""
    access_token: str
    refresh_token: Optional[str] = None
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[datetime] = None


# =============================================================================
# REPORTING
# =============================================================================

class IncidentCount(BaseModel):
    """Number of security events attributed to one vehicle."""
    vehicle_id: str
    count: int


class SafetyReport(BaseModel):
    """Fleet safety figures for one reporting window."""
    safety_index: int = Field(..., ge=0, le=100)
    active_vehicles: int = 0
    event_count: int = 0
    critical_last_24h: int = 0
    geofence_violations: int = 0
    fatigue_trend: Dict[str, int] = Field(default_factory=dict)
    top_incidents: List[IncidentCount] = Field(default_factory=list)
    window_start: datetime
    generated_at: datetime = Field(default_factory=utcnow)
