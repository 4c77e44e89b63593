"""
FleetPulse Backend Package

Data access against the hosted backend (or an in-memory stand-in),
authentication, account management, realtime snapshot refresh and
geofence state persistence.
"""

from .store import TelemetryStore, InMemoryTelemetryStore
from .supabase import SupabaseTelemetryStore
from .auth import AuthProvider, MockAuthProvider, SupabaseAuthClient
from .accounts import AccountManager, can_create_account
from .realtime import RealtimeNotification, SnapshotRefresher
from .geofence_state import (
    GeofenceStateStore,
    InMemoryGeofenceStateStore,
    RedisGeofenceStateStore,
)

__all__ = [
    "TelemetryStore",
    "InMemoryTelemetryStore",
    "SupabaseTelemetryStore",
    "AuthProvider",
    "MockAuthProvider",
    "SupabaseAuthClient",
    "AccountManager",
    "can_create_account",
    "RealtimeNotification",
    "SnapshotRefresher",
    "GeofenceStateStore",
    "InMemoryGeofenceStateStore",
    "RedisGeofenceStateStore",
]
