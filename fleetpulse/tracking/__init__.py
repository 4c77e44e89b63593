"""
FleetPulse Tracking Package

Live GPS tracking sessions and the driver fatigue monitor.
"""

from .gps import (
    GeolocationProvider,
    SimulatedGeolocationProvider,
    RetryPolicy,
    SessionState,
    TrackingSession,
    acquire_fix,
)
from .fatigue import FatigueMonitor

__all__ = [
    "GeolocationProvider",
    "SimulatedGeolocationProvider",
    "RetryPolicy",
    "SessionState",
    "TrackingSession",
    "acquire_fix",
    "FatigueMonitor",
]
