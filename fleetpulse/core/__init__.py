"""
FleetPulse Core Package

Pure analytics: trip stops and speeds, safety scoring, geofence evaluation.
"""

from .trips import analyze_trip, detect_stops, aggregate_speeds
from .safety import compute_safety_index, build_safety_report
from .geofence import GeofenceEvaluator, GeofenceCheck, Inside, Outside, OUTSIDE

__all__ = [
    "analyze_trip",
    "detect_stops",
    "aggregate_speeds",
    "compute_safety_index",
    "build_safety_report",
    "GeofenceEvaluator",
    "GeofenceCheck",
    "Inside",
    "Outside",
    "OUTSIDE",
]
