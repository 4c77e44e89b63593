"""
FleetPulse - Fleet Telemetry Analytics Core

This package provides the analytics and data-access layer behind a fleet
telemetry dashboard: trips are tracked from GPS position samples, stops and
speed summaries are derived from them, geofence entries are sealed as
security events, and a fleet-wide safety index is reported.

Modules:
    - core: Trip analysis, safety scoring and geofence evaluation
    - backend: Backend-as-a-service data access, auth, accounts and realtime
    - tracking: GPS tracking sessions and driver fatigue monitoring
    - monitor: The FleetMonitor orchestrator tying the layers together
    - config: Environment-driven configuration
"""

__version__ = "1.0.0"
__author__ = "FleetPulse Team"
__license__ = "MIT"
