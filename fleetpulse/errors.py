"""
FleetPulse Error Taxonomy

Every failure the system can surface maps to one of these classes.

Propagation policy:
    - BackendConnectionError: transient, retried locally with bounded attempts,
      then surfaced with a retry action
    - AuthError: surfaced immediately, never retried
    - GpsPermissionError: fatal for the current tracking session
    - GpsTimeoutError: transient, retried up to a fixed cap
    - DataError: the offending sample/row is skipped and logged
"""

from __future__ import annotations

from typing import Any, Optional


class FleetPulseError(Exception):
    """Base class for all FleetPulse errors."""


class BackendConnectionError(FleetPulseError, ConnectionError):
    """Backend unreachable, timed out, or answered with a server error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(FleetPulseError):
    """Invalid credentials, expired session, or a forbidden operation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GpsError(FleetPulseError):
    """Base class for geolocation provider failures."""


class GpsPermissionError(GpsError):
    """The user or platform denied access to the geolocation provider."""


class GpsTimeoutError(GpsError):
    """The geolocation provider did not produce a fix in time."""

    def __init__(self, message: str = "GPS fix timed out", attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class DataError(FleetPulseError):
    """A sample or backend row is malformed."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload
