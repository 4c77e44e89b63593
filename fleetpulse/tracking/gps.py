"""
FleetPulse GPS Tracking

A TrackingSession turns a driver's device into a stream of position samples
for one trip:

    start()  -> trip row created (status en_curso), polling task started
    tick     -> one fix acquired, appended to the trip log, speed updated
    stop()   -> polling cancelled, speed summary stored, trip finalizado

Failure handling:
    - GpsTimeoutError: retried up to GpsConfig.max_attempts with fixed or
      exponential backoff. When every attempt fails, the session reports a
      status message, shows 0 km/h and waits for the next tick.
    - GpsPermissionError: fatal, the session ends immediately.
    - BackendConnectionError on upload: logged, the sample is kept locally
      so the final summary still includes it.
    - FleetPulseError from the sample callback (e.g. a geofence violation
      that could not be stored): logged, polling continues and the next
      sample is evaluated again.

Stopping cancels the polling task, including any retry sleep in progress,
so no sample callback fires after stop() returns.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Deque, Iterable, List, Optional, Tuple, Union
import logging

from ..config import AnalyticsConfig, GpsConfig
from ..core.trips import analyze_trip, validate_sample
from ..errors import (
    BackendConnectionError,
    DataError,
    FleetPulseError,
    GpsPermissionError,
    GpsTimeoutError,
)
from ..models import GpsFix, PositionSample, Trip, TripSummary, UserProfile, utcnow
from ..backend.store import TelemetryStore


logger = logging.getLogger(__name__)


SampleCallback = Callable[[str, PositionSample], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

CANCEL_POLL_SECONDS = 0.05


# =============================================================================
# GEOLOCATION PROVIDERS
# =============================================================================

class GeolocationProvider(ABC):
    """Source of GPS fixes (device API, serial receiver, simulator)."""

    @abstractmethod
    async def get_fix(self, timeout_seconds: float) -> GpsFix:
        """
        Produce one fix.

        Raises:
            GpsTimeoutError: If no fix was obtained in time
            GpsPermissionError: If location access is denied
        """
        pass


class SimulatedGeolocationProvider(GeolocationProvider):
    """
    Replays a script of fixes and failures.

    Each get_fix() consumes one script entry; an Exception entry is raised
    instead of returned. Once the script runs out, the last fix is repeated
    with a fresh timestamp (or a timeout is raised if there never was one).

    Example:
        provider = SimulatedGeolocationProvider([
            GpsFix(lat=-24.18, lng=-65.30, speed_mps=12.5),
            GpsTimeoutError(),
            GpsPermissionError("denied"),
        ])
    """

    def __init__(self, script: Iterable[Union[GpsFix, Exception]] = ()):
        self._script: Deque[Union[GpsFix, Exception]] = deque(script)
        self._last_fix: Optional[GpsFix] = None
        self.calls = 0

    def push(self, item: Union[GpsFix, Exception]) -> None:
        self._script.append(item)

    async def get_fix(self, timeout_seconds: float) -> GpsFix:
        self.calls += 1
        if self._script:
            item = self._script.popleft()
            if isinstance(item, Exception):
                raise item
            self._last_fix = item
            return item
        if self._last_fix is None:
            raise GpsTimeoutError("Simulated provider has no fix")
        return self._last_fix.model_copy(update={"timestamp": utcnow()})


# =============================================================================
# RETRY POLICY
# =============================================================================

@dataclass
class RetryPolicy:
    """Bounded retry for timed-out fixes."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff: str = "exponential"  # "fixed" or "exponential"
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if self.backoff == "fixed":
            delay = self.base_delay
        else:
            delay = self.base_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)

    @classmethod
    def from_config(cls, config: GpsConfig) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, config.max_attempts),
            base_delay=config.retry_delay_seconds,
            backoff=config.backoff,
            max_delay=config.max_retry_delay_seconds,
        )


async def acquire_fix(
    provider: GeolocationProvider,
    timeout_seconds: float,
    policy: Optional[RetryPolicy] = None,
    sleep: Sleep = asyncio.sleep,
) -> GpsFix:
    """
    Get a fix, retrying timeouts according to the policy.

    Raises:
        GpsTimeoutError: After the last attempt timed out
        GpsPermissionError: Immediately, without retrying
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(provider.get_fix(timeout_seconds), timeout_seconds)
        except (GpsTimeoutError, asyncio.TimeoutError) as e:
            logger.warning(f"GPS fix attempt {attempt}/{attempts} timed out: {e}")
            if attempt < attempts:
                await sleep(policy.delay_for(attempt))

    raise GpsTimeoutError(f"No GPS fix after {attempts} attempts", attempts=attempts)


# =============================================================================
# TRACKING SESSION
# =============================================================================

class SessionState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class TrackingLogEntry:
    timestamp: datetime
    message: str


class TrackingSession:
    """
    One driver's live tracking session.

    Example:
        session = TrackingSession(store, provider, driver, plate="AUTO-001")
        trip = await session.start()
        ...
        summary = await session.stop()
    """

    def __init__(
        self,
        store: TelemetryStore,
        provider: GeolocationProvider,
        driver: UserProfile,
        plate: str,
        vehicle_id: Optional[str] = None,
        config: Optional[GpsConfig] = None,
        analytics: Optional[AnalyticsConfig] = None,
        on_sample: Optional[SampleCallback] = None,
        sleep: Sleep = asyncio.sleep,
        log_size: int = 16,
    ):
        self._store = store
        self._provider = provider
        self._driver = driver
        self._plate = plate
        self._vehicle_id = vehicle_id or str(uuid.uuid4())
        self._config = config or GpsConfig()
        self._analytics = analytics or AnalyticsConfig()
        self._policy = RetryPolicy.from_config(self._config)
        self._on_sample = on_sample
        self._sleep = sleep

        self._state = SessionState.IDLE
        self._trip: Optional[Trip] = None
        self._trip_closed = False
        self._task: Optional[asyncio.Task] = None
        self._samples: List[PositionSample] = []
        self._current_speed = 0.0
        self._status_message: Optional[str] = None
        self._log: Deque[TrackingLogEntry] = deque(maxlen=log_size)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def trip(self) -> Optional[Trip]:
        return self._trip

    @property
    def vehicle_id(self) -> str:
        return self._vehicle_id

    @property
    def current_speed_kmh(self) -> float:
        return self._current_speed

    @property
    def status_message(self) -> Optional[str]:
        return self._status_message

    @property
    def samples(self) -> Tuple[PositionSample, ...]:
        return tuple(self._samples)

    @property
    def log(self) -> List[TrackingLogEntry]:
        return list(self._log)

    def _add_log(self, message: str) -> None:
        self._log.append(TrackingLogEntry(timestamp=utcnow(), message=message))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> Trip:
        """
        Create the trip and begin polling.

        Raises:
            RuntimeError: If the session is already tracking
            BackendConnectionError: If the trip could not be created
        """
        if self._state == SessionState.TRACKING:
            raise RuntimeError("Tracking session already started")

        trip = Trip(
            plate=self._plate,
            vehicle_id=self._vehicle_id,
            driver_id=self._driver.id,
            driver_name=self._driver.full_name,
            company_id=self._driver.company_id,
        )
        self._trip = await self._store.create_trip(trip)
        self._trip_closed = False
        self._samples = []
        self._log.clear()
        self._status_message = None
        self._state = SessionState.TRACKING
        self._add_log("Tracking started")
        logger.info(f"Tracking session started: trip {self._trip.id}, driver {self._driver.id}")

        self._task = asyncio.create_task(self._run())
        return self._trip

    async def stop(self) -> Optional[TripSummary]:
        """
        Cancel polling and finish the trip with its speed summary.

        Safe to call again if finishing the trip failed the first time.

        Raises:
            BackendConnectionError: If the trip could not be finished
        """
        if self._state == SessionState.TRACKING:
            self._state = SessionState.STOPPED
            self._add_log("Tracking stopped")
        await self._cancel_task()
        self._current_speed = 0.0

        if self._trip is None or self._trip_closed:
            return None
        return await self._close_trip()

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        # asyncio.wait_for() may swallow a cancel that races its inner future
        while not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=CANCEL_POLL_SECONDS)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Polling task for trip {self._trip.id} ended with an error: "
                f"{task.exception()!r}"
            )

    async def _close_trip(self) -> TripSummary:
        summary = analyze_trip(self._samples, self._analytics.min_stop_duration_ms)
        await self._store.finish_trip(self._trip.id, summary)
        self._trip_closed = True
        logger.info(
            f"Trip {self._trip.id} finished: {summary.sample_count} samples, "
            f"max {summary.max_speed_kmh:.1f} km/h, {len(summary.stops)} stops"
        )
        return summary

    async def _run(self) -> None:
        while self._state == SessionState.TRACKING:
            await self.poll_once()
            if self._state != SessionState.TRACKING:
                break
            await self._sleep(self._config.poll_interval_seconds)

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    async def poll_once(self) -> Optional[PositionSample]:
        """
        Acquire and record one sample.

        Returns:
            The recorded sample, or None when no usable fix was obtained
        """
        try:
            fix = await acquire_fix(
                self._provider,
                self._config.fix_timeout_seconds,
                self._policy,
                sleep=self._sleep,
            )
        except GpsPermissionError as e:
            await self._fail(f"Location permission denied: {e}")
            return None
        except GpsTimeoutError as e:
            self._status_message = "GPS fix timed out"
            self._current_speed = 0.0
            self._add_log(f"GPS fix timed out after {e.attempts} attempts")
            return None

        try:
            sample = validate_sample(fix.to_sample())
        except DataError as e:
            logger.warning(f"Discarding malformed fix: {e}")
            self._add_log("Discarded malformed GPS fix")
            return None

        self._samples.append(sample)
        self._current_speed = sample.speed_kmh
        self._status_message = None
        self._add_log(f"GPS: {sample.lat:.4f}, {sample.lng:.4f} | {sample.speed_kmh:.0f} km/h")

        try:
            await self._store.append_sample(self._trip.id, sample, self._driver.company_id)
        except BackendConnectionError as e:
            logger.warning(f"Sample upload for trip {self._trip.id} failed: {e}")
            self._add_log("Sample upload failed")

        if self._on_sample is not None and self._state == SessionState.TRACKING:
            try:
                await self._on_sample(self._vehicle_id, sample)
            except FleetPulseError as e:
                logger.warning(f"Sample processing for trip {self._trip.id} failed: {e}")
                self._status_message = "Sample processing failed"
                self._add_log(f"Sample processing failed: {e}")
        return sample

    async def _fail(self, message: str) -> None:
        self._state = SessionState.FAILED
        self._status_message = message
        self._current_speed = 0.0
        self._add_log(message)
        logger.error(f"Tracking session for trip {self._trip.id} failed: {message}")
        try:
            await self._close_trip()
        except BackendConnectionError as e:
            logger.warning(f"Trip {self._trip.id} left open, finish it with stop(): {e}")
