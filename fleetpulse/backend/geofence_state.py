"""
FleetPulse Geofence State Stores

Edge-triggered geofence alerting needs to remember, per vehicle, which
geofence the vehicle was last inside. The state is a tagged value
(Outside | Inside(geofence_id)) owned by fleetpulse.core.geofence; this
module only persists it.

Implementations:
    - InMemoryGeofenceStateStore: one process, no persistence
    - RedisGeofenceStateStore: shared across workers, one Redis hash
      (field = vehicle id, value = geofence id, absent field = Outside)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..config import RedisConfig
from ..core.geofence import OUTSIDE, ContainmentState, Inside, Outside
from ..errors import BackendConnectionError


logger = logging.getLogger(__name__)


class GeofenceStateStore(ABC):
    """Per-vehicle containment state persistence."""

    @abstractmethod
    async def get(self, vehicle_id: str) -> ContainmentState:
        """Return the remembered state (Outside when unknown)."""
        pass

    @abstractmethod
    async def set(self, vehicle_id: str, state: ContainmentState) -> None:
        pass

    @abstractmethod
    async def reset(self, vehicle_id: Optional[str] = None) -> None:
        """Forget one vehicle, or every vehicle when vehicle_id is None."""
        pass

    async def close(self) -> None:
        return None


class InMemoryGeofenceStateStore(GeofenceStateStore):
    """Process-local state store."""

    def __init__(self):
        self._states: Dict[str, str] = {}

    async def get(self, vehicle_id: str) -> ContainmentState:
        geofence_id = self._states.get(vehicle_id)
        return Inside(geofence_id) if geofence_id is not None else OUTSIDE

    async def set(self, vehicle_id: str, state: ContainmentState) -> None:
        if isinstance(state, Outside):
            self._states.pop(vehicle_id, None)
        else:
            self._states[vehicle_id] = state.geofence_id

    async def reset(self, vehicle_id: Optional[str] = None) -> None:
        if vehicle_id is None:
            self._states.clear()
        else:
            self._states.pop(vehicle_id, None)


class RedisClientProvider:
    """
    Lazily connects a shared redis.asyncio client.

    Connection attempts are retried with linear backoff; the first
    successful client is reused until close().
    """

    def __init__(self, config: Optional[RedisConfig] = None, retry_attempts: int = 3, retry_delay: float = 0.1):
        self._config = config or RedisConfig()
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        if self._client is not None:
            return self._client

        async with self._lock:
            if self._client is not None:
                return self._client

            last_error: Optional[Exception] = None
            for attempt in range(self._retry_attempts):
                client = redis.Redis.from_url(
                    self._config.url,
                    max_connections=self._config.max_connections,
                    socket_timeout=self._config.socket_timeout,
                    decode_responses=True,
                )
                try:
                    await client.ping()
                except RedisError as e:
                    last_error = e
                    await client.aclose()
                    logger.warning(f"Redis connection attempt {attempt + 1} failed: {e}")
                    if attempt < self._retry_attempts - 1:
                        await asyncio.sleep(self._retry_delay * (attempt + 1))
                    continue
                logger.info(f"Connected to Redis at {self._config.host}:{self._config.port}")
                self._client = client
                return client

            raise BackendConnectionError(
                f"Failed to connect to Redis after {self._retry_attempts} attempts"
            ) from last_error

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RedisGeofenceStateStore(GeofenceStateStore):
    """
    Redis-backed state store.

    Example:
        store = RedisGeofenceStateStore(RedisConfig(enabled=True))
        state = await store.get("veh-1")

    A pre-built client (or a test double with hget/hset/hdel/delete) can be
    passed instead of a config.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[redis.Redis] = None,
    ):
        self._config = config or RedisConfig()
        self._key = self._config.geofence_state_key
        self._client = client
        self._provider = None if client is not None else RedisClientProvider(self._config)

    async def _redis(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        return await self._provider.get_client()

    async def get(self, vehicle_id: str) -> ContainmentState:
        client = await self._redis()
        try:
            geofence_id = await client.hget(self._key, vehicle_id)
        except RedisError as e:
            raise BackendConnectionError(f"Geofence state read failed: {e}") from e
        if geofence_id is None:
            return OUTSIDE
        if isinstance(geofence_id, bytes):
            geofence_id = geofence_id.decode()
        return Inside(geofence_id)

    async def set(self, vehicle_id: str, state: ContainmentState) -> None:
        client = await self._redis()
        try:
            if isinstance(state, Outside):
                await client.hdel(self._key, vehicle_id)
            else:
                await client.hset(self._key, vehicle_id, state.geofence_id)
        except RedisError as e:
            raise BackendConnectionError(f"Geofence state write failed: {e}") from e

    async def reset(self, vehicle_id: Optional[str] = None) -> None:
        client = await self._redis()
        try:
            if vehicle_id is None:
                await client.delete(self._key)
            else:
                await client.hdel(self._key, vehicle_id)
        except RedisError as e:
            raise BackendConnectionError(f"Geofence state reset failed: {e}") from e

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
