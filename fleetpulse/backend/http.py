"""
FleetPulse Backend HTTP Client

Thin wrapper around httpx.AsyncClient shared by every backend adapter
(PostgREST tables, GoTrue auth, edge functions). It owns the one place
where transport failures and HTTP statuses are translated into the
FleetPulse error taxonomy, and where transient failures are retried.

Status mapping:
    timeout / transport failure  -> BackendConnectionError (retried)
    5xx                          -> BackendConnectionError (retried)
    400 on the auth endpoints,
    401, 403                     -> AuthError (never retried)
    other 4xx                    -> DataError (never retried)

Only idempotent methods are retried by default. A POST that timed out may
already have been committed, so inserts are sent once unless the caller
passes retry=True.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
import logging

import httpx

from ..config import BackendConfig
from ..errors import AuthError, BackendConnectionError, DataError


logger = logging.getLogger(__name__)


IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the backend's error text."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class BackendHttpClient:
    """
    Authenticated HTTP access to one backend base URL.

    Example:
        client = BackendHttpClient(config.rest_url, config)
        rows = await client.request_json("GET", "/vehicles", params={"select": "*"})
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[BackendConfig] = None,
        access_token: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_endpoint: bool = False,
    ):
        """
        Initialize the client.

        Args:
            base_url: Base URL requests are relative to
            config: Backend configuration (timeouts, retries, keys)
            access_token: Bearer token of the signed-in user
            api_key: Project API key (defaults to the anon key)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            auth_endpoint: Treat 400 responses as credential failures
        """
        self._config = config or BackendConfig()
        self._base_url = base_url
        self._api_key = api_key or self._config.anon_key
        self._access_token = access_token
        self._transport = transport
        self._auth_endpoint = auth_endpoint
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    def set_access_token(self, token: Optional[str]) -> None:
        """Switch the bearer token used for subsequent requests."""
        self._access_token = token
        if self._client is not None:
            self._client.headers["Authorization"] = f"Bearer {token or self._api_key}"

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._access_token or self._api_key}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._config.timeout_seconds,
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        message = _error_message(response)
        if status in (401, 403) or (status == 400 and self._auth_endpoint):
            raise AuthError(message, status_code=status)
        if status >= 500:
            raise BackendConnectionError(message, status_code=status)
        raise DataError(f"Backend rejected request ({status}): {message}")

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendConnectionError(f"Backend timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise BackendConnectionError(f"Backend unreachable on {method} {path}: {e}") from e
        self._raise_for_status(response)
        return response

    async def request(
        self,
        method: str,
        path: str,
        retry: Optional[bool] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            retry: Retry transient failures (default: only for idempotent methods)

        Raises:
            BackendConnectionError: If every attempt failed transiently
            AuthError: On credential or permission failures
            DataError: When the backend rejected the payload
        """
        if retry is None:
            retry = method.upper() in IDEMPOTENT_METHODS
        attempts = max(1, self._config.retry_attempts) if retry else 1
        for attempt in range(attempts):
            try:
                return await self._send_once(method, path, **kwargs)
            except BackendConnectionError as e:
                logger.warning(
                    f"Backend request attempt {attempt + 1}/{attempts} failed: {e}"
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._config.retry_delay * (attempt + 1))
                else:
                    raise

        # Should never reach here
        raise BackendConnectionError("Unexpected state in backend client")

    async def request_json(
        self,
        method: str,
        path: str,
        retry: Optional[bool] = None,
        **kwargs: Any,
    ) -> Any:
        """Send a request and decode the JSON body (None for empty bodies)."""
        response = await self.request(method, path, retry=retry, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DataError(f"Backend returned invalid JSON for {method} {path}") from e
