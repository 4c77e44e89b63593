"""
FleetPulse Authentication Client

Authentication is delegated entirely to the backend's GoTrue service.
This module only exchanges credentials for a session and maps failures:

    invalid credentials        -> AuthError (shown to the user, no retry)
    backend unreachable/timeout -> BackendConnectionError (retry offered)
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
import logging

import httpx

from ..config import BackendConfig
from ..errors import AuthError, DataError
from ..models import Session
from .http import BackendHttpClient


logger = logging.getLogger(__name__)


class AuthProvider(ABC):
    """Abstract credential exchange."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """
        Exchange email and password for a session.

        Raises:
            AuthError: If the credentials are rejected
            BackendConnectionError: If the provider is unreachable
        """
        pass

    @abstractmethod
    async def sign_out(self, session: Session) -> None:
        """Revoke a session."""
        pass

    @abstractmethod
    async def get_user_id(self, access_token: str) -> str:
        """
        Resolve the user behind an access token.

        Raises:
            AuthError: If the token is invalid or expired
        """
        pass


class MockAuthProvider(AuthProvider):
    """
    In-process auth provider for development and testing.

    Users are registered with add_user; tokens are random and live until
    sign_out.
    """

    def __init__(self):
        self._users: Dict[str, Tuple[str, str]] = {}  # email -> (password, user_id)
        self._tokens: Dict[str, str] = {}  # token -> user_id

    def add_user(self, email: str, password: str, user_id: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self._users[email.lower()] = (password, user_id)
        return user_id

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        record = self._users.get(email.lower())
        if record is None or record[0] != password:
            raise AuthError("Invalid login credentials", status_code=400)
        token = f"mock_token_{uuid.uuid4().hex}"
        self._tokens[token] = record[1]
        return Session(
            access_token=token,
            user_id=record[1],
            email=email,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def sign_out(self, session: Session) -> None:
        self._tokens.pop(session.access_token, None)

    async def get_user_id(self, access_token: str) -> str:
        user_id = self._tokens.get(access_token)
        if user_id is None:
            raise AuthError("Invalid or expired token", status_code=401)
        return user_id


class SupabaseAuthClient(AuthProvider):
    """
    GoTrue (``/auth/v1``) client.

    Example:
        auth = SupabaseAuthClient(config)
        session = await auth.sign_in_with_password("ops@example.com", "secret")
        store = SupabaseTelemetryStore(config, access_token=session.access_token)
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or BackendConfig()
        self._http = BackendHttpClient(
            self._config.auth_url,
            self._config,
            transport=transport,
            auth_endpoint=True,
        )

    async def close(self) -> None:
        await self._http.close()

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        body = await self._http.request_json(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        try:
            user = body["user"]
            expires_in = int(body.get("expires_in") or 3600)
            session = Session(
                access_token=body["access_token"],
                refresh_token=body.get("refresh_token"),
                user_id=str(user["id"]),
                email=user.get("email"),
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DataError(f"Unexpected sign-in response: {e}", payload=body) from e
        logger.info(f"User {session.user_id} signed in")
        return session

    async def sign_out(self, session: Session) -> None:
        await self._http.request(
            "POST",
            "/logout",
            headers={"Authorization": f"Bearer {session.access_token}"},
        )
        logger.info(f"User {session.user_id} signed out")

    async def get_user_id(self, access_token: str) -> str:
        body = await self._http.request_json(
            "GET",
            "/user",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not body or "id" not in body:
            raise AuthError("Token did not resolve to a user", status_code=401)
        return str(body["id"])
