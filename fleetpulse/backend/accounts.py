"""
FleetPulse Account Management

Profiles live in the backend's ``profiles`` table; new accounts are created
by the ``create_user`` edge function, which holds the service role key.

Role rule (enforced by the edge function, checked locally first so a
forbidden request never leaves the process):

    admin        -> may create coordinator, conductor
    coordinator  -> may create conductor
    conductor    -> may create nobody
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional
import logging

import httpx

from ..config import BackendConfig
from ..errors import AuthError, DataError
from ..models import UserProfile, UserRole
from .http import BackendHttpClient
from .rows import map_rows, normalize_role, row_to_profile


logger = logging.getLogger(__name__)


CREATABLE_ROLES: Dict[UserRole, FrozenSet[UserRole]] = {
    UserRole.ADMIN: frozenset({UserRole.COORDINATOR, UserRole.CONDUCTOR}),
    UserRole.COORDINATOR: frozenset({UserRole.CONDUCTOR}),
    UserRole.CONDUCTOR: frozenset(),
}


def can_create_account(caller_role: Optional[UserRole], target_role: UserRole) -> bool:
    """Check whether a caller of the given role may create target_role."""
    if caller_role is None:
        return False
    return target_role in CREATABLE_ROLES.get(caller_role, frozenset())


class AccountManager:
    """
    Profile lookup and account creation for the signed-in user.

    Example:
        accounts = AccountManager(config, access_token=session.access_token)
        me = await accounts.get_profile(session.user_id)
        drivers = await accounts.list_profiles(me)
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config or BackendConfig()
        self._rest = BackendHttpClient(
            self._config.rest_url,
            self._config,
            access_token=access_token,
            transport=transport,
        )
        self._functions = BackendHttpClient(
            self._config.functions_url,
            self._config,
            access_token=access_token,
            transport=transport,
        )

    async def close(self) -> None:
        await self._rest.close()
        await self._functions.close()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        rows = await self._rest.request_json(
            "GET",
            f"/{self._config.profiles_table}",
            params={"select": "*", "id": f"eq.{user_id}"},
        )
        profiles = map_rows(rows, row_to_profile)
        return profiles[0] if profiles else None

    async def list_profiles(self, caller: UserProfile) -> List[UserProfile]:
        """
        List the profiles visible to the caller.

        Admins see every profile; everyone else only sees their own
        company.
        """
        params = {"select": "*", "order": "full_name.asc"}
        if caller.role != UserRole.ADMIN:
            if not caller.company_id:
                return [caller]
            params["company_id"] = f"eq.{caller.company_id}"
        rows = await self._rest.request_json(
            "GET", f"/{self._config.profiles_table}", params=params
        )
        return map_rows(rows, row_to_profile)

    async def create_account(
        self,
        caller: UserProfile,
        email: str,
        password: str,
        full_name: str,
        role: str = UserRole.CONDUCTOR.value,
        company_id: Optional[str] = None,
    ) -> UserProfile:
        """
        Create an account through the create_user edge function.

        Args:
            caller: Profile of the signed-in user
            email: Login email of the new account
            password: Initial password
            full_name: Display name
            role: Requested role (unknown values become conductor)
            company_id: Target company (defaults to the caller's)

        Returns:
            The created profile

        Raises:
            AuthError: If the caller may not create the requested role
            DataError: If the backend rejects the payload
        """
        target_role = normalize_role(role)
        if not can_create_account(caller.role, target_role):
            logger.warning(
                f"User {caller.id} ({caller.role.value}) may not create "
                f"a {target_role.value} account"
            )
            raise AuthError("Forbidden", status_code=403)

        company = company_id or caller.company_id
        body = await self._functions.request_json(
            "POST",
            f"/{self._config.create_user_function}",
            json={
                "email": email,
                "password": password,
                "full_name": full_name,
                "role": target_role.value,
                "company_id": company,
            },
        )
        try:
            user = body["user"]
            profile = UserProfile(
                id=str(user["id"]),
                full_name=user.get("full_name", full_name),
                email=user.get("email", email),
                company_id=company,
                role=normalize_role(user.get("role")),
            )
        except (KeyError, TypeError) as e:
            raise DataError(f"Unexpected create_user response: {e}", payload=body) from e

        logger.info(f"Account {profile.id} created as {profile.role.value} by {caller.id}")
        return profile
