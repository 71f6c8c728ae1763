from typing import Any

import structlog

from posterminal.core.core import Service
from posterminal.core.modules.identity.provider import IdentityProviderClient, call_provider
from posterminal.core.modules.session.service import SessionManager
from posterminal.errors import ProviderError

logger = structlog.get_logger(__name__)

STAFF_TABLE = "staff"
STAFF_PERMISSIONS_TABLE = "staff_permissions"
STAFF_LOCATIONS_TABLE = "staff_locations"
OWNER_ROLE = "owner"


class AccessService(Service):
    """Boolean authorization checks for the logged in staff member."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        session_manager: SessionManager,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__()
        self._provider = provider
        self._session = session_manager
        self._timeout = timeout_seconds

    async def is_member_of_any_organization(self, user_id: str) -> bool:
        """Check whether the user is staff in at least one organization. Provider failures propagate."""
        try:
            rows = await self._query(STAFF_TABLE, {"user_id": user_id})
        except ProviderError as e:
            logger.error("organization_membership_check_failed", user_id=user_id, error=str(e))
            raise
        return len(rows) > 0

    async def has_permission(self, permission: str, location_id: str) -> bool:
        """Check a permission at a location. Owners hold every permission; errors deny."""
        user_id = self._current_user_id()
        if user_id is None or not location_id:
            return False

        try:
            if await self._is_owner(user_id):
                return True
            rows = await self._query(
                STAFF_PERMISSIONS_TABLE,
                {"user_id": user_id, "permission": permission, "location_id": location_id},
            )
        except ProviderError as e:
            logger.error("permission_check_failed", permission=permission, location_id=location_id, error=str(e))
            return False
        return len(rows) > 0

    async def is_authorized_for_location(self, location_id: str) -> bool:
        """Check that the user is assigned to the location. Owners pass; errors deny."""
        user_id = self._current_user_id()
        if user_id is None or not location_id:
            return False

        try:
            if await self._is_owner(user_id):
                return True
            rows = await self._query(STAFF_LOCATIONS_TABLE, {"user_id": user_id, "location_id": location_id})
        except ProviderError as e:
            logger.error("location_authorization_failed", location_id=location_id, error=str(e))
            return False
        return len(rows) > 0

    async def _is_owner(self, user_id: str) -> bool:
        rows = await self._query(STAFF_TABLE, {"user_id": user_id, "role": OWNER_ROLE})
        return len(rows) > 0

    async def _query(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return await call_provider(f"query:{table}", self._provider.query(table, filters), self._timeout)

    def _current_user_id(self) -> str | None:
        session = self._session.current_session
        if session is None or session.user is None or not self._session.is_session_valid:
            return None
        return session.user.id
