"""Tests for staff permission and location checks."""

import asyncio

import pytest

from posterminal.core.modules.access.service import AccessService
from posterminal.errors import ProviderError


@pytest.fixture
def access(provider, session_manager):
    return AccessService(provider, session_manager, timeout_seconds=5)


@pytest.fixture
def logged_in(session_manager, make_session):
    session_manager.save_session(make_session(), is_persistent=False)


class TestPermissions:
    """Tests for has_permission."""

    def test_denied_without_session(self, access, provider):
        assert asyncio.run(access.has_permission("refund", "loc-1")) is False
        assert sum(provider.calls.values()) == 0

    @pytest.mark.usefixtures("logged_in")
    def test_denied_without_location(self, access):
        assert asyncio.run(access.has_permission("refund", "")) is False

    @pytest.mark.usefixtures("logged_in")
    def test_owner_has_every_permission(self, access, provider):
        provider.tables["staff"] = [{"user_id": "user-1", "role": "owner"}]

        assert asyncio.run(access.has_permission("refund", "loc-1")) is True
        assert provider.calls["query:staff_permissions"] == 0

    @pytest.mark.usefixtures("logged_in")
    def test_granted_permission(self, access, provider):
        provider.tables["staff"] = [{"user_id": "user-1", "role": "cashier"}]
        provider.tables["staff_permissions"] = [{"user_id": "user-1", "permission": "refund", "location_id": "loc-1"}]

        assert asyncio.run(access.has_permission("refund", "loc-1")) is True
        assert asyncio.run(access.has_permission("refund", "loc-2")) is False
        assert asyncio.run(access.has_permission("void", "loc-1")) is False

    @pytest.mark.usefixtures("logged_in")
    def test_provider_error_denies(self, access, provider, provider_error):
        provider.query_error = provider_error

        assert asyncio.run(access.has_permission("refund", "loc-1")) is False

    def test_expired_session_denied(self, access, provider, session_manager, clock, make_session):
        session_manager.save_session(make_session(), is_persistent=False)
        provider.tables["staff"] = [{"user_id": "user-1", "role": "owner"}]
        clock.advance(seconds=4000)

        assert asyncio.run(access.has_permission("refund", "loc-1")) is False


class TestLocations:
    """Tests for is_authorized_for_location."""

    @pytest.mark.usefixtures("logged_in")
    def test_assigned_location(self, access, provider):
        provider.tables["staff_locations"] = [{"user_id": "user-1", "location_id": "loc-1"}]

        assert asyncio.run(access.is_authorized_for_location("loc-1")) is True
        assert asyncio.run(access.is_authorized_for_location("loc-2")) is False

    @pytest.mark.usefixtures("logged_in")
    def test_owner_authorized_everywhere(self, access, provider):
        provider.tables["staff"] = [{"user_id": "user-1", "role": "owner"}]

        assert asyncio.run(access.is_authorized_for_location("loc-9")) is True

    @pytest.mark.usefixtures("logged_in")
    def test_provider_error_denies(self, access, provider):
        provider.query_error = ProviderError("permission denied for table staff_locations")

        assert asyncio.run(access.is_authorized_for_location("loc-1")) is False


class TestOrganizationMembership:
    """Tests for is_member_of_any_organization."""

    def test_member_and_non_member(self, access, provider):
        provider.tables["staff"] = [{"user_id": "user-1", "role": "cashier"}]

        assert asyncio.run(access.is_member_of_any_organization("user-1")) is True
        assert asyncio.run(access.is_member_of_any_organization("user-2")) is False

    def test_provider_error_propagates(self, access, provider, provider_error):
        provider.query_error = provider_error

        with pytest.raises(ProviderError):
            asyncio.run(access.is_member_of_any_organization("user-1"))
