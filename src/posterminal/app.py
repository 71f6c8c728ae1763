from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from posterminal.config import Config
from posterminal.core.clock import Clock
from posterminal.core.core import Core
from posterminal.core.events import Subscriber
from posterminal.core.modules.auth.models import AuthState
from posterminal.core.modules.identity.provider import IdentityProviderClient
from posterminal.core.modules.session.models import Session, SessionUser
from posterminal.core.modules.session.store import SessionStore


class App:
    """Facade for the authentication operations used by the terminal UI."""

    def __init__(
        self,
        config: Config,
        provider: IdentityProviderClient,
        store: SessionStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._core = Core(config, provider, store=store, clock=clock)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Client lifespan management - delegates to Core."""
        async with self._core.lifespan():
            yield

    @property
    def auth_state(self) -> AuthState:
        return self._core.services.auth.state

    @property
    def current_session(self) -> Session | None:
        return self._core.services.auth.current_session

    @property
    def current_user(self) -> SessionUser | None:
        return self._core.services.auth.current_user

    @property
    def is_new_user(self) -> bool:
        return self._core.services.auth.is_new_user

    def subscribe_session_changed(self, callback: Subscriber) -> Callable[[], None]:
        """Register a zero-argument callback fired on every authentication status change."""
        return self._core.session_changed.connect(callback)

    async def request_login_otp(self, phone: str) -> None:
        """Send an SMS one-time password to an E.164 phone number."""
        await self._core.services.auth.request_otp(phone)

    async def verify_login_otp(self, phone: str, code: str, remember: bool = False) -> Session | None:
        """Verify an SMS one-time password and start a session."""
        return await self._core.services.auth.verify_otp(phone, code, remember)

    async def login_with_email(self, email: str, password: str, remember: bool = False) -> Session | None:
        """Sign in with email and password."""
        return await self._core.services.auth.login(email, password, remember)

    async def register_with_email(self, email: str, password: str, remember: bool = False) -> Session | None:
        """Create an account and start a session for it."""
        return await self._core.services.auth.register(email, password, remember)

    async def refresh_session(self) -> bool:
        """Refresh the current session now."""
        return await self._core.services.auth.refresh_session()

    async def logout(self) -> None:
        """Sign out and clear the stored session."""
        await self._core.services.auth.logout()

    def is_logged_in(self) -> bool:
        return self._core.services.auth.is_logged_in()

    def set_user_as_existing(self) -> bool:
        """Mark the current user as onboarded."""
        return self._core.services.auth.set_user_as_existing()

    async def update_user_email(self, email: str) -> SessionUser:
        """Change the email of the logged in user."""
        return await self._core.services.auth.update_user_email(email)

    async def has_permission(self, permission: str, location_id: str) -> bool:
        """Check a staff permission at the terminal's location."""
        return await self._core.services.access.has_permission(permission, location_id)

    async def is_authorized_for_location(self, location_id: str) -> bool:
        """Check that the logged in staff member may use the terminal's location."""
        return await self._core.services.access.is_authorized_for_location(location_id)

    def run_auth_diagnostics(self) -> str:
        return self._core.services.auth.run_auth_diagnostics()
