from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from posterminal.config import Config
from posterminal.core.clock import Clock, SystemClock
from posterminal.core.events import Signal
from posterminal.core.modules.identity.provider import IdentityProviderClient
from posterminal.core.modules.session.store import FileSessionStore, SessionStore

if TYPE_CHECKING:
    from posterminal.core.modules.access.service import AccessService
    from posterminal.core.modules.auth.service import AuthCoordinator
    from posterminal.core.modules.session.service import SessionManager


class Service:
    """Base class for services with a start/stop lifecycle."""

    async def on_start(self) -> None:
        """Initialize service on client startup."""

    async def on_stop(self) -> None:
        """Cleanup service on client shutdown."""


class Services:
    """Service registry, built from explicitly injected collaborators."""

    session: SessionManager
    access: AccessService
    auth: AuthCoordinator

    def __init__(
        self,
        config: Config,
        store: SessionStore,
        clock: Clock,
        provider: IdentityProviderClient,
        session_changed: Signal,
    ) -> None:
        from posterminal.core.modules.access.service import AccessService  # noqa: PLC0415
        from posterminal.core.modules.auth.service import AuthCoordinator  # noqa: PLC0415
        from posterminal.core.modules.session.service import SessionManager  # noqa: PLC0415

        self.session = SessionManager(
            store,
            clock,
            standard_refresh_threshold_seconds=config.standard_refresh_threshold_seconds,
            persistent_refresh_threshold_seconds=config.persistent_refresh_threshold_seconds,
        )
        self.access = AccessService(provider, self.session, timeout_seconds=config.provider_timeout_seconds)
        self.auth = AuthCoordinator(
            session_manager=self.session,
            provider=provider,
            clock=clock,
            session_changed=session_changed,
            access=self.access,
            config=config,
        )

        # Order matters - session state must exist before the coordinator loads it
        self._services: list[Service] = [self.session, self.access, self.auth]

    async def start_all(self) -> None:
        """Start all services in registration order."""
        for service in self._services:
            await service.on_start()

    async def stop_all(self) -> None:
        """Stop all services in reverse registration order."""
        for service in reversed(self._services):
            await service.on_stop()


class Core:
    """Container providing config, collaborators and all service instances."""

    config: Config
    provider: IdentityProviderClient
    store: SessionStore
    clock: Clock
    session_changed: Signal
    services: Services

    def __init__(
        self,
        config: Config,
        provider: IdentityProviderClient,
        store: SessionStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Wire the identity provider, session store and clock into the services."""
        self.config = config
        self.provider = provider
        self.store = store if store is not None else FileSessionStore(config.storage_path)
        self.clock = clock if clock is not None else SystemClock()
        self.session_changed = Signal("session_changed")
        self.services = Services(config, self.store, self.clock, provider, self.session_changed)

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Manage client lifecycle - startup and shutdown."""
        await self.on_start()
        try:
            yield
        finally:
            await self.on_stop()

    async def on_start(self) -> None:
        await self.services.start_all()

    async def on_stop(self) -> None:
        await self.services.stop_all()
