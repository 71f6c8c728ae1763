"""Interface to the external identity provider."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Mapping
from typing import Any, TypeVar

from posterminal.core.events import Signal
from posterminal.core.modules.identity.models import UserAttributes
from posterminal.core.modules.session.models import Session, SessionUser
from posterminal.errors import ProviderError


T = TypeVar("T")


async def call_provider(operation: str, call: Awaitable[T], timeout_seconds: float | None) -> T:
    """Await a provider call under a deadline, turning a timeout into ProviderError."""
    try:
        async with asyncio.timeout(timeout_seconds):
            return await call
    except TimeoutError as e:
        raise ProviderError(f"Identity provider timed out during {operation}") from e


class IdentityProviderClient(ABC):
    """Async capability set of the identity service.

    Implementations raise ProviderError for service failures and may become
    ready some time after construction; `mark_ready` flips `is_ready` and
    notifies subscribers of the `ready` signal.
    """

    def __init__(self) -> None:
        self.ready = Signal("identity_provider_ready")
        self._is_ready = False

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    async def mark_ready(self) -> None:
        self._is_ready = True
        await self.ready.emit()

    @abstractmethod
    async def initialize(self) -> None:
        """(Re)initialize the client in an anonymous state, dropping any tokens it holds."""

    @abstractmethod
    async def sign_in_password(self, email: str, password: str) -> Session | None: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> Session | None: ...

    @abstractmethod
    async def sign_in_otp_request(self, phone: str) -> None:
        """Ask the provider to send a one-time password by SMS."""

    @abstractmethod
    async def verify_otp(self, phone: str, code: str) -> Session | None: ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> Session | None:
        """Exchange a refresh token for a new session."""

    @abstractmethod
    async def sign_out(self) -> None: ...

    @abstractmethod
    async def set_session(self, access_token: str, refresh_token: str) -> Session | None:
        """Load stored tokens into the client so later calls are authorized."""

    @abstractmethod
    async def update_user_attributes(self, attributes: UserAttributes) -> SessionUser | None: ...

    @abstractmethod
    async def query(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Run an authorized equality-filtered select and return the matching rows."""
