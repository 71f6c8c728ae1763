"""Shared pytest fixtures."""

import asyncio
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from posterminal.config import Config
from posterminal.core.modules.auth.service import AuthCoordinator
from posterminal.core.modules.identity.models import UserAttributes
from posterminal.core.modules.identity.provider import IdentityProviderClient
from posterminal.core.modules.session.models import Session, SessionUser
from posterminal.core.modules.session.service import SessionManager
from posterminal.core.modules.session.store import MemorySessionStore
from posterminal.errors import ProviderError

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, days: float = 0) -> None:
        self.current += timedelta(seconds=seconds, days=days)


class FakeIdentityProvider(IdentityProviderClient):
    """Identity provider double that counts calls and returns scripted results.

    `*_results` lists are consumed front to back; an Exception item is raised
    instead of returned. When a list is empty the default session is returned.
    """

    def __init__(self, clock: FrozenClock, ready: bool = True) -> None:
        super().__init__()
        self._clock = clock
        self._is_ready = ready
        self.calls: Counter[str] = Counter()
        self.sign_in_results: list[Session | Exception | None] = []
        self.sign_up_results: list[Session | Exception | None] = []
        self.verify_otp_results: list[Session | Exception | None] = []
        self.refresh_results: list[Session | Exception | None] = []
        self.set_session_error: Exception | None = None
        self.sign_out_error: Exception | None = None
        self.otp_error: Exception | None = None
        self.update_user_result: SessionUser | Exception | None = None
        self.refresh_gate: asyncio.Event | None = None
        self.sign_out_gate: asyncio.Event | None = None
        self.update_user_gate: asyncio.Event | None = None
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.query_error: Exception | None = None
        self.refresh_tokens_seen: list[str] = []
        self.set_sessions_seen: list[tuple[str, str]] = []

    def make_session(self, access_token: str = "access-2", refresh_token: str = "refresh-2") -> Session:
        return Session(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=3600,
            created_at=self._clock.now(),
            user=SessionUser(id="user-1", email="cashier@example.com", phone="+40722123456"),
        )

    def _next(self, results: list[Session | Exception | None]) -> Session | None:
        if not results:
            return self.make_session()
        result = results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def initialize(self) -> None:
        self.calls["initialize"] += 1

    async def sign_in_password(self, email: str, password: str) -> Session | None:
        self.calls["sign_in_password"] += 1
        return self._next(self.sign_in_results)

    async def sign_up(self, email: str, password: str) -> Session | None:
        self.calls["sign_up"] += 1
        return self._next(self.sign_up_results)

    async def sign_in_otp_request(self, phone: str) -> None:
        self.calls["sign_in_otp_request"] += 1
        if self.otp_error is not None:
            raise self.otp_error

    async def verify_otp(self, phone: str, code: str) -> Session | None:
        self.calls["verify_otp"] += 1
        return self._next(self.verify_otp_results)

    async def refresh_token(self, refresh_token: str) -> Session | None:
        self.calls["refresh_token"] += 1
        self.refresh_tokens_seen.append(refresh_token)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        return self._next(self.refresh_results)

    async def sign_out(self) -> None:
        self.calls["sign_out"] += 1
        if self.sign_out_gate is not None:
            await self.sign_out_gate.wait()
        if self.sign_out_error is not None:
            raise self.sign_out_error

    async def set_session(self, access_token: str, refresh_token: str) -> Session | None:
        self.calls["set_session"] += 1
        self.set_sessions_seen.append((access_token, refresh_token))
        if self.set_session_error is not None:
            raise self.set_session_error
        return None

    async def update_user_attributes(self, attributes: UserAttributes) -> SessionUser | None:
        self.calls["update_user_attributes"] += 1
        if self.update_user_gate is not None:
            await self.update_user_gate.wait()
        if isinstance(self.update_user_result, Exception):
            raise self.update_user_result
        if self.update_user_result is not None:
            return self.update_user_result
        return SessionUser(id="user-1", email=attributes.email)

    async def query(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        self.calls[f"query:{table}"] += 1
        if self.query_error is not None:
            raise self.query_error
        rows = self.tables.get(table, [])
        return [row for row in rows if all(row.get(k) == v for k, v in filters.items())]


@pytest.fixture
def clock():
    """Frozen clock starting at T0."""
    return FrozenClock()


@pytest.fixture
def store():
    return MemorySessionStore()


@pytest.fixture
def config(tmp_path):
    """Configuration isolated from the environment and .env files."""
    return Config(
        _env_file=None,
        storage_path=str(tmp_path / "secure_data"),
        health_check_interval_seconds=300,
        standard_refresh_threshold_seconds=300,
        persistent_refresh_threshold_seconds=6 * 24 * 60 * 60,
        severe_expiry_grace_days=30,
        startup_refresh_window_seconds=24 * 60 * 60,
        provider_timeout_seconds=5,
        recover_non_persistent_sessions=False,
    )


@pytest.fixture
def provider(clock):
    return FakeIdentityProvider(clock)


@pytest.fixture
def make_session(clock) -> Callable[..., Session]:
    """Build sessions created at the current clock time."""

    def _make(
        access_token: str = "access-1",
        refresh_token: str = "refresh-1",
        expires_in_seconds: int = 3600,
        user_id: str = "user-1",
    ) -> Session:
        return Session(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=expires_in_seconds,
            created_at=clock.now(),
            user=SessionUser(id=user_id, email="cashier@example.com", phone="+40722123456"),
        )

    return _make


@pytest.fixture
def session_manager(store, clock):
    return SessionManager(store, clock)


@pytest.fixture
def coordinator(session_manager, provider, clock, config):
    return AuthCoordinator(session_manager, provider, clock, config)


@pytest.fixture
def provider_error():
    return ProviderError("identity service unavailable")
