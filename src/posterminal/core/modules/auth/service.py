import asyncio
import contextlib
from collections.abc import Callable, Iterator
from datetime import timedelta

import structlog

from posterminal.config import Config
from posterminal.core.clock import Clock
from posterminal.core.core import Service
from posterminal.core.events import Signal
from posterminal.core.modules.access.service import AccessService
from posterminal.core.modules.auth.models import AuthState
from posterminal.core.modules.identity.models import UserAttributes
from posterminal.core.modules.identity.provider import IdentityProviderClient, call_provider
from posterminal.core.modules.session.models import Session, SessionUser
from posterminal.core.modules.session.service import SessionManager
from posterminal.errors import AuthenticationError, ProviderError, ValidationError
from posterminal.utils import is_e164_phone, is_email

logger = structlog.get_logger(__name__)


class AuthCoordinator(Service):
    """Authentication state machine.

    Runs login, registration and OTP flows against the identity provider,
    keeps the session fresh with a periodic health check, reconciles stored
    sessions with the provider once it becomes ready and publishes
    `session_changed` whenever the authentication status changes.

    At most one refresh is in flight at a time. Every clear or new login bumps
    a generation counter, and refresh results that belong to an older
    generation are discarded.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        provider: IdentityProviderClient,
        clock: Clock,
        config: Config,
        session_changed: Signal | None = None,
        access: AccessService | None = None,
    ) -> None:
        super().__init__()
        self._session = session_manager
        self._provider = provider
        self._clock = clock
        self._config = config
        self.session_changed = session_changed if session_changed is not None else Signal("session_changed")
        self._access = access if access is not None else AccessService(provider, session_manager, config.provider_timeout_seconds)
        self._timeout = config.provider_timeout_seconds
        self._severe_expiry = timedelta(days=config.severe_expiry_grace_days)

        self._state = AuthState.LOGGED_OUT
        self._generation = 0
        self._synced_generation: int | None = None
        self._refresh_task: asyncio.Task[bool] | None = None
        self._refresh_generation = -1
        self._health_task: asyncio.Task[None] | None = None
        self._disconnect_ready: Callable[[], None] | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def current_session(self) -> Session | None:
        return self._session.current_session

    @property
    def current_user(self) -> SessionUser | None:
        session = self._session.current_session
        return session.user if session else None

    @property
    def is_new_user(self) -> bool:
        return self._session.get_user_new_state()

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    # Lifecycle

    async def on_start(self) -> None:
        """Load the stored session, sync it if the provider is ready and start the health checks."""
        self._disconnect_ready = self._provider.ready.connect(self.on_provider_ready)
        await self._load_stored_session()
        if self._provider.is_ready:
            await self.on_provider_ready()
        self._health_task = asyncio.create_task(self._run_health_checks())
        logger.debug("auth_coordinator_started", state=self._state)

    async def on_stop(self) -> None:
        if self._disconnect_ready is not None:
            self._disconnect_ready()
            self._disconnect_ready = None
        for task in (self._health_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        self._health_task = None
        self._refresh_task = None

    async def _load_stored_session(self) -> None:
        record = self._session.load_session()
        if record is None:
            self._state = AuthState.LOGGED_OUT
            return

        if self._is_severely_expired():
            logger.warning("stored_session_severely_expired")
            self._state = AuthState.SEVERELY_EXPIRED
            await self._clear_and_notify()
            return

        self._state = self._settled_state()
        logger.info("stored_session_loaded", user_id=self._user_id(), persistent=record.is_persistent)
        await self.session_changed.emit()

    async def _run_health_checks(self) -> None:
        while True:
            await asyncio.sleep(self._config.health_check_interval_seconds)
            await self.validate_health()

    # Authentication operations

    async def login(self, email: str, password: str, remember: bool = False) -> Session | None:
        """Sign in with email and password. Returns None when the provider returns no usable session."""
        _require(email, "Email")
        _require(password, "Password")
        logger.info("login_started", email=email)

        with self._authenticating("login", email=email):
            session = await call_provider("sign_in_password", self._provider.sign_in_password(email, password), self._timeout)
            if not _is_complete(session):
                logger.warning("login_returned_invalid_session", email=email)
                return None
            await self._establish(session, remember, is_new_user=False)
        return session

    async def register(self, email: str, password: str, remember: bool = False) -> Session | None:
        """Create an account with email and password. Returns None when the provider returns no usable session."""
        _require(email, "Email")
        _require(password, "Password")
        logger.info("registration_started", email=email)

        with self._authenticating("register", email=email):
            session = await call_provider("sign_up", self._provider.sign_up(email, password), self._timeout)
            if not _is_complete(session):
                logger.warning("registration_returned_invalid_session", email=email)
                return None
            await self._establish(session, remember, is_new_user=True)
        return session

    async def request_otp(self, phone: str) -> None:
        """Send a one-time password by SMS. Raises ValidationError for numbers not in E.164 format."""
        _require_phone(phone)
        logger.info("otp_requested", phone=phone)

        try:
            await call_provider("sign_in_otp_request", self._provider.sign_in_otp_request(phone), self._timeout)
        except ProviderError as e:
            logger.error("otp_request_failed", phone=phone, error=str(e))
            raise
        logger.debug("otp_sent", phone=phone)

    async def verify_otp(self, phone: str, code: str, remember: bool = False) -> Session | None:
        """Verify an SMS one-time password.

        Users who are not staff in any organization yet are flagged as new so
        the terminal can route them to onboarding.
        """
        _require_phone(phone)
        _require(code, "Verification code")
        logger.info("otp_verification_started", phone=phone)

        with self._authenticating("verify_otp", phone=phone):
            session = await call_provider("verify_otp", self._provider.verify_otp(phone, code), self._timeout)
            if session is None or session.user is None or not session.is_usable:
                logger.warning("otp_returned_invalid_session", phone=phone)
                return None

            await call_provider(
                "set_session", self._provider.set_session(session.access_token, session.refresh_token), self._timeout
            )
            is_member = await self._access.is_member_of_any_organization(session.user.id)
            await self._establish(session, remember, is_new_user=not is_member)
        return session

    async def update_user_email(self, email: str) -> SessionUser:
        """Change the email address of the logged in user and store the updated profile."""
        session = self._session.current_session
        if session is None or session.user is None:
            logger.error("email_update_without_user")
            raise AuthenticationError

        email = email.strip()
        if not is_email(email):
            raise ValidationError("Invalid email address")

        generation = self._generation
        try:
            user = await call_provider(
                "update_user_attributes", self._provider.update_user_attributes(UserAttributes(email=email)), self._timeout
            )
        except ProviderError as e:
            logger.error("email_update_failed", user_id=session.user.id, error=str(e))
            raise
        if user is None:
            raise ProviderError("Failed to update user email")

        # Skip the local update if the user logged out or someone else logged in meanwhile
        if generation == self._generation and self._session.current_session is not None:
            self._session.update_user(user)
        logger.info("email_updated", user_id=user.id)
        await self.session_changed.emit()
        return user

    def set_user_as_existing(self) -> bool:
        """Mark onboarding as done. Returns the stored new-user flag."""
        self._session.set_user_new_state(False)
        return self._session.get_user_new_state()

    async def logout(self) -> None:
        """Sign out. Local state is always cleared, even if the remote sign-out fails."""
        logger.info("logout_started", user_id=self._user_id())
        had_session = self._session.current_session is not None
        # Cleared before the remote sign-out; refreshes started from here on see no session
        self._invalidate()
        self._session.clear_session()
        self._state = AuthState.LOGGED_OUT

        if had_session and self._provider.is_ready:
            try:
                await call_provider("sign_out", self._provider.sign_out(), self._timeout)
            except Exception as e:
                logger.warning("remote_sign_out_failed", error=str(e))

        try:
            await call_provider("initialize", self._provider.initialize(), self._timeout)
        except Exception as e:
            logger.warning("provider_reinitialize_failed", error=str(e))

        await self.session_changed.emit()

    def is_logged_in(self) -> bool:
        session = self._session.current_session
        return session is not None and session.user is not None and not self._session.is_expired()

    # Refresh

    async def refresh_session(self) -> bool:
        """Refresh the current session.

        Returns False without contacting the provider when there is no refresh
        token or the provider is not ready. Concurrent callers share the
        in-flight refresh. Provider failures raise ProviderError.
        """
        session = self._session.current_session
        if session is None or not session.has_refresh_token or not self._provider.is_ready:
            logger.warning(
                "refresh_skipped",
                has_refresh_token=session is not None and session.has_refresh_token,
                provider_ready=self._provider.is_ready,
            )
            return False

        if self.is_refreshing and self._refresh_generation == self._generation:
            logger.debug("refresh_already_in_flight")
        else:
            self._refresh_generation = self._generation
            self._refresh_task = asyncio.create_task(self._refresh(session.refresh_token, self._generation))
            self._refresh_task.add_done_callback(_consume_task_result)

        return await asyncio.shield(self._refresh_task)

    async def _refresh(self, refresh_token: str, generation: int) -> bool:
        logger.debug("session_refresh_started")
        refreshed = await call_provider("refresh_token", self._provider.refresh_token(refresh_token), self._timeout)

        current = self._session.current_session
        if generation != self._generation or current is None:
            logger.info("stale_refresh_discarded")
            return False
        if refreshed is None or not refreshed.is_usable:
            logger.error("session_refresh_returned_nothing")
            return False

        if refreshed.user is None:
            refreshed = refreshed.model_copy(update={"user": current.user})

        self._session.save_session(refreshed, self._session.is_persistent_session)
        self._state = AuthState.VALID
        logger.info("session_refreshed", user_id=self._user_id(), persistent=self._session.is_persistent_session)
        await self.session_changed.emit()
        return True

    async def _try_refresh(self) -> bool:
        try:
            return await self.refresh_session()
        except Exception as e:
            logger.error("session_refresh_failed", error=str(e))
            return False

    # Health check

    async def validate_health(self) -> AuthState:
        """Periodic tick: refresh, recover or clear the session as its expiry approaches. Never raises."""
        try:
            return await self._validate_health()
        except Exception as e:
            logger.exception("session_validation_error", error=str(e))
            return self._state

    async def _validate_health(self) -> AuthState:
        record = self._session.current_record
        if record is None:
            self._state = AuthState.LOGGED_OUT
            return self._state

        remaining = self._session.time_until_expiry()
        if remaining is None:
            logger.debug("session_expiry_unknown")
            self._state = AuthState.VALID
            return self._state

        if remaining < -self._severe_expiry:
            # The refresh token is assumed to be expired server-side as well
            logger.warning("session_severely_expired", expired_days=round(-remaining.total_seconds() / 86400, 1))
            self._state = AuthState.SEVERELY_EXPIRED
            await self._clear_and_notify()
            return self._state

        if not self._provider.is_ready:
            logger.debug("health_check_waiting_for_provider")
            return self._state

        threshold = self._session.get_refresh_threshold_seconds()
        if remaining.total_seconds() >= threshold:
            self._state = AuthState.VALID
            logger.debug(
                "session_healthy",
                expires_in_hours=round(remaining.total_seconds() / 3600, 1),
                persistent=record.is_persistent,
            )
            return self._state

        logger.info("session_expiring", expires_in_seconds=round(remaining.total_seconds(), 1))
        self._state = AuthState.EXPIRING
        generation = self._generation
        if await self._try_refresh():
            return self._state
        if generation != self._generation:
            return self._state
        return await self._recover(generation)

    async def _recover(self, generation: int) -> AuthState:
        record = self._session.current_record
        if record is None:
            return self._state
        if not self._session.is_expired():
            # Tokens still valid, the next tick retries the refresh
            logger.info("session_refresh_deferred", persistent=record.is_persistent)
            return self._state

        recovery_allowed = record.is_persistent or self._config.recover_non_persistent_sessions
        if not record.session.has_refresh_token or not recovery_allowed:
            logger.warning("expired_session_not_recoverable", persistent=record.is_persistent)
            await self._clear_and_notify()
            return self._state

        self._state = AuthState.RECOVERABLE_EXPIRED
        logger.info("session_recovery_started", persistent=record.is_persistent)
        if await self._try_refresh():
            return self._state
        if generation != self._generation:
            return self._state

        logger.warning("session_recovery_failed")
        await self._clear_and_notify()
        return self._state

    # Provider reconciliation

    async def on_provider_ready(self) -> None:
        """Push the stored session into the provider once it is ready. Never raises.

        Runs at most once per session. An already expired session is refreshed
        instead; any failure clears the session.
        """
        session = self._session.current_session
        if session is None or not session.is_usable:
            return
        if self._synced_generation == self._generation:
            return

        generation = self._generation
        self._synced_generation = generation
        self._state = AuthState.AUTHENTICATING
        logger.debug("session_sync_started")

        try:
            if self._session.is_expired() and session.has_refresh_token:
                if not await self.refresh_session():
                    raise ProviderError("Refresh during provider sync returned no session")
            else:
                await call_provider(
                    "set_session", self._provider.set_session(session.access_token, session.refresh_token), self._timeout
                )
                logger.info("session_synced_with_provider", persistent=self._session.is_persistent_session)
                await self._refresh_if_expiring_soon()
        except Exception as e:
            logger.error("session_sync_failed", error=str(e))
            if generation == self._generation:
                await self._clear_and_notify()
            return

        if generation == self._generation:
            self._state = self._settled_state()

    async def _refresh_if_expiring_soon(self) -> None:
        remaining = self._session.time_until_expiry()
        if remaining is None or remaining.total_seconds() >= self._config.startup_refresh_window_seconds:
            return
        if not await self._try_refresh():
            logger.info("startup_refresh_deferred_to_health_check")

    # Diagnostics

    def run_auth_diagnostics(self) -> str:
        """Return a plain text report of the authentication state for support staff."""
        current_time = self._clock.now()
        lines = ["=== AUTH DIAGNOSTICS ===", f"Current Time (UTC): {current_time.isoformat()}"]
        lines.append(f"State: {self._state}")
        lines.append(f"Provider Ready: {self._provider.is_ready}")
        lines.append(f"Is New User: {self.is_new_user}")

        session = self._session.current_session
        lines.append(f"Has User Session: {session is not None}")
        if session is not None:
            lines.append(f"User ID: {session.user.id if session.user else 'N/A'}")
            lines.append(f"Has Access Token: {session.is_usable}")
            lines.append(f"Has Refresh Token: {session.has_refresh_token}")
            lines.append(f"Created At: {session.created_at.isoformat()}")
            lines.append(f"Expires In: {session.expires_in_seconds} seconds")

            expiry = self._session.get_expiry_time_utc()
            if expiry is not None:
                lines.append(f"Calculated Expiry: {expiry.isoformat()}")
                lines.append(f"Is Expired: {current_time > expiry}")
                lines.append(f"Time Until Expiry: {expiry - current_time}")
            else:
                lines.append("Expiry Time: Could not be determined")

            last_refresh = self._session.get_last_refresh_time_utc()
            lines.append(f"Last Refresh: {last_refresh.isoformat() if last_refresh else 'N/A'}")
            lines.append(f"Refresh Threshold: {self._session.get_refresh_threshold_seconds()} seconds")

        lines.append(f"Is Logged In: {self.is_logged_in()}")
        lines.append(f"Is Persistent Session: {self._session.is_persistent_session}")
        lines.append("=== END AUTH DIAGNOSTICS ===")
        return "\n".join(lines)

    # Internals

    @contextlib.contextmanager
    def _authenticating(self, operation: str, **context: str) -> Iterator[None]:
        previous = self._state
        self._state = AuthState.AUTHENTICATING
        try:
            yield
        except Exception as e:
            logger.error("authentication_failed", operation=operation, error=str(e), **context)
            raise
        finally:
            if self._state is AuthState.AUTHENTICATING:
                self._state = previous

    async def _establish(self, session: Session, remember: bool, is_new_user: bool) -> None:
        self._invalidate()
        self._session.set_user_new_state(is_new_user)
        self._session.save_session(session, remember)
        self._synced_generation = self._generation
        self._state = AuthState.VALID
        logger.info("authentication_succeeded", user_id=self._user_id(), persistent=remember, is_new_user=is_new_user)
        await self.session_changed.emit()

    async def _clear_and_notify(self) -> None:
        self._invalidate()
        self._session.clear_session()
        self._state = AuthState.LOGGED_OUT
        await self.session_changed.emit()

    def _invalidate(self) -> None:
        self._generation += 1

    def _is_severely_expired(self) -> bool:
        remaining = self._session.time_until_expiry()
        return remaining is not None and remaining < -self._severe_expiry

    def _settled_state(self) -> AuthState:
        if self._session.current_record is None:
            return AuthState.LOGGED_OUT
        remaining = self._session.time_until_expiry()
        if remaining is not None and remaining.total_seconds() < self._session.get_refresh_threshold_seconds():
            return AuthState.EXPIRING
        return AuthState.VALID

    def _user_id(self) -> str | None:
        user = self.current_user
        return user.id if user else None


def _require(value: str, field: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")


def _require_phone(phone: str) -> None:
    if not phone or not is_e164_phone(phone):
        logger.error("invalid_phone_number")
        raise ValidationError("Phone number must be in E.164 format (e.g., +40722123456)")


def _is_complete(session: Session | None) -> bool:
    return session is not None and session.user is not None and session.is_usable


def _consume_task_result(task: asyncio.Task[bool]) -> None:
    # Marks a failed refresh as retrieved when every awaiting caller was cancelled
    if not task.cancelled():
        task.exception()
