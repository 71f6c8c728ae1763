from datetime import datetime, timedelta

import structlog

from posterminal.core.clock import Clock
from posterminal.core.core import Service
from posterminal.core.modules.session.models import Session, SessionRecord, SessionUser
from posterminal.core.modules.session.store import SessionStore
from posterminal.errors import StorageError
from posterminal.utils import ensure_utc

logger = structlog.get_logger(__name__)

SESSION_KEY = "current_user_session"
EXPIRY_KEY = "session_expiry_timestamp"
PERSISTENT_KEY = "is_persistent_session"
NEW_USER_KEY = "user_new_state"
LAST_REFRESH_KEY = "last_refresh_timestamp"
ALL_KEYS = (SESSION_KEY, EXPIRY_KEY, PERSISTENT_KEY, NEW_USER_KEY, LAST_REFRESH_KEY)

DEFAULT_STANDARD_REFRESH_THRESHOLD_SECONDS = 300
DEFAULT_PERSISTENT_REFRESH_THRESHOLD_SECONDS = 6 * 24 * 60 * 60


class SessionManager(Service):
    """Owns the local session record: persistence, expiry and refresh thresholds."""

    def __init__(
        self,
        store: SessionStore,
        clock: Clock,
        standard_refresh_threshold_seconds: int = DEFAULT_STANDARD_REFRESH_THRESHOLD_SECONDS,
        persistent_refresh_threshold_seconds: int = DEFAULT_PERSISTENT_REFRESH_THRESHOLD_SECONDS,
    ) -> None:
        super().__init__()
        self._store = store
        self._clock = clock
        self._standard_threshold = standard_refresh_threshold_seconds
        self._persistent_threshold = persistent_refresh_threshold_seconds
        self._record: SessionRecord | None = None
        self._is_new_user = self._read_flag(NEW_USER_KEY)

    @property
    def current_record(self) -> SessionRecord | None:
        return self._record

    @property
    def current_session(self) -> Session | None:
        return self._record.session if self._record else None

    @property
    def is_persistent_session(self) -> bool:
        return self._record.is_persistent if self._record else False

    @property
    def is_session_valid(self) -> bool:
        return self._record is not None and not self.is_expired()

    def save_session(self, session: Session | None, is_persistent: bool) -> None:
        """Persist session as the current record.

        The absolute expiry is computed from the clock at save time. If the
        store fails, the record stays in memory only and any partially
        written keys are removed.
        """
        if session is None:
            self.clear_session()
            return

        current_time = self._clock.now()
        expiry = current_time + timedelta(seconds=session.expires_in_seconds) if session.expires_in_seconds > 0 else None
        self._record = SessionRecord(
            session=session,
            absolute_expiry_utc=expiry,
            is_persistent=is_persistent,
            is_new_user=self._is_new_user,
            last_refresh_utc=current_time,
        )

        try:
            self._write_record(self._record)
        except StorageError as e:
            logger.error("session_save_failed", error=str(e))
            self._clear_keys()

    def update_user(self, user: SessionUser) -> None:
        """Replace the user of the current record, keeping tokens and expiry."""
        if self._record is None:
            return
        self._record.session = self._record.session.model_copy(update={"user": user})
        try:
            self._write_record(self._record)
        except StorageError as e:
            logger.error("session_save_failed", error=str(e))
            self._clear_keys()

    def load_session(self) -> SessionRecord | None:
        """Load the persisted record. Missing, tokenless or corrupt records yield None."""
        try:
            raw = self._store.retrieve(SESSION_KEY)
        except StorageError as e:
            logger.error("session_load_failed", error=str(e))
            self._record = None
            return None

        if raw is None:
            logger.debug("session_not_found")
            self._record = None
            return None

        try:
            session = Session.model_validate_json(raw)
        except ValueError as e:
            logger.warning("session_record_corrupt", error=str(e))
            self._record = None
            return None

        if not session.is_usable:
            logger.debug("session_without_access_token")
            self._record = None
            return None

        absolute_expiry = self._read_timestamp(EXPIRY_KEY)
        if absolute_expiry is None and session.expires_in_seconds > 0:
            absolute_expiry = session.created_at + timedelta(seconds=session.expires_in_seconds)

        self._is_new_user = self._read_flag(NEW_USER_KEY)
        self._record = SessionRecord(
            session=session,
            absolute_expiry_utc=absolute_expiry,
            is_persistent=self._read_flag(PERSISTENT_KEY),
            is_new_user=self._is_new_user,
            last_refresh_utc=self._read_timestamp(LAST_REFRESH_KEY),
        )
        return self._record

    def clear_session(self) -> None:
        """Drop the in-memory record and every persisted key. Safe to call repeatedly."""
        self._clear_keys()
        self._record = None
        self._is_new_user = False

    def get_expiry_time_utc(self) -> datetime | None:
        if self._record is None:
            return None
        if self._record.absolute_expiry_utc is not None:
            return self._record.absolute_expiry_utc

        session = self._record.session
        if session.expires_in_seconds > 0:
            return session.created_at + timedelta(seconds=session.expires_in_seconds)
        return None

    def time_until_expiry(self) -> timedelta | None:
        expiry = self.get_expiry_time_utc()
        if expiry is None:
            return None
        return expiry - self._clock.now()

    def is_expired(self) -> bool:
        expiry = self.get_expiry_time_utc()
        return expiry is not None and self._clock.now() > expiry

    def get_refresh_threshold_seconds(self) -> int:
        return self._persistent_threshold if self.is_persistent_session else self._standard_threshold

    def get_last_refresh_time_utc(self) -> datetime | None:
        return self._record.last_refresh_utc if self._record else None

    def set_user_new_state(self, is_new: bool) -> None:
        self._is_new_user = is_new
        if self._record is not None:
            self._record.is_new_user = is_new
        try:
            self._store.store(NEW_USER_KEY, _encode_flag(is_new))
        except StorageError as e:
            logger.error("user_new_state_save_failed", error=str(e))

    def get_user_new_state(self) -> bool:
        return self._is_new_user

    def _write_record(self, record: SessionRecord) -> None:
        # The session blob goes last so a record is only readable once its metadata is in place
        self._store.store(PERSISTENT_KEY, _encode_flag(record.is_persistent))
        self._store.store(NEW_USER_KEY, _encode_flag(record.is_new_user))
        if record.last_refresh_utc is not None:
            self._store.store(LAST_REFRESH_KEY, _encode_timestamp(record.last_refresh_utc))
        if record.absolute_expiry_utc is not None:
            self._store.store(EXPIRY_KEY, _encode_timestamp(record.absolute_expiry_utc))
        else:
            self._store.clear(EXPIRY_KEY)
        self._store.store(SESSION_KEY, record.session.model_dump_json(by_alias=True).encode("utf-8"))

    def _clear_keys(self) -> None:
        for key in ALL_KEYS:
            try:
                self._store.clear(key)
            except StorageError as e:
                logger.error("session_key_clear_failed", key=key, error=str(e))

    def _read_flag(self, key: str) -> bool:
        try:
            raw = self._store.retrieve(key)
        except StorageError:
            return False
        return raw is not None and raw.strip().lower() == b"true"

    def _read_timestamp(self, key: str) -> datetime | None:
        try:
            raw = self._store.retrieve(key)
        except StorageError:
            return None
        if raw is None:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(raw.decode("utf-8").strip()))
        except (UnicodeDecodeError, ValueError):
            logger.warning("session_timestamp_corrupt", key=key)
            return None


def _encode_flag(value: bool) -> bytes:
    return b"true" if value else b"false"


def _encode_timestamp(value: datetime) -> bytes:
    return ensure_utc(value).isoformat().encode("utf-8")
