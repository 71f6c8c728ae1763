"""Command line entry point: report on the session stored on this terminal."""

import structlog

from posterminal.config import Config
from posterminal.core.clock import SystemClock
from posterminal.core.modules.session.service import SessionManager
from posterminal.core.modules.session.store import FileSessionStore
from posterminal.logging import setup_logging

logger = structlog.get_logger(__name__)


def describe_stored_session(config: Config) -> str:
    """Load the stored session without contacting the identity provider and describe it."""
    manager = SessionManager(
        FileSessionStore(config.storage_path),
        SystemClock(),
        standard_refresh_threshold_seconds=config.standard_refresh_threshold_seconds,
        persistent_refresh_threshold_seconds=config.persistent_refresh_threshold_seconds,
    )
    record = manager.load_session()
    if record is None:
        return "No stored session"

    expiry = manager.get_expiry_time_utc()
    user = record.session.user
    lines = [
        f"User ID: {user.id if user else 'N/A'}",
        f"Persistent: {record.is_persistent}",
        f"New User: {record.is_new_user}",
        f"Expires At: {expiry.isoformat() if expiry else 'unknown'}",
        f"Expired: {manager.is_expired()}",
        f"Refresh Threshold: {manager.get_refresh_threshold_seconds()} seconds",
    ]
    return "\n".join(lines)


def main() -> None:
    config = Config()
    setup_logging(config.debug)
    logger.debug("inspecting_stored_session", storage_path=config.storage_path)
    print(describe_stored_session(config))


if __name__ == "__main__":
    main()
