from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Terminal client configuration loaded from environment variables."""

    debug: bool = False
    storage_path: str = ".posterminal/secure_data"  # Directory for the file-backed session store
    health_check_interval_seconds: float = 300
    standard_refresh_threshold_seconds: int = 300
    persistent_refresh_threshold_seconds: int = 6 * 24 * 60 * 60
    severe_expiry_grace_days: int = 30  # Expired longer than this: cleared, never refreshed
    startup_refresh_window_seconds: int = 24 * 60 * 60  # Refresh right after startup sync if expiring sooner
    provider_timeout_seconds: float = 30.0
    recover_non_persistent_sessions: bool = False

    model_config = {
        "env_file": [".env"],
        "env_prefix": "POSTERMINAL_",
        "extra": "ignore",
    }
