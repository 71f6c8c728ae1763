from enum import StrEnum


class AuthState(StrEnum):
    """Authentication lifecycle states."""

    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    EXPIRING = "expiring"  # Inside the refresh threshold, refresh in flight
    RECOVERABLE_EXPIRED = "recoverable_expired"  # Refresh failed, one recovery attempt allowed
    SEVERELY_EXPIRED = "severely_expired"  # Past the grace window, always routes to LOGGED_OUT
