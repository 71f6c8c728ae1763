from abc import ABC


class UserError(ABC, Exception):
    """Base class for user-facing errors.

    All errors that inherit from UserError may have their messages
    displayed on the terminal screen. These errors must not contain
    tokens or other sensitive information.
    """


class ValidationError(UserError):
    """Raised when user input fails validation before any network call."""


class AuthenticationError(UserError):
    """Raised when an operation requires a logged in user."""

    def __init__(self, message: str = "No user is logged in") -> None:
        super().__init__(message)


class ProviderError(UserError):
    """Raised when the identity provider fails or times out."""

    def __init__(self, message: str = "Identity provider request failed") -> None:
        super().__init__(message)


class StorageError(Exception):
    """Raised when the session store cannot read or write a key."""
