"""Session value objects and their persisted form."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from posterminal.utils import ensure_utc, now


class SessionUser(BaseModel):
    """Identity of the user a session belongs to."""

    id: str
    phone: str | None = None
    email: str | None = None
    claims: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """Access/refresh token pair issued by the identity provider.

    Serialized with camelCase keys (accessToken, refreshToken, tokenType,
    expiresIn, createdAt, user).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str = ""
    refresh_token: str = ""
    token_type: str = "bearer"
    expires_in_seconds: int = Field(default=0, alias="expiresIn")
    created_at: datetime = Field(default_factory=now)
    user: SessionUser | None = None

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_usable(self) -> bool:
        return bool(self.access_token)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)


class SessionRecord(BaseModel):
    """Session plus the bookkeeping persisted next to it."""

    session: Session
    absolute_expiry_utc: datetime | None = None  # Authoritative over created_at + expires_in
    is_persistent: bool = False
    is_new_user: bool = False
    last_refresh_utc: datetime | None = None

    @field_validator("absolute_expiry_utc", "last_refresh_utc")
    @classmethod
    def _timestamps_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None
