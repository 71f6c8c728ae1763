from typing import Any

from pydantic import BaseModel, Field


class UserAttributes(BaseModel):
    """Attributes sent to the identity provider on a user update. Unset fields are left unchanged."""

    email: str | None = None
    phone: str | None = None
    password: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
