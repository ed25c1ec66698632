# FILE: shopedge/schemas.py
from __future__ import annotations

import re
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_MOBILE_SEPARATORS = re.compile(r"[\s\-()]")


class LoginRequest(BaseModel):
    """Credentials forwarded to the identity authority; never logged."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    mobile: str = Field(..., min_length=1, max_length=20, pattern=r"^\+?[0-9]+$", description="Subscriber mobile number")
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("mobile", mode="before")
    @classmethod
    def _strip_separators(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _MOBILE_SEPARATORS.sub("", v)
        return v

    def mobile_matches(self, patterns: Iterable[re.Pattern[str]]) -> bool:
        return any(p.match(self.mobile) for p in patterns)


class SessionView(BaseModel):
    """Public session fields. The access token is not part of this model."""

    id: str
    mobile: str
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    address: Optional[str] = None
    expiresAt: int = Field(..., description="Expiry, epoch milliseconds")


class SessionEnvelope(BaseModel):
    session: Optional[SessionView] = None


class LogoutResponse(BaseModel):
    ok: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    config_hash: str
    profile: str


__all__ = ["LoginRequest", "SessionView", "SessionEnvelope", "LogoutResponse", "HealthResponse"]
