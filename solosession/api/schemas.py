from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested depth accepted for caller supplied metadata
MAX_METADATA_DEPTH = 8
MAX_METADATA_KEYS = 64

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _depth(obj: Any, current: int = 0) -> int:
    if isinstance(obj, dict):
        return max((_depth(value, current + 1) for value in obj.values()), default=current + 1)
    if isinstance(obj, list):
        return max((_depth(item, current + 1) for item in obj), default=current + 1)
    return current


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., min_length=1, max_length=128)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    device_info: Optional[str] = Field(default=None, max_length=256)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("user_id")
    @classmethod
    def _strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user_id must not be blank")
        return value

    @field_validator("metadata")
    @classmethod
    def _validate_metadata(cls, value: Optional[dict]) -> Optional[dict]:
        if value is None:
            return None
        if len(value) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata may hold at most {MAX_METADATA_KEYS} keys")
        if _depth(value) > MAX_METADATA_DEPTH:
            raise ValueError(f"metadata nesting exceeds {MAX_METADATA_DEPTH} levels")
        return value


class SessionMetadataOut(BaseModel):
    model_config = ConfigDict(extra="allow")

    userAgent: Any = ""
    ipAddress: Any = ""
    deviceInfo: Any = ""


class SessionOut(BaseModel):
    userId: str
    sessionId: str
    createdAt: int
    lastActivity: int
    metadata: SessionMetadataOut


class SessionCreateResponse(BaseModel):
    session_id: str
    expires_in: int
    session: SessionOut


class SessionRemovedResponse(BaseModel):
    user_id: str
    removed: bool


__all__ = [
    "Envelope",
    "ErrorBody",
    "SessionCreateRequest",
    "SessionCreateResponse",
    "SessionOut",
    "SessionRemovedResponse",
]
