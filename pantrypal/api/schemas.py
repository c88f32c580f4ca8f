from __future__ import annotations

from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Field contents are checked by the identity broker so that every rule
# produces the same outcome vocabulary; only sizes are bounded here.


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=128)
    password: str = Field(..., max_length=256)


class NewPasswordChallengeRequest(BaseModel):
    username: str = Field(..., max_length=128)
    session: str = Field(..., max_length=4096, description="Single-use challenge handle")
    new_password: str = Field(..., max_length=256)
    email: Optional[str] = Field(default=None, max_length=254)


class ResetRequest(BaseModel):
    identifier: str = Field(..., max_length=254)


class ResetConfirmRequest(BaseModel):
    identifier: str = Field(..., max_length=254)
    code: str = Field(..., max_length=16)
    new_password: str = Field(..., max_length=256)


class ContactUpdateRequest(BaseModel):
    attribute: str = Field(default="email", max_length=32)
    value: str = Field(..., max_length=254)


class AuthResponse(BaseModel):
    outcome: Literal["authenticated", "challenge_required", "completed"]
    message: str
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    challenge: Optional[str] = None
    session: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class DeliveryResponse(BaseModel):
    destination: Optional[str] = None
    medium: Optional[str] = None
    attribute: Optional[str] = None


class ContactUpdateResponse(BaseModel):
    outcome: Literal["updated", "partially_updated"]
    message: str
    completed_steps: List[str] = Field(default_factory=list)
    failed_step: Optional[str] = None
    reason: Optional[str] = None
    delivery: Optional[DeliveryResponse] = None


class MeResponse(BaseModel):
    subject: str
    expires_at: Optional[str] = None
    remaining_seconds: int
    claims: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
