from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from authcore.storage.models import User

# E.164: leading +, no leading zero, at most 15 digits
_E164 = re.compile(r"^\+[1-9]\d{1,14}$")
_OTP = re.compile(r"^\d{6}$")

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "INVALID_OTP",
    "INVALID_TOKEN",
    "INVALID_REFRESH_TOKEN",
    "UNAUTHORIZED",
    "TOKEN_EXPIRED",
    "TOKEN_REVOKED",
    "FORBIDDEN",
    "USER_INACTIVE",
    "USER_SUSPENDED",
    "NOT_FOUND",
    "USER_NOT_FOUND",
    "CONFLICT",
    "RATE_LIMIT_EXCEEDED",
    "OTP_RESEND_TOO_SOON",
    "IDENTITY_PROVIDER_ERROR",
    "SERVER_ERROR",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, client-switchable code."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_phone(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    normalized = unicodedata.normalize("NFKC", value).strip().replace(" ", "").replace("-", "")
    if not _E164.match(normalized):
        raise ValueError("Invalid phone number format (E.164 format required)")
    return normalized


class CamelModel(BaseModel):
    """Wire models use camelCase names; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PhoneRequest(CamelModel):
    phone: str = Field(..., max_length=32)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return _normalize_phone(value)


class VerifyOtpRequest(PhoneRequest):
    otp: str

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        value = value.strip()
        if not _OTP.match(value):
            raise ValueError("OTP must be exactly 6 digits")
        return value


class OAuthCallbackRequest(CamelModel):
    access_token: str = Field(..., min_length=1, max_length=8192)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class OtpSentResponse(CamelModel):
    phone: str
    expires_in: int
    message: str = "OTP sent successfully"


class UserPublic(CamelModel):
    id: str
    phone: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str
    is_active: bool
    is_suspended: bool
    phone_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            phone=user.phone,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar_url=user.avatar_url,
            role=user.role,
            is_active=user.is_active,
            is_suspended=user.is_suspended,
            phone_verified_at=user.phone_verified_at,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthResponse(CamelModel):
    user: UserPublic
    token: str
    refresh_token: str
    expires_in: int


class TokenPairResponse(CamelModel):
    token: str
    refresh_token: str
    expires_in: int


class OAuthUrlResponse(CamelModel):
    url: str


class MeResponse(CamelModel):
    user: UserPublic


class LogoutResponse(CamelModel):
    message: str = "Logged out successfully"
    sessions_revoked: int
    refresh_tokens_revoked: int


class RoleAssignmentRequest(CamelModel):
    role: str = Field(..., min_length=1, max_length=32)
