from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound on any password accepted over HTTP; policy limits apply after
MAX_PASSWORD_LENGTH = 1024
MAX_TOKEN_LENGTH = 4096


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    errors: Optional[List[Any]] = None
    error_code: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return Envelope(success=True, message=message, data=data).to_content()


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class DeviceInfoModel(BaseModel):
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip: Optional[str] = Field(default=None, max_length=64)
    platform: Optional[str] = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    device_info: Optional[DeviceInfoModel] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    device_info: Optional[DeviceInfoModel] = None


class AccountView(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: str
    email_verified: bool = False
    must_change_password: bool = False


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    account: Optional[AccountView] = None
    must_change_password: bool = False
    password_expired: bool = False


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class PasswordCheckRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class PasswordValidateRequest(PasswordCheckRequest):
    user_info: Optional[Dict[str, Any]] = None


class PasswordPolicyUpdate(BaseModel):
    """Partial policy update; omitted fields keep their current value."""

    min_length: Optional[int] = None
    max_length: Optional[int] = None
    require_uppercase: Optional[bool] = None
    require_lowercase: Optional[bool] = None
    require_numbers: Optional[bool] = None
    require_special_chars: Optional[bool] = None
    prevent_common_passwords: Optional[bool] = None
    prevent_personal_info: Optional[bool] = None
    password_history_count: Optional[int] = None
    max_age_days: Optional[int] = None
    lockout_threshold: Optional[int] = None
    lockout_duration_minutes: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class TemporaryTokenRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=64)
    data: Optional[Dict[str, Any]] = None
    expiry: str = Field(default="10m", max_length=16)


class TemporaryTokenVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    action: Optional[str] = Field(default=None, max_length=64)


class AdminReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=256)


class AdminLockRequest(AdminReasonRequest):
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 365)


class TemporaryPasswordRequest(BaseModel):
    email: str
    expires_in: str = Field(default="24h", max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_temp_email(cls, value: str) -> str:
        return _validate_email(value)
