from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "csrf_mismatch",
    "refresh_failed",
    "network_error",
    "not_found",
    "validation_error",
    "server_error",
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
    """Envelope returned by the adaptation layer for its own errors."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Identity provider payloads. The provider speaks camelCase JSON.


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


T = TypeVar("T")


class ApiResult(_CamelModel, Generic[T]):
    """``{isSuccess, message, errors, data}`` wrapper around every provider reply."""

    is_success: bool = False
    message: Optional[str] = None
    errors: Optional[List[str]] = None
    data: Optional[T] = None

    def first_error(self, default: str) -> str:
        if self.errors:
            return str(self.errors[0])
        return self.message or default


class RefreshData(_CamelModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    challenge_id: Optional[str] = None
    masked_phone_number: Optional[str] = None


class SessionData(_CamelModel):
    authenticated: bool = False
    access_token: Optional[str] = None


class SendOtpData(_CamelModel):
    challenge_id: Optional[str] = None
    masked_phone_number: Optional[str] = None


class VerifyOtpData(_CamelModel):
    user_id: Optional[str] = None
    is_success: bool = False
    access_token: Optional[str] = None
    expires_in: Optional[int] = None


class LogoutData(_CamelModel):
    is_success: bool = False
    message: Optional[str] = None


_NATIONAL_CODE = re.compile(r"^\d{10}$")
_OTP_CODE = re.compile(r"^\d{4,8}$")


class SendOtpRequest(_CamelModel):
    national_code: str
    purpose: str = Field(default="login", pattern="^(login|register|reset_password)$")
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @field_validator("national_code")
    @classmethod
    def _validate_national_code(cls, value: str) -> str:
        value = value.strip()
        if not _NATIONAL_CODE.match(value):
            raise ValueError("national code must be 10 digits")
        return value


class VerifyOtpRequest(_CamelModel):
    challenge_id: str = Field(..., min_length=1, max_length=256)
    otp_code: str

    @field_validator("otp_code")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        value = value.strip()
        if not _OTP_CODE.match(value):
            raise ValueError("otp code must be 4-8 digits")
        return value


class DeviceContext(_CamelModel):
    """Device fields sent with refresh and login calls."""

    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class ClientInfoResponse(_CamelModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: Optional[int] = None


class UserProfile(_CamelModel):
    id: str
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    national_id: Optional[str] = None
    phone: Optional[str] = None
    roles: Optional[List[Any]] = None
    claims: Optional[List[Any]] = None
    preferences: Optional[List[Any]] = None


class MeResult(_CamelModel):
    """``/me`` answers ``{result, errors}`` rather than the usual wrapper."""

    result: Optional[UserProfile] = None
    errors: Optional[List[str]] = None

    @property
    def is_success(self) -> bool:
        return self.result is not None

    @property
    def data(self) -> Optional[UserProfile]:
        return self.result

    def first_error(self, default: str) -> str:
        if self.errors:
            return str(self.errors[0])
        return default


class SessionItem(_CamelModel):
    id: str
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = False
    is_revoked: bool = False
    is_current: bool = False


class SessionPage(_CamelModel):
    items: List[SessionItem] = Field(default_factory=list)
    total_count: int = 0
    page_number: int = 1
    page_size: int = 10


class SessionQuery(_CamelModel):
    """Filters for the paged session listing."""

    page_number: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1, le=100)
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    is_active: Optional[bool] = None
    is_revoked: Optional[bool] = None
    is_expired: Optional[bool] = None
    search_term: Optional[str] = None
    sort_by: Optional[str] = None
    sort_direction: Optional[str] = Field(default=None, pattern="^(asc|desc)$")

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for key, value in self.model_dump(by_alias=True, exclude_none=True).items():
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params
