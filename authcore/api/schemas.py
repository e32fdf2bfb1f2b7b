from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.storage.models import SessionInfo, User

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 128


class Envelope(BaseModel):
    """Every response body: a human-readable message and an optional payload."""

    message: str
    data: Any = None


def _strip_lower(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().lower()


class SignInRequest(BaseModel):
    email: str = Field(max_length=MAX_EMAIL_LENGTH)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_lower(value)


class SignUpRequest(BaseModel):
    email: str = Field(max_length=MAX_EMAIL_LENGTH)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_lower(value)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _strip_lower(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", max_length=256)
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=MAX_EMAIL_LENGTH)
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=512)
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    photo_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _strip_lower(value) or None


class UserResponse(BaseModel):
    id: int
    email: str
    role: str
    is_verified: bool
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    photo_url: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            name=user.name,
            phone=user.phone,
            address=user.address,
            lat=user.lat,
            lng=user.lng,
            photo_url=user.photo_url,
            created_at=user.created_at,
        )


class SignInResponse(BaseModel):
    token: str
    session_id: str
    expires_at: int
    user: UserResponse


class ProfileUpdateResponse(BaseModel):
    user: UserResponse
    pending_email: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_info(cls, info: SessionInfo, current_session_id: str) -> "SessionResponse":
        return cls(
            session_id=info.session_id,
            created_at=info.created_at,
            expires_at=info.expires_at,
            current=info.session_id == current_session_id,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class IdentityResponse(BaseModel):
    authenticated: bool
    user_id: Optional[int] = None
    email: Optional[str] = None
    role: Optional[str] = None
