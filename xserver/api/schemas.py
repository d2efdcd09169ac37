from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from xserver.storage.models import DeviceInfo, DeviceSession, Post, TokenPair, User


MAX_TAGS = 20
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Envelope(BaseModel):
    """Response wrapper shared by every endpoint; ``code`` mirrors the HTTP status."""

    code: int = 200
    message: str = "OK"
    data: Optional[Any] = None


def _required(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} is required")
    return value


def _normalize(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip())


# -- requests --------------------------------------------------------------


class DeviceInfoModel(CamelModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=128)
    device_type: Optional[str] = Field(default=None, max_length=32)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    os_info: Optional[str] = Field(default=None, max_length=128)
    browser_info: Optional[str] = Field(default=None, max_length=128)
    location: Optional[str] = Field(default=None, max_length=128)

    def to_domain(self) -> DeviceInfo:
        return DeviceInfo(**self.model_dump())


class RegisterRequest(CamelModel):
    username: str
    password: str = Field(..., max_length=128)
    email: str = Field(..., max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = _normalize(_required(value, "Username"))
        if not _USERNAME_RE.match(value):
            raise ValueError(
                "Username must be 3-50 characters of letters, digits, '.', '_' or '-'"
            )
        return value

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        _required(value, "Password")
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        return value

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = _normalize(_required(value, "Email"))
        if not _EMAIL_RE.match(value):
            raise ValueError("Email format is invalid")
        return value


class LoginRequest(CamelModel):
    username: str
    password: str = Field(..., max_length=128)
    device_info: Optional[DeviceInfoModel] = None
    remember_me: bool = False

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _normalize(_required(value, "Username"))

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _required(value, "Password")


class TwoFactorVerifyRequest(CamelModel):
    two_factor_token: str = Field(..., max_length=256)
    code: str = Field(..., max_length=16)
    device_info: Optional[DeviceInfoModel] = None
    remember_me: bool = False

    @field_validator("two_factor_token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        return _required(value, "Two-factor token").strip()

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _required(value, "Verification code").strip()


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., max_length=2048)

    @field_validator("refresh_token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        return _required(value, "Refresh token").strip()


class TwoFactorToggleRequest(CamelModel):
    enabled: bool


def _clean_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    if len(value) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags are allowed")
    cleaned: List[str] = []
    for tag in value:
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class CreatePostRequest(CamelModel):
    title: str = Field(..., max_length=200)
    content: str = Field(..., max_length=65536)
    tags: Optional[List[str]] = None
    category: Optional[str] = Field(default=None, max_length=64)

    @field_validator("title")
    @classmethod
    def _validate_title(cls, value: str) -> str:
        return _required(value, "Title").strip()

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        return _required(value, "Content")

    @field_validator("tags")
    @classmethod
    def _validate_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_tags(value)


class UpdatePostRequest(CamelModel):
    title: Optional[str] = Field(default=None, max_length=200)
    content: Optional[str] = Field(default=None, max_length=65536)
    tags: Optional[List[str]] = None
    category: Optional[str] = Field(default=None, max_length=64)

    @field_validator("tags")
    @classmethod
    def _validate_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_tags(value)


# -- responses -------------------------------------------------------------


class UserResponse(CamelModel):
    id: str
    username: str
    email: str
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    active: bool = True
    two_factor_enabled: bool = False

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            phone=user.phone,
            created_at=user.created_at,
            updated_at=user.updated_at,
            active=user.is_active,
            two_factor_enabled=user.two_factor_enabled,
        )


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    refresh_token_expiry: datetime
    token_type: str = "Bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_token_expiry=pair.access_expires_at,
            refresh_token_expiry=pair.refresh_expires_at,
            token_type=pair.token_type,
        )


class DeviceSessionResponse(CamelModel):
    session_id: str
    device_info: DeviceInfoModel
    login_time: datetime
    last_activity_time: datetime
    ip_address: Optional[str] = None
    current_device: bool = False

    @classmethod
    def from_session(cls, session: DeviceSession) -> "DeviceSessionResponse":
        return cls(
            session_id=session.id,
            device_info=DeviceInfoModel(**vars(session.device)),
            login_time=session.login_time,
            last_activity_time=session.last_activity,
            ip_address=session.ip_address,
            current_device=session.current_device,
        )


class LoginResponse(CamelModel):
    user: UserResponse
    tokens: Optional[TokenResponse] = None
    active_devices: List[DeviceSessionResponse] = Field(default_factory=list)
    requires_two_factor: bool = False
    two_factor_token: Optional[str] = None


class PostResponse(CamelModel):
    id: str
    title: str
    content: str
    author_id: str
    author_name: str
    created_at: datetime
    updated_at: datetime
    status: str
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None

    @classmethod
    def from_post(cls, post: Post) -> "PostResponse":
        return cls(**vars(post))


class PostPageResponse(CamelModel):
    content: List[PostResponse] = Field(default_factory=list)
    page: int
    size: int
    total_pages: int
    total_elements: int
    has_previous: bool
    has_next: bool
