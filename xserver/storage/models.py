from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    two_factor_enabled: bool = False
    # Fernet ciphertext at rest; MemoryStore decrypts on read
    two_factor_secret: Optional[str] = field(default=None, repr=False)
    social_ids: Dict[str, str] = field(default_factory=dict)
    password_algo: str = "argon2id"


@dataclass
class DeviceInfo:
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    os_info: Optional[str] = None
    browser_info: Optional[str] = None
    location: Optional[str] = None


@dataclass
class DeviceSession:
    id: str
    username: str
    device: DeviceInfo
    login_time: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    current_device: bool = False

    @classmethod
    def new(
        cls,
        username: str,
        device: DeviceInfo,
        now: datetime,
        *,
        ip_address: Optional[str] = None,
    ) -> "DeviceSession":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            device=device,
            login_time=now,
            last_activity=now,
            ip_address=ip_address or device.ip_address,
        )


@dataclass
class TokenRecord:
    """Server-side record backing an issued bearer token."""

    token: str = field(repr=False)
    username: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        # Still valid at the exact expiry instant
        return now > self.expires_at


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: Optional[str] = None
    token_type: str = "Bearer"


@dataclass
class TwoFactorChallenge:
    token: str
    username: str
    code_digest: str = field(repr=False)
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class LoginResult:
    """Outcome of a completed primary (and optional second-factor) login."""

    user: User
    two_factor_required: bool = False
    two_factor_token: Optional[str] = None
    tokens: Optional[TokenPair] = None
    sessions: List[DeviceSession] = field(default_factory=list)


@dataclass
class Post:
    id: str
    title: str
    content: str
    author_id: str
    author_name: str
    created_at: datetime
    updated_at: datetime
    status: str = "PUBLISHED"
    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
