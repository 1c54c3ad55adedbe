from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    REFRESHING = "refreshing"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    OTP_PENDING = "otp_pending"
    ERROR = "error"


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the client's authentication state."""

    status: SessionStatus = SessionStatus.UNINITIALIZED
    access_token_present: bool = False
    challenge_id: Optional[str] = None
    masked_phone: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    access_expires_at: Optional[datetime] = None
    refresh_attempted: bool = False
    error: Optional[str] = None

    def evolve(self, **changes: Any) -> "Session":
        return replace(self, **changes)

    @property
    def is_settled(self) -> bool:
        return self.status not in (SessionStatus.UNINITIALIZED, SessionStatus.REFRESHING)


@dataclass
class DeviceIdentity:
    id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CsrfToken:
    raw_value: str
    signature: str
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def cookie_value(self) -> str:
        return f"{self.raw_value}.{self.signature}"


@dataclass
class ClientInfo:
    ip_address: Optional[str]
    user_agent: Optional[str]
    cached_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": int(self.cached_at.timestamp() * 1000),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientInfo":
        ts = data.get("timestamp")
        cached_at = (
            datetime.fromtimestamp(float(ts) / 1000, tz=timezone.utc)
            if isinstance(ts, (int, float))
            else utcnow()
        )
        return cls(
            ip_address=data.get("ipAddress"),
            user_agent=data.get("userAgent"),
            cached_at=cached_at,
        )
