from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

ROLES = ("admin", "vendor", "customer")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    """Digest used as the durable key for refresh tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class User:
    id: str
    email: str
    role: str = "customer"
    full_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class RefreshTokenRecord:
    token_hash: str
    user_id: str
    jti: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and now < self.expires_at


@dataclass
class SessionInfo:
    """Live session as seen through the session cache."""

    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    csrf_token: Optional[str] = None

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def to_meta(self) -> Dict:
        return {
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "user_agent": self.user_agent,
            "ip_addr": self.ip_addr,
            "csrf_token": self.csrf_token,
        }

    @classmethod
    def from_meta(cls, session_id: str, meta: Dict) -> "SessionInfo":
        return cls(
            id=session_id,
            user_id=meta["user_id"],
            created_at=datetime.fromisoformat(meta["created_at"]),
            expires_at=datetime.fromisoformat(meta["expires_at"]),
            user_agent=meta.get("user_agent"),
            ip_addr=meta.get("ip_addr"),
            csrf_token=meta.get("csrf_token"),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
