from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class User:
    id: str
    phone: str
    email: Optional[str] = None
    external_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "RIDER"
    is_active: bool = True
    is_suspended: bool = False
    phone_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_cache(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "User":
        values = dict(data)
        for key in ("phone_verified_at", "last_login_at", "created_at", "updated_at"):
            values[key] = _parse_dt(values.get(key))
        if values.get("created_at") is None:
            values["created_at"] = utcnow()
        if values.get("updated_at") is None:
            values["updated_at"] = values["created_at"]
        return cls(**values)


@dataclass
class IdentityProfile:
    """User data returned by the external identity provider."""

    external_id: str
    phone: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(cls, user_id: str, token: str, ttl: timedelta) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class Session:
    """One issued access token's validity window.

    ``token_hash`` identifies the access token without storing the bearer
    secret itself.
    """

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, token_hash: str, ttl: timedelta) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            created_at=now,
        )

    def to_cache(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "Session":
        values = dict(data)
        for key in ("expires_at", "created_at", "revoked_at"):
            values[key] = _parse_dt(values.get(key))
        return cls(**values)
