from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    registered: bool = True
    disabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None

    def to_public(self, *, has_password: bool = False) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "avatar_url": self.avatar_url,
            "email_verified": self.email_verified,
            "has_password": has_password,
        }


@dataclass
class Session:
    """A browser session; one or more users are bound to it."""

    id: str
    created_at: datetime
    expires_at: Optional[datetime] = None

    @classmethod
    def new(cls) -> "Session":
        return cls(id=str(uuid.uuid4()), created_at=utcnow())


@dataclass
class UserSession:
    """Binding of one user into a ``Session`` with its own sliding expiry."""

    id: str
    session_id: str
    user_id: str
    expires_at: Optional[datetime]
    created_at: datetime = field(default_factory=utcnow)
    sign_in_client_version: Optional[str] = None
    refresh_client_version: Optional[str] = None
    # lifetime the binding was issued with; refreshes slide by this
    ttl_seconds: Optional[int] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        ttl_seconds: int,
        *,
        client_version: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "UserSession":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=user_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
            sign_in_client_version=client_version,
            ttl_seconds=ttl_seconds,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class VerificationToken:
    """Single-use token bound to a credential (usually an email address)."""

    token: str
    type: str
    credential: Optional[str]
    expires_at: datetime


@dataclass
class AccessToken:
    """Long-lived personal token accepted as ``Authorization: Bearer``."""

    id: str
    user_id: str
    name: str
    token: str
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None


@dataclass
class ConnectedAccount:
    id: int
    user_id: str
    provider: str
    provider_account_id: str
    created_at: datetime = field(default_factory=utcnow)
