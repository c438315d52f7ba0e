from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Set


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    roles: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)
    password_changed_at: Optional[datetime] = None
    reset_code_digest: Optional[str] = None
    reset_code_sent_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: Optional[str] = None,
        *,
        roles: Optional[Set[str]] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            roles=set(roles or ()),
            created_at=now,
            password_changed_at=now,
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def password_expired(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        if self.password_changed_at is None:
            return True
        return self.password_changed_at + max_age < (now or utcnow())


@dataclass
class Session:
    """A refresh-token bearing login of one user from one client.

    ``ip_address`` and ``user_agent`` are the fingerprint captured at creation
    and never change. ``revoked`` only moves from False to True.
    """

    id: str
    user_id: str
    refresh_token: str
    refresh_token_expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_count: int = 0
    last_refreshed_at: Optional[datetime] = None
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        refresh_ttl_seconds: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            refresh_token_expires_at=now + timedelta(seconds=refresh_ttl_seconds),
            ip_address=ip_address,
            user_agent=user_agent,
            refresh_count=0,
            last_refreshed_at=now,
            revoked=False,
            created_at=now,
            updated_at=now,
        )

    def is_refresh_expired(self, now: Optional[datetime] = None) -> bool:
        return self.refresh_token_expires_at < (now or utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """True while the session is neither revoked nor past its refresh expiry."""
        return not self.revoked and not self.is_refresh_expired(now)

    def matches_request(self, ip_address: Optional[str], user_agent: Optional[str]) -> bool:
        """Exact comparison against the fingerprint recorded at creation."""
        return self.ip_address == ip_address and self.user_agent == user_agent

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "refresh_count": self.refresh_count,
            "last_refreshed_at": self.last_refreshed_at,
            "refresh_token_expires_at": self.refresh_token_expires_at,
            "revoked": self.revoked,
            "created_at": self.created_at,
        }
