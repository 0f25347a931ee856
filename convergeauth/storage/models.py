from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    email_verified: bool = False
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    webauthn_challenge: Optional[str] = None
    webauthn_challenge_expires_at: Optional[datetime] = None
    passkey_snoozed_until: Optional[datetime] = None
    elevated_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            email_verified=email_verified,
            display_name=display_name,
            avatar_url=avatar_url,
        )


@dataclass
class LinkedIdentity:
    user_id: str
    provider: str
    subject: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Authenticator:
    credential_id: str  # base64url
    user_id: str
    public_key: str  # base64url COSE key
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class OtpRecord:
    token: str
    user_id: str
    email: str
    purpose: str
    redirect_path: Optional[str]
    created_at: datetime
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    organization_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        *,
        organization_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + ttl,
            organization_id=organization_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Membership:
    user_id: str
    organization_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)
