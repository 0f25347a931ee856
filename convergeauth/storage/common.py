"""Store contract and helpers shared by the memory and postgres backends."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

from convergeauth.storage.models import (
    Authenticator,
    Membership,
    Organization,
    OtpRecord,
    Session,
    User,
)

# Fields callers may change through ``update_user``
MUTABLE_USER_FIELDS = frozenset(
    {
        "email_verified",
        "display_name",
        "avatar_url",
        "passkey_snoozed_until",
        "elevated_verified_at",
    }
)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps read back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def slugify(name: str) -> str:
    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    )
    slug = _SLUG_STRIP.sub("-", ascii_name.lower()).strip("-")
    return slug or "organization"


def check_user_updates(fields: dict) -> None:
    unknown = set(fields) - MUTABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")


class AuthStore(Protocol):
    """Persistence operations the authentication services rely on.

    Every ``pop``/``consume``/``advance`` method must be atomic with respect to
    concurrent callers: exactly one caller observes the record.
    """

    # users
    def create_user(
        self,
        email: str,
        *,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def link_identity(self, user_id: str, provider: str, subject: str) -> None: ...

    def get_user_by_identity(self, provider: str, subject: str) -> Optional[User]: ...

    # webauthn
    def set_webauthn_challenge(
        self, user_id: str, challenge: str, expires_at: datetime
    ) -> None: ...

    def pop_webauthn_challenge(self, user_id: str) -> Optional[tuple[str, datetime]]: ...

    def add_authenticator(self, authenticator: Authenticator) -> Authenticator: ...

    def list_authenticators(self, user_id: str) -> List[Authenticator]: ...

    def get_authenticator(self, credential_id: str) -> Optional[Authenticator]: ...

    def advance_sign_count(
        self, credential_id: str, new_count: int, used_at: datetime
    ) -> bool: ...

    # one-time codes
    def save_otp(self, record: OtpRecord) -> OtpRecord: ...

    def get_otp(self, token: str) -> Optional[OtpRecord]: ...

    def get_latest_otp_for_user(self, user_id: str) -> Optional[OtpRecord]: ...

    def take_otp_attempt(self, token: str, max_attempts: int) -> Optional[int]:
        """Atomically spend one attempt; None once the budget is gone."""
        ...

    def consume_otp(self, token: str) -> Optional[OtpRecord]: ...

    def delete_otps_for_user(self, user_id: str) -> int: ...

    def delete_expired_otps(self, now: datetime) -> int: ...

    def count_expired_otps(self, now: datetime) -> int: ...

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        organization_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(
        self, session_id: str, last_accessed_at: datetime, expires_at: datetime
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def count_expired_sessions(self, now: datetime) -> int: ...

    # organizations
    def create_organization(self, name: str, owner_id: str) -> Organization: ...

    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def list_organizations(self, limit: int = 100) -> List[Organization]: ...

    def list_memberships(self, user_id: str) -> List[Membership]: ...
