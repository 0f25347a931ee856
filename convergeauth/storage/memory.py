from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from convergeauth.logging import get_logger
from convergeauth.storage.common import check_user_updates, normalize_email, slugify
from convergeauth.storage.errors import ConstraintViolation
from convergeauth.storage.models import (
    Authenticator,
    LinkedIdentity,
    Membership,
    Organization,
    OtpRecord,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.identities: List[LinkedIdentity] = []
        self.authenticators: Dict[str, Authenticator] = {}
        self.otps: Dict[str, OtpRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.organizations: Dict[str, Organization] = {}
        self.memberships: List[Membership] = []
        # RLock for all data operations; nested acquisitions happen in helpers
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                normalized,
                email_verified=email_verified,
                display_name=display_name,
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        check_user_updates(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            return replace(user)

    def link_identity(self, user_id: str, provider: str, subject: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for identity in self.identities:
                if identity.provider == provider and identity.subject == subject:
                    return
            self.identities.append(
                LinkedIdentity(user_id=user_id, provider=provider, subject=subject)
            )

    def get_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        with self._data_lock:
            for identity in self.identities:
                if identity.provider == provider and identity.subject == subject:
                    return self.get_user(identity.user_id)
            return None

    # webauthn
    def set_webauthn_challenge(
        self, user_id: str, challenge: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            user.webauthn_challenge = challenge
            user.webauthn_challenge_expires_at = expires_at

    def pop_webauthn_challenge(self, user_id: str) -> Optional[tuple[str, datetime]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.webauthn_challenge:
                return None
            pending = (user.webauthn_challenge, user.webauthn_challenge_expires_at)
            user.webauthn_challenge = None
            user.webauthn_challenge_expires_at = None
            return pending

    def add_authenticator(self, authenticator: Authenticator) -> Authenticator:
        with self._data_lock:
            if authenticator.credential_id in self.authenticators:
                raise ConstraintViolation(
                    "credential already registered", {"field": "credential_id"}
                )
            self.authenticators[authenticator.credential_id] = replace(authenticator)
            return replace(authenticator)

    def list_authenticators(self, user_id: str) -> List[Authenticator]:
        with self._data_lock:
            return [
                replace(a)
                for a in sorted(self.authenticators.values(), key=lambda a: a.created_at)
                if a.user_id == user_id
            ]

    def get_authenticator(self, credential_id: str) -> Optional[Authenticator]:
        with self._data_lock:
            found = self.authenticators.get(credential_id)
            return replace(found) if found else None

    def advance_sign_count(
        self, credential_id: str, new_count: int, used_at: datetime
    ) -> bool:
        with self._data_lock:
            found = self.authenticators.get(credential_id)
            if not found:
                return False
            # Authenticators without a counter always report zero
            if new_count <= found.sign_count and not (new_count == 0 and found.sign_count == 0):
                return False
            found.sign_count = new_count
            found.last_used_at = used_at
            return True

    # one-time codes
    def save_otp(self, record: OtpRecord) -> OtpRecord:
        with self._data_lock:
            self.otps[record.token] = replace(record)
            return replace(record)

    def get_otp(self, token: str) -> Optional[OtpRecord]:
        with self._data_lock:
            record = self.otps.get(token)
            return replace(record) if record else None

    def get_latest_otp_for_user(self, user_id: str) -> Optional[OtpRecord]:
        with self._data_lock:
            records = [r for r in self.otps.values() if r.user_id == user_id]
            if not records:
                return None
            return replace(max(records, key=lambda r: r.created_at))

    def take_otp_attempt(self, token: str, max_attempts: int) -> Optional[int]:
        with self._data_lock:
            record = self.otps.get(token)
            if not record or record.attempts >= max_attempts:
                return None
            record.attempts += 1
            return record.attempts

    def consume_otp(self, token: str) -> Optional[OtpRecord]:
        with self._data_lock:
            return self.otps.pop(token, None)

    def delete_otps_for_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [token for token, r in self.otps.items() if r.user_id == user_id]
            for token in stale:
                self.otps.pop(token, None)
            return len(stale)

    def delete_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            stale = [token for token, r in self.otps.items() if r.is_expired(now)]
            for token in stale:
                self.otps.pop(token, None)
            return len(stale)

    def count_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for r in self.otps.values() if r.is_expired(now))

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        organization_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl,
                organization_id=organization_id,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(
        self, session_id: str, last_accessed_at: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.last_accessed_at = last_accessed_at
            sess.expires_at = expires_at
            return replace(sess)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def count_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            return sum(1 for s in self.sessions.values() if s.is_expired(now))

    # organizations
    def create_organization(self, name: str, owner_id: str) -> Organization:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": owner_id})
            base = slugify(name)
            taken = {org.slug for org in self.organizations.values()}
            slug, suffix = base, 2
            while slug in taken:
                slug = f"{base}-{suffix}"
                suffix += 1
            org = Organization(id=str(uuid.uuid4()), name=name, slug=slug)
            self.organizations[org.id] = org
            self.memberships.append(
                Membership(user_id=owner_id, organization_id=org.id, role="owner")
            )
            return replace(org)

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(organization_id)
            return replace(org) if org else None

    def list_organizations(self, limit: int = 100) -> List[Organization]:
        with self._data_lock:
            ordered = sorted(self.organizations.values(), key=lambda o: o.created_at)
            return [replace(o) for o in ordered[:limit]]

    def list_memberships(self, user_id: str) -> List[Membership]:
        with self._data_lock:
            return [
                replace(m)
                for m in sorted(self.memberships, key=lambda m: m.created_at)
                if m.user_id == user_id
            ]
