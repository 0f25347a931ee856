from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from convergeauth.config import Settings
from convergeauth.logging import get_logger
from convergeauth.service.errors import AuthenticationError
from convergeauth.storage.common import AuthStore
from convergeauth.storage.models import Session, User

logger = get_logger(__name__)

_ALGORITHM = "HS256"


@dataclass
class IssuedSession:
    session: Session
    token: str


@dataclass
class SessionContext:
    session: Session
    user: User
    claims: dict[str, Any]


class SessionManager:
    """Short-lived signed tokens backed by long-lived stored sessions.

    A token alone is never enough: every validation re-reads the session row,
    so logout takes effect before the token's ``exp``.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.session_ttl = timedelta(days=settings.session_ttl_days)
        self.token_ttl = timedelta(minutes=settings.session_token_ttl_minutes)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def mint_token(self, session: Session) -> str:
        now = self._now()
        payload = {
            "sub": session.user_id,
            "sid": session.id,
            "org": session.organization_id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + self.token_ttl,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[_ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                leeway=self._clock_skew_leeway,
                options={
                    "require": ["sub", "sid", "exp", "iat"],
                    "verify_exp": verify_exp,
                },
            )
        except jwt.ExpiredSignatureError:
            self.logger.debug("session_token_expired")
            return None
        except jwt.InvalidTokenError as exc:
            self.logger.info("session_token_invalid", error=str(exc))
            return None

    def create(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> IssuedSession:
        if organization_id is None:
            memberships = self.store.list_memberships(user_id)
            organization_id = memberships[0].organization_id if memberships else None
        session = self.store.create_session(
            user_id,
            self.session_ttl,
            organization_id=organization_id,
            user_agent=user_agent,
            ip_addr=ip,
        )
        self.logger.info("session_created", user_id=user_id, session_id=session.id)
        return IssuedSession(session=session, token=self.mint_token(session))

    def _load_live(self, claims: dict[str, Any]) -> Optional[SessionContext]:
        session = self.store.get_session(str(claims.get("sid")))
        if session is None or session.user_id != claims.get("sub"):
            return None
        now = self._now()
        if session.is_expired(now):
            self.store.delete_session(session.id)
            self.logger.info("session_expired", session_id=session.id)
            return None
        user = self.store.get_user(session.user_id)
        if user is None:
            return None
        touched = self.store.touch_session(session.id, now, now + self.session_ttl)
        return SessionContext(session=touched or session, user=user, claims=claims)

    def validate(self, token: Optional[str]) -> Optional[SessionContext]:
        if not token:
            return None
        claims = self._decode(token)
        if claims is None:
            return None
        return self._load_live(claims)

    def refresh(self, old_token: str) -> IssuedSession:
        """Mint a new token for the session behind ``old_token``.

        The old token may be past its ``exp``; its signature, issuer and
        audience must still check out and the session must still be live.
        """
        claims = self._decode(old_token, verify_exp=False)
        if claims is None:
            raise AuthenticationError("Invalid session token")
        ctx = self._load_live(claims)
        if ctx is None:
            raise AuthenticationError("Session expired")
        return IssuedSession(session=ctx.session, token=self.mint_token(ctx.session))

    def delete(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        if removed:
            self.logger.info("session_revoked", session_id=session_id)
        return removed

    def count_expired(self) -> int:
        return self.store.count_expired_sessions(self._now())

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            self.logger.info("session_cleanup", removed=removed)
        return removed
