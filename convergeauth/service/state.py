from __future__ import annotations

import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from convergeauth.logging import get_logger
from convergeauth.service.errors import InvalidStateError
from convergeauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class IssuedState:
    token: str
    expires_at: datetime


class StateStore:
    """Single-use anti-forgery tokens binding a browser to an in-flight login.

    Tokens live in Redis when a cache is configured so any worker can finish a
    flow another worker started; otherwise they stay in a process-local dict.
    """

    def __init__(self, cache: Optional[RedisCache], *, ttl: timedelta = timedelta(minutes=10)):
        self.cache = cache
        self.ttl = ttl
        self._lock = threading.Lock()
        self._states: dict[str, tuple[str, datetime, Dict[str, Any]]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(
        self,
        provider: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        token: Optional[str] = None,
    ) -> IssuedState:
        """Record a new state; ``token`` lets a protocol-assigned ID serve as the key."""
        token = token or secrets.token_urlsafe(32)
        expires_at = self._now() + self.ttl
        if self.cache:
            await self.cache.set_state(token, provider, expires_at, context)
        else:
            with self._lock:
                self._states[token] = (provider, expires_at, dict(context or {}))
        return IssuedState(token=token, expires_at=expires_at)

    async def _pop(self, token: str) -> Optional[tuple[str, datetime, Dict[str, Any]]]:
        if self.cache:
            try:
                return await self.cache.pop_state(token)
            except Exception as exc:
                # Fail closed; the state may still be live in Redis
                self.logger.error("state_pop_failed", error=str(exc))
                raise InvalidStateError("Invalid state") from exc
        with self._lock:
            return self._states.pop(token, None)

    async def consume(
        self, token: Optional[str], cookie_value: Optional[str], provider: str
    ) -> Dict[str, Any]:
        """Validate and burn a state token, returning the context stored with it.

        Every failure raises the same ``InvalidStateError`` so callers cannot
        tell which check tripped.
        """
        if not token or not cookie_value:
            self.logger.warning("state_missing", provider=provider)
            raise InvalidStateError("Invalid state")
        if not hmac.compare_digest(token.encode(), cookie_value.encode()):
            self.logger.warning("state_cookie_mismatch", provider=provider)
            raise InvalidStateError("Invalid state")

        stored = await self._pop(token)
        if stored is None:
            self.logger.warning("state_unknown", provider=provider)
            raise InvalidStateError("Invalid state")

        stored_provider, expires_at, context = stored
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= self._now():
            self.logger.warning("state_expired", provider=provider)
            raise InvalidStateError("Invalid state")
        if stored_provider != provider:
            self.logger.warning(
                "state_provider_mismatch", provider=provider, stored_provider=stored_provider
            )
            raise InvalidStateError("Invalid state")
        return context

    def count_expired(self) -> int:
        """Expired entries still held by the in-process fallback."""
        now = self._now()
        with self._lock:
            return sum(1 for _, expires_at, _ in self._states.values() if expires_at <= now)

    def cleanup_expired(self) -> int:
        """Drop expired entries from the in-process fallback."""
        now = self._now()
        with self._lock:
            expired = [t for t, (_, expires_at, _) in self._states.items() if expires_at <= now]
            for token in expired:
                self._states.pop(token, None)
        if expired:
            self.logger.debug("state_cleanup", cleaned=len(expired))
        return len(expired)
