from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

import httpx

from convergeauth.config import Settings, get_settings
from convergeauth.logging import get_logger
from convergeauth.service.elevated import ElevatedGate
from convergeauth.service.email import EmailService
from convergeauth.service.identity import IdentityResolver
from convergeauth.service.otp import OtpEngine
from convergeauth.service.passkeys import PasskeyManager
from convergeauth.service.providers.apple import AppleProvider
from convergeauth.service.providers.base import OAuth2Provider
from convergeauth.service.providers.google import GoogleProvider
from convergeauth.service.providers.microsoft import MicrosoftProvider
from convergeauth.service.providers.saml import SamlProvider
from convergeauth.service.sessions import SessionManager
from convergeauth.service.state import StateStore
from convergeauth.storage.common import AuthStore
from convergeauth.storage.memory import MemoryStore
from convergeauth.storage.models import User
from convergeauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ORGANIZATION_SETUP_PATH = "/organizations/new"
PASSKEY_SETUP_PATH = "/passkey/setup"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires the store, cache and authentication services for one process.

    The FastAPI app owns exactly one instance (``app.state.runtime``); tests
    build their own with an in-memory store and a mock HTTP transport.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: Optional[RedisCache] = None,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            try:
                if self.settings.use_memory_store:
                    self.store = MemoryStore()
                else:
                    from convergeauth.storage.postgres import PostgresStore

                    self.store = PostgresStore(self.settings.database_url)
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

        self.cache = cache
        redis_error: Exception | None = None
        if self.cache is None and self.settings.redis_url:
            try:
                candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                self.cache = candidate
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login state and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )

        s = self.settings
        self.email = EmailService(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
        )
        self.states = StateStore(self.cache, ttl=timedelta(minutes=s.state_ttl_minutes))
        self.otp = OtpEngine(self.store, self.email, s)
        self.identity = IdentityResolver(self.store)
        self.sessions = SessionManager(self.store, s)
        self.passkeys = PasskeyManager(self.store, s)
        self.elevated = ElevatedGate(self.store, self.otp, s)
        self.oauth_providers: Dict[str, OAuth2Provider] = {
            provider.name: provider
            for provider in (
                GoogleProvider(s, transport=oauth_transport),
                MicrosoftProvider(s, transport=oauth_transport),
                AppleProvider(s, transport=oauth_transport),
            )
        }
        self.saml = SamlProvider(s)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            oauth_providers=[p.name for p in self.oauth_providers.values() if p.is_configured],
            saml_domains=sorted(s.saml_connections),
        )

    def post_login_redirect(self, user: User, requested: Optional[str] = None) -> str:
        """Pick where a freshly signed-in user should land.

        Onboarding steps win over the requested path: first an organization,
        then a passkey unless the prompt was snoozed.
        """
        if not self.store.list_memberships(user.id):
            return ORGANIZATION_SETUP_PATH
        if not self.store.list_authenticators(user.id):
            snoozed = user.passkey_snoozed_until
            if snoozed is None or snoozed <= datetime.now(timezone.utc):
                return PASSKEY_SETUP_PATH
        return safe_redirect_path(requested)

    async def close(self) -> None:
        if self.cache:
            await self.cache.close()
        close = getattr(self.store, "close", None)
        if callable(close):
            close()


def safe_redirect_path(path: Optional[str], default: str = "/dashboard") -> str:
    """Only allow same-site absolute paths as post-login targets."""
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return default
    return path


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit that keeps working when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
