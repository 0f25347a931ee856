"""Shared plumbing for OAuth2 authorization-code providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from convergeauth.config import Settings
from convergeauth.logging import get_logger
from convergeauth.service.errors import (
    InvalidCredentialError,
    ProviderUnavailableError,
    ValidationError,
)
from convergeauth.service.identity import ExternalIdentity

logger = get_logger(__name__)


def claim_is_true(value: Any, *, default: bool = True) -> bool:
    """Interpret boolean-ish claims; some IdPs send ``"true"``/``"false"`` strings."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class OAuth2Provider(ABC):
    """Authorization-code flow against one identity provider.

    Subclasses supply endpoints and turn the token response into an
    ``ExternalIdentity``. ``transport`` lets tests swap in
    ``httpx.MockTransport``.
    """

    name: str = ""
    authorize_url: str = ""
    token_url: str = ""
    scope: str = ""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.timeout = settings.oauth_http_timeout_seconds
        self.redirect_uri = settings.callback_url(self.name)
        self.logger = logger.bind(provider=self.name)

    @property
    @abstractmethod
    def client_id(self) -> Optional[str]: ...

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def extra_authorize_params(self) -> dict[str, str]:
        return {}

    def begin(self, state: str) -> str:
        if not self.is_configured:
            self.logger.warning("oauth_not_configured")
            raise ValidationError(f"OAuth provider {self.name} is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **self.extra_authorize_params(),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        step: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Issue one request; every network or protocol failure is a 502."""
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            self.logger.error("oauth_timeout", step=step, error=str(exc))
            raise ProviderUnavailableError("Identity provider timed out") from exc
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_http_error", step=step, status_code=exc.response.status_code
            )
            raise ProviderUnavailableError("Identity provider rejected the request") from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_transport_error", step=step, error=str(exc))
            raise ProviderUnavailableError("Identity provider unreachable") from exc
        except ValueError as exc:
            self.logger.error("oauth_bad_json", step=step, error=str(exc))
            raise ProviderUnavailableError("Identity provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderUnavailableError("Identity provider returned an unexpected payload")
        return payload

    def token_request_data(self, code: str) -> dict[str, str]:
        return {
            "client_id": self.client_id or "",
            "client_secret": self.client_secret() or "",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }

    def client_secret(self) -> Optional[str]:
        return None

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> dict[str, Any]:
        return await self._request_json(
            client,
            "POST",
            self.token_url,
            step="token",
            data=self.token_request_data(code),
            headers={"Accept": "application/json"},
        )

    async def complete(self, params: Mapping[str, Any]) -> ExternalIdentity:
        """Turn callback parameters into a verified identity.

        State has already been checked by the caller.
        """
        if params.get("error"):
            self.logger.info("oauth_denied", error=str(params.get("error")))
            raise InvalidCredentialError("Sign-in was cancelled")
        code = params.get("code")
        if not code:
            raise InvalidCredentialError("Missing authorization code")
        async with self._client() as client:
            tokens = await self.exchange_code(client, str(code))
            identity = await self.identity_from_tokens(client, tokens, params)
        self.logger.info("oauth_exchange_success", subject=identity.subject)
        return identity

    @abstractmethod
    async def identity_from_tokens(
        self,
        client: httpx.AsyncClient,
        tokens: dict[str, Any],
        params: Mapping[str, Any],
    ) -> ExternalIdentity: ...

    async def verify_id_token(
        self,
        client: httpx.AsyncClient,
        id_token: Optional[str],
        *,
        jwks_url: str,
        issuer: Optional[str],
    ) -> dict[str, Any]:
        """Check an RS256 ID token against the provider's published keys.

        ``issuer=None`` skips the library issuer check so the caller can apply
        a tenant-aware rule of its own.
        """
        if not id_token:
            raise InvalidCredentialError("Missing ID token")
        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.DecodeError as exc:
            raise InvalidCredentialError("Malformed ID token") from exc

        jwks = await self._request_json(client, "GET", jwks_url, step="jwks")
        key = None
        for jwk in jwks.get("keys", []):
            if jwk.get("kid") == kid:
                key = RSAAlgorithm.from_jwk(jwk)
                break
        if key is None:
            self.logger.warning("oauth_unknown_kid", kid=kid)
            raise InvalidCredentialError("ID token signed with an unknown key")

        try:
            return jwt.decode(
                id_token,
                key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=issuer,
                leeway=120,
                options={"verify_iss": issuer is not None, "require": ["exp", "iat", "sub"]},
            )
        except jwt.InvalidTokenError as exc:
            self.logger.warning("oauth_id_token_rejected", error=str(exc))
            raise InvalidCredentialError("ID token could not be verified") from exc
