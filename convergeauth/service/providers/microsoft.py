from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

from convergeauth.service.errors import InvalidCredentialError, MissingEmailError
from convergeauth.service.identity import ExternalIdentity, IdentityKind
from convergeauth.service.providers.base import OAuth2Provider, claim_is_true

# Tenant aliases that accept tokens from many directories
_MULTI_TENANT = {"common", "organizations", "consumers"}


class MicrosoftProvider(OAuth2Provider):
    """Microsoft identity platform (v2.0 endpoints).

    With a multi-tenant alias configured the issuer depends on the signing
    directory, so it is checked against the token's own ``tid``. Any
    directory can put any address in ``email`` or ``preferred_username``, so
    such an address only counts as verified when the token carries
    ``xms_edov`` (domain owner verified) or the tenant is pinned.
    """

    name = "microsoft"

    @property
    def client_id(self) -> Optional[str]:
        return self.settings.oauth_microsoft_client_id

    def client_secret(self) -> Optional[str]:
        return self.settings.oauth_microsoft_client_secret

    @property
    def tenant(self) -> str:
        return self.settings.oauth_microsoft_tenant or "common"

    @property
    def authorize_url(self) -> str:  # type: ignore[override]
        return f"https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:  # type: ignore[override]
        return f"https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/token"

    @property
    def jwks_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant}/discovery/v2.0/keys"

    @property
    def scope(self) -> str:  # type: ignore[override]
        return f"openid email profile {self.settings.oauth_microsoft_resource}".strip()

    def extra_authorize_params(self) -> dict[str, str]:
        return {"response_mode": "query"}

    async def identity_from_tokens(
        self,
        client: httpx.AsyncClient,
        tokens: dict[str, Any],
        params: Mapping[str, Any],
    ) -> ExternalIdentity:
        claims = await self.verify_id_token(
            client, tokens.get("id_token"), jwks_url=self.jwks_url, issuer=None
        )
        tid = claims.get("tid")
        if not tid or claims.get("iss") != f"https://login.microsoftonline.com/{tid}/v2.0":
            self.logger.warning("oauth_issuer_mismatch", issuer=claims.get("iss"))
            raise InvalidCredentialError("ID token issuer mismatch")
        if self.tenant not in _MULTI_TENANT and tid != self.tenant:
            self.logger.warning("oauth_tenant_mismatch", tid=tid)
            raise InvalidCredentialError("ID token tenant mismatch")

        email = claims.get("email") or claims.get("preferred_username")
        if not email or "@" not in email:
            raise MissingEmailError("Microsoft account has no email address")
        verified = self.tenant not in _MULTI_TENANT or claim_is_true(
            claims.get("xms_edov"), default=False
        )
        return ExternalIdentity(
            kind=IdentityKind.OAUTH2,
            provider=self.name,
            subject=str(claims.get("oid") or claims["sub"]),
            email=email,
            email_verified=verified,
            display_name=claims.get("name"),
        )
