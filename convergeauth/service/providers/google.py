from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

from convergeauth.service.errors import MissingEmailError, ProviderUnavailableError
from convergeauth.service.identity import ExternalIdentity, IdentityKind
from convergeauth.service.providers.base import OAuth2Provider, claim_is_true


class GoogleProvider(OAuth2Provider):
    name = "google"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "email profile"

    @property
    def client_id(self) -> Optional[str]:
        return self.settings.oauth_google_client_id

    def client_secret(self) -> Optional[str]:
        return self.settings.oauth_google_client_secret

    async def identity_from_tokens(
        self,
        client: httpx.AsyncClient,
        tokens: dict[str, Any],
        params: Mapping[str, Any],
    ) -> ExternalIdentity:
        access_token = tokens.get("access_token")
        if not access_token:
            self.logger.error("oauth_no_access_token")
            raise ProviderUnavailableError("Identity provider returned no access token")
        info = await self._request_json(
            client,
            "GET",
            self.userinfo_url,
            step="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        email = info.get("email")
        if not email:
            raise MissingEmailError("Google account has no email address")
        verified = info.get("verified_email", info.get("email_verified"))
        return ExternalIdentity(
            kind=IdentityKind.OAUTH2,
            provider=self.name,
            subject=str(info.get("id") or info.get("sub") or email),
            email=email,
            email_verified=claim_is_true(verified),
            display_name=info.get("name"),
            avatar_url=info.get("picture"),
        )
