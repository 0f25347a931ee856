from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

import httpx
import jwt

from convergeauth.service.errors import MissingEmailError, ValidationError
from convergeauth.service.identity import ExternalIdentity, IdentityKind
from convergeauth.service.providers.base import OAuth2Provider, claim_is_true

APPLE_ISSUER = "https://appleid.apple.com"


class AppleProvider(OAuth2Provider):
    """Sign in with Apple.

    Apple posts the callback (``response_mode=form_post``) and only includes
    the user's name, as a JSON ``user`` field, on the first authorization.
    """

    name = "apple"
    authorize_url = "https://appleid.apple.com/auth/authorize"
    token_url = "https://appleid.apple.com/auth/token"
    jwks_url = "https://appleid.apple.com/auth/keys"
    scope = "email name"

    @property
    def client_id(self) -> Optional[str]:
        return self.settings.oauth_apple_client_id

    @property
    def is_configured(self) -> bool:
        s = self.settings
        return bool(
            s.oauth_apple_client_id
            and s.oauth_apple_team_id
            and s.oauth_apple_key_id
            and s.oauth_apple_private_key
        )

    def extra_authorize_params(self) -> dict[str, str]:
        return {"response_mode": "form_post"}

    def client_secret(self) -> Optional[str]:
        """ES256 JWT Apple accepts in place of a static client secret."""
        s = self.settings
        if not self.is_configured:
            raise ValidationError("OAuth provider apple is not configured")
        now = datetime.now(timezone.utc)
        # Keys pasted into env files often carry literal "\n"
        private_key = s.oauth_apple_private_key.replace("\\n", "\n")
        return jwt.encode(
            {
                "iss": s.oauth_apple_team_id,
                "iat": now,
                "exp": now + timedelta(minutes=5),
                "aud": APPLE_ISSUER,
                "sub": s.oauth_apple_client_id,
            },
            private_key,
            algorithm="ES256",
            headers={"kid": s.oauth_apple_key_id},
        )

    @staticmethod
    def _display_name(raw_user: Any) -> Optional[str]:
        if not raw_user:
            return None
        try:
            data = json.loads(raw_user) if isinstance(raw_user, str) else raw_user
        except json.JSONDecodeError:
            return None
        name = data.get("name") if isinstance(data, dict) else None
        if not isinstance(name, dict):
            return None
        full = " ".join(part for part in (name.get("firstName"), name.get("lastName")) if part)
        return full or None

    async def identity_from_tokens(
        self,
        client: httpx.AsyncClient,
        tokens: dict[str, Any],
        params: Mapping[str, Any],
    ) -> ExternalIdentity:
        claims = await self.verify_id_token(
            client, tokens.get("id_token"), jwks_url=self.jwks_url, issuer=APPLE_ISSUER
        )
        email = claims.get("email")
        if not email:
            raise MissingEmailError("Apple ID token has no email address")
        return ExternalIdentity(
            kind=IdentityKind.OAUTH2,
            provider=self.name,
            subject=str(claims["sub"]),
            email=email,
            email_verified=claim_is_true(claims.get("email_verified")),
            display_name=self._display_name(params.get("user")),
        )
