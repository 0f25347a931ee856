from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from convergeauth.logging import get_logger
from convergeauth.service.errors import InvalidCredentialError, MissingEmailError
from convergeauth.storage.common import AuthStore, normalize_email
from convergeauth.storage.errors import ConstraintViolation
from convergeauth.storage.models import User

logger = get_logger(__name__)


class IdentityKind(str, Enum):
    OAUTH2 = "oauth2"
    SAML = "saml"
    WEBAUTHN = "webauthn"
    EMAIL_OTP = "email_otp"


@dataclass(frozen=True)
class ExternalIdentity:
    """A verified claim about who is signing in, produced by one channel."""

    kind: IdentityKind
    provider: str
    subject: str
    email: str
    email_verified: bool
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class Resolution:
    user: User
    is_new_user: bool


def default_display_name(email: str) -> str:
    return email.split("@", 1)[0]


class IdentityResolver:
    """Find-or-create the local user behind an external identity.

    Accounts are linked implicitly by email address: a verified Google login
    and a SAML login for the same address land on the same user. An identity
    whose provider does not vouch for the address is never matched to an
    existing account by email.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = logger

    def _check_linkable(self, identity: ExternalIdentity, user: User) -> None:
        if not identity.email_verified:
            self.logger.warning(
                "identity_unverified_email_match",
                user_id=user.id,
                provider=identity.provider,
            )
            raise InvalidCredentialError("Email address is not verified by the provider")

    def resolve(self, identity: ExternalIdentity) -> Resolution:
        if not identity.email:
            raise MissingEmailError("Identity provider did not return an email")
        email = normalize_email(identity.email)

        user = self.store.get_user_by_identity(identity.provider, identity.subject)
        if user is None:
            user = self.store.get_user_by_email(email)
            if user is not None:
                self._check_linkable(identity, user)
        is_new = user is None

        if user is None:
            try:
                user = self.store.create_user(
                    email,
                    email_verified=identity.email_verified,
                    display_name=identity.display_name or default_display_name(email),
                    avatar_url=identity.avatar_url,
                )
            except ConstraintViolation:
                # Lost a race with a concurrent first sign-in for the same address
                user = self.store.get_user_by_email(email)
                if user is None:
                    raise
                self._check_linkable(identity, user)
                is_new = False
            else:
                self.logger.info(
                    "identity_user_created", user_id=user.id, kind=identity.kind.value
                )

        if not is_new:
            updates: dict = {}
            if identity.email_verified and not user.email_verified:
                updates["email_verified"] = True
            if not user.display_name and identity.display_name:
                updates["display_name"] = identity.display_name
            if not user.avatar_url and identity.avatar_url:
                updates["avatar_url"] = identity.avatar_url
            if updates:
                user = self.store.update_user(user.id, **updates) or user

        self.store.link_identity(user.id, identity.provider, identity.subject)
        return Resolution(user=user, is_new_user=is_new)
