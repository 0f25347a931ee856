from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from convergeauth.config import Settings
from convergeauth.logging import get_logger
from convergeauth.service.errors import (
    CounterRegressionError,
    InvalidCredentialError,
    NoChallengeError,
    ValidationError,
)
from convergeauth.storage.common import AuthStore
from convergeauth.storage.errors import ConstraintViolation
from convergeauth.storage.models import Authenticator, User

logger = get_logger(__name__)


class PasskeyManager:
    """WebAuthn registration and authentication ceremonies.

    Each user has at most one pending challenge, stored on the user record and
    burned at the start of the matching ``complete_*`` call.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.rp_id = settings.resolved_rp_id
        self.rp_name = settings.webauthn_rp_name
        self.origin = settings.app_base_url.rstrip("/")
        self.challenge_ttl = timedelta(seconds=settings.webauthn_challenge_ttl_seconds)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _remember_challenge(self, user: User, challenge: bytes) -> None:
        self.store.set_webauthn_challenge(
            user.id, bytes_to_base64url(challenge), self._now() + self.challenge_ttl
        )

    def _take_challenge(self, user: User) -> bytes:
        pending = self.store.pop_webauthn_challenge(user.id)
        if pending is None:
            raise NoChallengeError("No pending challenge")
        challenge, expires_at = pending
        if expires_at is None or expires_at <= self._now():
            raise NoChallengeError("Challenge expired")
        return base64url_to_bytes(challenge)

    def _descriptors(self, user: User) -> list[PublicKeyCredentialDescriptor]:
        return [
            PublicKeyCredentialDescriptor(id=base64url_to_bytes(a.credential_id))
            for a in self.store.list_authenticators(user.id)
        ]

    def has_passkey(self, user: User) -> bool:
        return bool(self.store.list_authenticators(user.id))

    def begin_registration(self, user: User) -> Dict[str, Any]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode(),
            user_name=user.email,
            user_display_name=user.display_name or user.email,
            exclude_credentials=self._descriptors(user),
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            timeout=int(self.challenge_ttl.total_seconds() * 1000),
        )
        self._remember_challenge(user, options.challenge)
        return json.loads(options_to_json(options))

    def complete_registration(self, user: User, credential: Dict[str, Any]) -> Authenticator:
        challenge = self._take_challenge(user)
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=challenge,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
            )
        except InvalidRegistrationResponse as exc:
            self.logger.warning("webauthn_registration_rejected", user_id=user.id, error=str(exc))
            raise InvalidCredentialError("Registration could not be verified") from exc

        response = credential.get("response") if isinstance(credential, dict) else None
        transports = response.get("transports") if isinstance(response, dict) else None
        authenticator = Authenticator(
            credential_id=bytes_to_base64url(verified.credential_id),
            user_id=user.id,
            public_key=bytes_to_base64url(verified.credential_public_key),
            sign_count=0,
            transports=list(transports or []),
        )
        try:
            stored = self.store.add_authenticator(authenticator)
        except ConstraintViolation as exc:
            raise InvalidCredentialError("Credential already registered") from exc
        self.logger.info("webauthn_registered", user_id=user.id)
        return stored

    def begin_authentication(self, user: User) -> Dict[str, Any]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=self._descriptors(user),
            user_verification=UserVerificationRequirement.PREFERRED,
            timeout=int(self.challenge_ttl.total_seconds() * 1000),
        )
        self._remember_challenge(user, options.challenge)
        return json.loads(options_to_json(options))

    def complete_authentication(self, user: User, credential: Dict[str, Any]) -> Authenticator:
        challenge = self._take_challenge(user)
        credential_id = credential.get("id") if isinstance(credential, dict) else None
        if not credential_id:
            raise ValidationError("credential.id is required")
        authenticator = self.store.get_authenticator(credential_id)
        if authenticator is None or authenticator.user_id != user.id:
            raise InvalidCredentialError("Unknown credential")

        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=challenge,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
                credential_public_key=base64url_to_bytes(authenticator.public_key),
                # The counter is compared in the store against its latest value
                credential_current_sign_count=0,
            )
        except InvalidAuthenticationResponse as exc:
            self.logger.warning("webauthn_assertion_rejected", user_id=user.id, error=str(exc))
            raise InvalidCredentialError("Assertion could not be verified") from exc

        if not self.store.advance_sign_count(
            credential_id, verified.new_sign_count, self._now()
        ):
            self.logger.warning(
                "webauthn_counter_regression",
                user_id=user.id,
                credential=credential_id,
                reported=verified.new_sign_count,
            )
            raise CounterRegressionError("Authenticator counter did not increase")
        self.logger.info("webauthn_authenticated", user_id=user.id)
        return self.store.get_authenticator(credential_id) or authenticator

    def snooze(self, user: User, days: int) -> datetime:
        until = self._now() + timedelta(days=days)
        self.store.update_user(user.id, passkey_snoozed_until=until)
        return until
