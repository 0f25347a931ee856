from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from convergeauth.config import Settings
from convergeauth.logging import get_logger
from convergeauth.service.email import EmailService
from convergeauth.service.errors import (
    ExpiredError,
    InvalidCredentialError,
    NotFoundError,
    TooManyAttemptsError,
    ValidationError,
)
from convergeauth.storage.common import AuthStore, normalize_email
from convergeauth.storage.models import OtpRecord

logger = get_logger(__name__)

PURPOSES = ("signup", "login", "verification")
# Purposes whose success proves control of the mailbox
_VERIFYING_PURPOSES = {"signup", "verification"}
DEFAULT_REDIRECT_PATH = "/dashboard"


@dataclass
class OtpVerification:
    user_id: str
    email: str
    purpose: str
    redirect_path: str


class OtpEngine:
    """Issues and verifies emailed one-time codes and magic-link tokens.

    Only an HMAC of ``email:code`` is persisted, so reading the table does not
    reveal a usable code. The same derived token is the magic-link secret.
    """

    def __init__(self, store: AuthStore, email: EmailService, settings: Settings) -> None:
        self.store = store
        self.email = email
        self.settings = settings
        self.ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.max_attempts = settings.otp_max_attempts
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(1_000_000):06d}"

    def derive_token(self, email: str, code: str) -> str:
        digest = hmac.new(
            self.settings.resolved_otp_salt.encode(),
            f"{normalize_email(email)}:{code}".encode(),
            hashlib.sha256,
        ).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")

    def magic_link(self, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/magiclink/{token}"

    async def send(
        self, email: str, purpose: str, redirect_path: Optional[str] = None
    ) -> OtpRecord:
        if purpose not in PURPOSES:
            raise ValidationError(f"unsupported purpose: {purpose}")
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            if purpose != "signup":
                raise NotFoundError("User not found")
            user = self.store.create_user(normalized, email_verified=False)
            self.logger.info("otp_placeholder_user_created", user_id=user.id)

        code = self.generate_code()
        token = self.derive_token(normalized, code)
        now = self._now()
        # One live code per user; a resend invalidates the previous one
        self.store.delete_otps_for_user(user.id)
        record = self.store.save_otp(
            OtpRecord(
                token=token,
                user_id=user.id,
                email=normalized,
                purpose=purpose,
                redirect_path=redirect_path or DEFAULT_REDIRECT_PATH,
                created_at=now,
                expires_at=now + self.ttl,
                attempts=0,
            )
        )
        delivered = await self.email.send(
            normalized,
            f"{purpose}-otp",
            {
                "code": code,
                "link": self.magic_link(token),
                "ttl_minutes": self.settings.otp_ttl_minutes,
            },
        )
        if not delivered:
            self.logger.warning("otp_delivery_failed", user_id=user.id, purpose=purpose)
        self.logger.info("otp_sent", user_id=user.id, purpose=purpose)
        return record

    def verify_by_code(
        self, email: str, code: str, purpose: Optional[str] = None
    ) -> OtpVerification:
        """Check a typed code against the user's live record.

        With ``purpose`` set, a live code issued for any other purpose is
        rejected without being consumed or counted.
        """
        user = self.store.get_user_by_email(email)
        record = self.store.get_latest_otp_for_user(user.id) if user else None
        return self._verify(record, self.derive_token(email, code.strip()), purpose)

    def verify_by_token(self, token: str) -> OtpVerification:
        return self._verify(self.store.get_otp(token), token)

    def _verify(
        self,
        record: Optional[OtpRecord],
        presented: str,
        purpose: Optional[str] = None,
    ) -> OtpVerification:
        if record is None:
            self.logger.info("otp_verify_unknown")
            raise InvalidCredentialError("Invalid code")
        if purpose is not None and record.purpose != purpose:
            self.logger.info(
                "otp_verify_wrong_purpose", user_id=record.user_id, purpose=record.purpose
            )
            raise InvalidCredentialError("Invalid code")
        if record.is_expired(self._now()):
            self.store.consume_otp(record.token)
            self.logger.info("otp_verify_expired", user_id=record.user_id)
            raise ExpiredError("Code has expired")
        # Every comparison spends one attempt, reserved before the digest is checked
        attempt = self.store.take_otp_attempt(record.token, self.max_attempts)
        if attempt is None:
            if self.store.consume_otp(record.token) is None:
                raise InvalidCredentialError("Invalid code")
            self.logger.warning("otp_attempts_exhausted", user_id=record.user_id)
            raise TooManyAttemptsError("Too many attempts")
        if not hmac.compare_digest(record.token, presented):
            self.logger.info("otp_verify_mismatch", user_id=record.user_id, attempts=attempt)
            raise InvalidCredentialError("Invalid code")

        consumed = self.store.consume_otp(record.token)
        if consumed is None:
            # A concurrent request already used this code
            raise InvalidCredentialError("Invalid code")
        if consumed.purpose in _VERIFYING_PURPOSES:
            self.store.update_user(consumed.user_id, email_verified=True)
        self.logger.info("otp_verified", user_id=consumed.user_id, purpose=consumed.purpose)
        return OtpVerification(
            user_id=consumed.user_id,
            email=consumed.email,
            purpose=consumed.purpose,
            redirect_path=consumed.redirect_path or DEFAULT_REDIRECT_PATH,
        )

    def count_expired(self) -> int:
        return self.store.count_expired_otps(self._now())

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_otps(self._now())
        if removed:
            self.logger.info("otp_cleanup", removed=removed)
        return removed
