from __future__ import annotations

from datetime import datetime, timedelta, timezone

from convergeauth.config import Settings
from convergeauth.logging import get_logger
from convergeauth.service.errors import (
    ForbiddenError,
    InvalidCredentialError,
    VerificationRequiredError,
)
from convergeauth.service.otp import OtpEngine
from convergeauth.storage.common import AuthStore
from convergeauth.storage.models import User

logger = get_logger(__name__)


class ElevatedGate:
    """Re-verification window for sysadmin actions.

    Being signed in is not enough: an allow-listed operator must also have
    passed an emailed code within the last ``elevated_verification_minutes``.
    """

    def __init__(self, store: AuthStore, otp: OtpEngine, settings: Settings) -> None:
        self.store = store
        self.otp = otp
        self.allowed = {email.lower() for email in settings.sysadmin_emails}
        self.window = timedelta(minutes=settings.elevated_verification_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def is_sysadmin(self, user: User) -> bool:
        return user.email.lower() in self.allowed

    def _check_allowed(self, user: User) -> None:
        if not self.is_sysadmin(user):
            logger.warning("elevated_not_allowed", user_id=user.id)
            raise ForbiddenError("Forbidden")

    def is_fresh(self, user: User) -> bool:
        verified_at = user.elevated_verified_at
        return verified_at is not None and self._now() - verified_at <= self.window

    def require(self, user: User) -> None:
        self._check_allowed(user)
        if not self.is_fresh(user):
            raise VerificationRequiredError("Verification required")

    async def send_code(self, user: User) -> None:
        self._check_allowed(user)
        await self.otp.send(user.email, "verification", None)

    def verify(self, user: User, code: str) -> datetime:
        self._check_allowed(user)
        result = self.otp.verify_by_code(user.email, code, purpose="verification")
        if result.user_id != user.id:
            raise InvalidCredentialError("Invalid code")
        now = self._now()
        self.store.update_user(user.id, elevated_verified_at=now)
        logger.info("elevated_verified", user_id=user.id)
        return now
