from datetime import datetime, timedelta, timezone

import pytest

from convergeauth.service.errors import (
    ForbiddenError,
    InvalidCredentialError,
    VerificationRequiredError,
)


@pytest.fixture
def admin(runtime):
    return runtime.store.create_user("Root@Example.com", email_verified=True)


def test_non_allowlisted_user_is_forbidden(runtime):
    user = runtime.store.create_user("grace@example.com", email_verified=True)

    with pytest.raises(ForbiddenError) as exc:
        runtime.elevated.require(user)
    assert exc.value.error_code == "forbidden"


def test_stale_verification_requires_code(runtime, admin):
    with pytest.raises(VerificationRequiredError) as exc:
        runtime.elevated.require(admin)
    assert exc.value.status_code == 403
    assert exc.value.message == "Verification required"

    stale = datetime.now(timezone.utc) - timedelta(minutes=61)
    runtime.store.update_user(admin.id, elevated_verified_at=stale)
    with pytest.raises(VerificationRequiredError):
        runtime.elevated.require(runtime.store.get_user(admin.id))


async def test_code_round_trip_opens_the_gate(runtime, admin, outbox):
    await runtime.elevated.send_code(admin)
    assert outbox[0]["template"] == "verification-otp"

    verified_at = runtime.elevated.verify(admin, outbox[0]["code"])
    refreshed = runtime.store.get_user(admin.id)
    assert refreshed.elevated_verified_at == verified_at
    runtime.elevated.require(refreshed)


async def test_wrong_code_keeps_gate_closed(runtime, admin, outbox):
    await runtime.elevated.send_code(admin)
    wrong = "000000" if outbox[0]["code"] != "000000" else "111111"

    with pytest.raises(InvalidCredentialError):
        runtime.elevated.verify(admin, wrong)
    with pytest.raises(VerificationRequiredError):
        runtime.elevated.require(runtime.store.get_user(admin.id))


async def test_send_code_refuses_non_allowlisted(runtime, outbox):
    user = runtime.store.create_user("grace@example.com", email_verified=True)

    with pytest.raises(ForbiddenError):
        await runtime.elevated.send_code(user)
    assert outbox == []


async def test_login_code_does_not_open_the_gate(runtime, admin, outbox):
    await runtime.otp.send(admin.email, "login")

    with pytest.raises(InvalidCredentialError):
        runtime.elevated.verify(admin, outbox[0]["code"])
    assert runtime.store.get_user(admin.id).elevated_verified_at is None
    with pytest.raises(VerificationRequiredError):
        runtime.elevated.require(runtime.store.get_user(admin.id))
