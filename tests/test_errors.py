import json

import pytest

from convergeauth.api.error_handling import error_response
from convergeauth.service import errors
from convergeauth.storage.errors import ConstraintViolation


@pytest.mark.parametrize(
    "exc_type,status,code",
    [
        (errors.InvalidStateError, 400, "invalid_state"),
        (errors.ProviderUnavailableError, 502, "provider_unavailable"),
        (errors.MissingEmailError, 400, "missing_email"),
        (errors.InvalidCredentialError, 400, "invalid_credential"),
        (errors.NoChallengeError, 400, "no_challenge"),
        (errors.CounterRegressionError, 400, "counter_regression"),
        (errors.ExpiredError, 400, "expired"),
        (errors.TooManyAttemptsError, 400, "too_many_attempts"),
        (errors.AuthenticationError, 401, "unauthorized"),
        (errors.ForbiddenError, 403, "forbidden"),
        (errors.VerificationRequiredError, 403, "verification_required"),
        (errors.NotFoundError, 404, "not_found"),
        (errors.ValidationError, 400, "validation_error"),
        (errors.ConflictError, 409, "conflict"),
        (errors.RateLimitedError, 429, "rate_limited"),
        (errors.ServerError, 500, "server_error"),
    ],
)
def test_error_codes(exc_type, status, code):
    exc = exc_type("boom")

    assert (exc.status_code, exc.error_code, exc.message) == (status, code, "boom")


def test_challenge_errors_are_credential_errors():
    assert issubclass(errors.NoChallengeError, errors.InvalidCredentialError)
    assert issubclass(errors.CounterRegressionError, errors.InvalidCredentialError)
    assert issubclass(errors.VerificationRequiredError, errors.ForbiddenError)


def test_error_response_omits_empty_details():
    response = error_response(404, "User not found")

    assert response.status_code == 404
    assert json.loads(response.body) == {"error": "User not found", "code": "not_found"}


def test_error_response_keeps_details():
    response = error_response(409, "duplicate", {"field": "slug"}, code="conflict")

    assert json.loads(response.body) == {
        "error": "duplicate",
        "code": "conflict",
        "details": {"field": "slug"},
    }


def test_constraint_violation_carries_detail():
    exc = ConstraintViolation("email already registered", {"field": "email"})

    assert exc.message == "email already registered"
    assert exc.detail == {"field": "email"}
