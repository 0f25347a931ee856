import json
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import MICROSOFT_TENANT_ID
from convergeauth.app import create_app
from convergeauth.service.errors import InvalidCredentialError, MissingEmailError
from convergeauth.service.runtime import Runtime

GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO = "https://www.googleapis.com/oauth2/v2/userinfo"
MICROSOFT_TOKEN = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_KEYS = "https://login.microsoftonline.com/common/discovery/v2.0/keys"
APPLE_TOKEN = "https://appleid.apple.com/auth/token"
APPLE_KEYS = "https://appleid.apple.com/auth/keys"


def _begin(client, provider):
    response = client.get(f"/auth/{provider}")
    assert response.status_code == 302
    location = response.headers["location"]
    return response, location, parse_qs(urlparse(location).query)["state"][0]


def _set_cookies(response):
    return response.headers.get_list("set-cookie")


def _google_ok(idp, **userinfo):
    idp.add("POST", GOOGLE_TOKEN, json={"access_token": "google-access", "token_type": "Bearer"})
    info = {
        "id": "1234567890",
        "email": "test@example.com",
        "verified_email": True,
        "name": "Test User",
        "picture": "https://example.com/p.png",
    }
    info.update(userinfo)
    idp.add("GET", GOOGLE_USERINFO, json=info)


def test_google_begin_redirects_with_state_cookie(client):
    response, location, state = _begin(client, "google")

    assert location.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "client_id=google-client-id" in location
    assert "scope=email+profile" in location
    assert "response_type=code" in location
    assert "redirect_uri=http%3A%2F%2Flocalhost%3A3000%2Fauth%2Fgoogle" in location
    cookie = next(c for c in _set_cookies(response) if c.startswith("oauth_state="))
    assert state in cookie
    assert "HttpOnly" in cookie
    assert "samesite=lax" in cookie.lower()
    assert "Max-Age=600" in cookie


def test_google_callback_creates_user_and_session(client, runtime, idp):
    _google_ok(idp)
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.status_code == 302
    assert response.headers["location"] == "/home"
    cookies = _set_cookies(response)
    assert any(c.startswith("session=") for c in cookies)

    user = runtime.store.get_user_by_email("test@example.com")
    assert user.email_verified is True
    assert user.display_name == "Test User"
    assert user.avatar_url == "https://example.com/p.png"

    token_request = next(r for r in idp.requests if str(r.url) == GOOGLE_TOKEN)
    form = parse_qs(token_request.content.decode())
    assert form["code"] == ["test-code"]
    assert form["client_secret"] == ["google-client-secret"]
    userinfo_request = next(r for r in idp.requests if str(r.url) == GOOGLE_USERINFO)
    assert userinfo_request.headers["authorization"] == "Bearer google-access"


def test_google_callback_for_existing_user_signs_in(client, runtime, idp):
    existing = runtime.store.create_user("test@example.com", email_verified=True, display_name="Tess")
    _google_ok(idp)
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.headers["location"] == "/home"
    assert [u.id for u in runtime.store.list_users()] == [existing.id]
    assert runtime.store.get_user(existing.id).display_name == "Tess"

def test_unverified_google_email_cannot_claim_existing_account(client, runtime, idp):
    owner = runtime.store.create_user("test@example.com", email_verified=True)
    _google_ok(idp, id="other-google-subject", verified_email=False)
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.headers["location"] == "/login?error=invalid_credential"
    assert not any(c.startswith("session=") for c in _set_cookies(response))
    assert not any(s.user_id == owner.id for s in runtime.store.sessions.values())
    assert runtime.store.get_user_by_identity("google", "other-google-subject") is None



def test_state_not_matching_cookie_is_invalid_state(client, idp):
    _google_ok(idp)
    client.cookies.set("oauth_state", "test-state")

    response = client.get("/auth/google?code=test-code&state=wrong-state")
    assert response.status_code == 302
    assert response.headers["location"] == "/login?error=invalid_state"
    assert idp.requests == []


def test_state_cannot_be_replayed(client, idp):
    _google_ok(idp)
    _, _, state = _begin(client, "google")
    assert client.get(f"/auth/google?code=test-code&state={state}").headers["location"] == "/home"

    client.cookies.set("oauth_state", state)
    replay = client.get(f"/auth/google?code=test-code&state={state}")
    assert replay.headers["location"] == "/login?error=invalid_state"


def test_token_endpoint_failure_is_provider_unavailable(client, idp):
    idp.add("POST", GOOGLE_TOKEN, status=500, json={"error": "server_error"})
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.headers["location"] == "/login?error=provider_unavailable"


def test_token_endpoint_timeout_is_provider_unavailable(client, idp):
    idp.add("POST", GOOGLE_TOKEN, exc=httpx.ReadTimeout("timed out"))
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.headers["location"] == "/login?error=provider_unavailable"


def test_google_account_without_email(client, idp):
    _google_ok(idp, email=None)
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?code=test-code&state={state}")
    assert response.headers["location"] == "/login?error=missing_email"


def test_user_denied_consent(client, idp):
    _, _, state = _begin(client, "google")

    response = client.get(f"/auth/google?error=access_denied&state={state}")
    assert response.headers["location"] == "/login?error=invalid_credential"
    assert idp.requests == []


def test_unknown_provider_is_404(client):
    response = client.get("/auth/github")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_unconfigured_provider_cannot_begin(settings, idp):
    runtime = Runtime(
        settings.model_copy(update={"oauth_google_client_id": None}),
        oauth_transport=httpx.MockTransport(idp.handler),
    )
    client = TestClient(create_app(runtime), follow_redirects=False)

    response = client.get("/auth/google")
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_callbacks_are_rate_limited(settings, idp):
    runtime = Runtime(
        settings.model_copy(update={"callback_rate_limit_per_minute": 1}),
        oauth_transport=httpx.MockTransport(idp.handler),
    )
    client = TestClient(create_app(runtime), follow_redirects=False)
    client.cookies.set("oauth_state", "test-state")

    assert client.get("/auth/google?code=a&state=test-state").status_code == 302
    limited = client.get("/auth/google?code=a&state=test-state")
    assert limited.status_code == 429
    assert limited.json()["code"] == "rate_limited"


def test_microsoft_begin_scope(client):
    _, location, _ = _begin(client, "microsoft")

    assert location.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
    assert "client_id=microsoft-client-id" in location
    assert "scope=openid+email+profile+User.Read" in location


def _microsoft_claims(**overrides):
    claims = {
        "iss": f"https://login.microsoftonline.com/{MICROSOFT_TENANT_ID}/v2.0",
        "aud": "microsoft-client-id",
        "sub": "ms-subject",
        "oid": "ms-object-id",
        "tid": MICROSOFT_TENANT_ID,
        "preferred_username": "ms.user@contoso.com",
        "name": "Contoso User",
    }
    claims.update(overrides)
    return claims


def test_microsoft_callback_verifies_id_token(client, runtime, idp, jwks, sign_id_token):
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": sign_id_token(_microsoft_claims())})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/home"
    user = runtime.store.get_user_by_email("ms.user@contoso.com")
    assert user.display_name == "Contoso User"
    assert runtime.store.get_user_by_identity("microsoft", "ms-object-id").id == user.id


def test_microsoft_rejects_wrong_audience(client, idp, jwks, sign_id_token):
    token = sign_id_token(_microsoft_claims(aud="someone-else"))
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": token})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/login?error=invalid_credential"


def test_microsoft_rejects_issuer_from_other_tenant(client, idp, jwks, sign_id_token):
    token = sign_id_token(_microsoft_claims(iss="https://login.microsoftonline.com/other/v2.0"))
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": token})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/login?error=invalid_credential"

def test_microsoft_multi_tenant_email_is_unverified_without_edov(
    client, runtime, idp, jwks, sign_id_token
):
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": sign_id_token(_microsoft_claims())})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert runtime.store.get_user_by_email("ms.user@contoso.com").email_verified is False


def test_microsoft_multi_tenant_email_cannot_claim_existing_account(
    client, runtime, idp, jwks, sign_id_token
):
    owner = runtime.store.create_user("ms.user@contoso.com", email_verified=True)
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": sign_id_token(_microsoft_claims())})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/login?error=invalid_credential"
    assert not any(s.user_id == owner.id for s in runtime.store.sessions.values())


def test_microsoft_domain_owner_verified_email_links(client, runtime, idp, jwks, sign_id_token):
    owner = runtime.store.create_user("ms.user@contoso.com", email_verified=True)
    token = sign_id_token(_microsoft_claims(xms_edov=True))
    idp.add("POST", MICROSOFT_TOKEN, json={"id_token": token})
    idp.add("GET", MICROSOFT_KEYS, json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/home"
    assert runtime.store.get_user_by_identity("microsoft", "ms-object-id").id == owner.id


def test_microsoft_pinned_tenant_email_is_verified(settings, idp, jwks, sign_id_token):
    runtime = Runtime(
        settings.model_copy(update={"oauth_microsoft_tenant": MICROSOFT_TENANT_ID}),
        oauth_transport=httpx.MockTransport(idp.handler),
    )
    client = TestClient(create_app(runtime), follow_redirects=False)
    base = f"https://login.microsoftonline.com/{MICROSOFT_TENANT_ID}"
    idp.add("POST", f"{base}/oauth2/v2.0/token", json={"id_token": sign_id_token(_microsoft_claims())})
    idp.add("GET", f"{base}/discovery/v2.0/keys", json=jwks)
    _, _, state = _begin(client, "microsoft")

    response = client.get(f"/auth/microsoft?code=ms-code&state={state}")
    assert response.headers["location"] == "/home"
    assert runtime.store.get_user_by_email("ms.user@contoso.com").email_verified is True



def test_apple_begin_uses_form_post(client):
    response, location, _ = _begin(client, "apple")

    assert location.startswith("https://appleid.apple.com/auth/authorize?")
    assert "client_id=com.example.web" in location
    assert "scope=email+name" in location
    assert "response_mode=form_post" in location
    assert any(c.startswith("oauth_state=") for c in _set_cookies(response))


def _apple_claims(**overrides):
    claims = {
        "iss": "https://appleid.apple.com",
        "aud": "com.example.web",
        "sub": "001234.apple-subject",
        "email": "test@privaterelay.appleid.com",
        "email_verified": "true",
    }
    claims.update(overrides)
    return claims


def test_apple_form_post_callback(client, runtime, idp, jwks, sign_id_token, apple_signing_key):
    idp.add("POST", APPLE_TOKEN, json={"id_token": sign_id_token(_apple_claims())})
    idp.add("GET", APPLE_KEYS, json=jwks)
    _, _, state = _begin(client, "apple")

    response = client.post(
        "/auth/apple",
        data={
            "code": "apple-code",
            "state": state,
            "user": json.dumps({"name": {"firstName": "Test", "lastName": "User"}}),
        },
    )
    assert response.status_code == 302
    assert response.headers["location"] == "/home"
    user = runtime.store.get_user_by_email("test@privaterelay.appleid.com")
    assert user.display_name == "Test User"
    assert user.email_verified is True

    token_request = next(r for r in idp.requests if str(r.url) == APPLE_TOKEN)
    client_secret = parse_qs(token_request.content.decode())["client_secret"][0]
    assert jwt.get_unverified_header(client_secret)["kid"] == "KEY1234567"
    decoded = jwt.decode(
        client_secret,
        apple_signing_key.public_key(),
        algorithms=["ES256"],
        audience="https://appleid.apple.com",
    )
    assert decoded["iss"] == "TEAM123456"
    assert decoded["sub"] == "com.example.web"


def test_apple_explicit_unverified_email_is_honoured(client, runtime, idp, jwks, sign_id_token):
    idp.add("POST", APPLE_TOKEN, json={"id_token": sign_id_token(_apple_claims(email_verified="false"))})
    idp.add("GET", APPLE_KEYS, json=jwks)
    _, _, state = _begin(client, "apple")

    client.post("/auth/apple", data={"code": "apple-code", "state": state})
    assert runtime.store.get_user_by_email("test@privaterelay.appleid.com").email_verified is False


def test_apple_token_signed_by_unknown_key(client, idp, jwks, sign_id_token):
    idp.add("POST", APPLE_TOKEN, json={"id_token": sign_id_token(_apple_claims(), kid="rotated")})
    idp.add("GET", APPLE_KEYS, json=jwks)
    _, _, state = _begin(client, "apple")

    response = client.post("/auth/apple", data={"code": "apple-code", "state": state})
    assert response.headers["location"] == "/login?error=invalid_credential"


def test_apple_state_mismatch(client, idp):
    client.cookies.set("oauth_state", "test-state")

    response = client.post("/auth/apple", data={"code": "apple-code", "state": "wrong-state"})
    assert response.headers["location"] == "/login?error=invalid_state"
    assert idp.requests == []


async def test_apple_id_token_without_email(runtime, idp, jwks, sign_id_token):
    claims = _apple_claims()
    claims.pop("email")
    idp.add("POST", APPLE_TOKEN, json={"id_token": sign_id_token(claims)})
    idp.add("GET", APPLE_KEYS, json=jwks)

    with pytest.raises(MissingEmailError):
        await runtime.oauth_providers["apple"].complete({"code": "apple-code"})


async def test_missing_code_is_invalid_credential(runtime):
    with pytest.raises(InvalidCredentialError):
        await runtime.oauth_providers["google"].complete({})


def test_apple_display_name_parsing():
    from convergeauth.service.providers.apple import AppleProvider

    assert AppleProvider._display_name('{"name": {"firstName": "Ada"}}') == "Ada"
    assert AppleProvider._display_name("not json") is None
    assert AppleProvider._display_name(None) is None
