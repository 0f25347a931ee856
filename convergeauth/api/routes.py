from __future__ import annotations

import asyncio
import hmac
from typing import Any, Mapping, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response
from fastapi.responses import RedirectResponse
from starlette.datastructures import FormData

from convergeauth.api.schemas import (
    AdminUserListResponse,
    AdminUserOut,
    CheckResponse,
    CodeRequest,
    CredentialRequest,
    ElevatedResponse,
    EmailRequest,
    JwtResponse,
    LoginLinkRequest,
    OrganizationCreateRequest,
    OrganizationListResponse,
    OrganizationOut,
    PasskeyAuthRequest,
    PasskeyLoginResponse,
    PasskeyStatusResponse,
    PasskeyVerifyResponse,
    SessionCreatedResponse,
    SessionCreateRequest,
    SessionRefreshRequest,
    SessionResponse,
    SessionUser,
    SnoozeRequest,
    SnoozeResponse,
    SuccessResponse,
    UserOut,
    VerifyRequest,
    VerifyResponse,
)
from convergeauth.logging import get_logger, redact_email
from convergeauth.service.errors import (
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
)
from convergeauth.service.identity import ExternalIdentity
from convergeauth.service.otp import OtpVerification
from convergeauth.service.providers.base import OAuth2Provider
from convergeauth.service.runtime import Runtime, check_rate_limit
from convergeauth.service.sessions import SessionContext
from convergeauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter()

SESSION_COOKIE = "session"
STATE_COOKIE = "oauth_state"
SAML_REQUEST_COOKIE = "saml_request_id"
SAML_DOMAIN_COOKIE = "saml_domain"
FLOW_COOKIE_MAX_AGE = 600


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise 429 once ``key`` has used up its budget for the window."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", retry_after=reset_seconds)
        raise RateLimitedError("Too many requests", detail={"retry_after": reset_seconds})


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_cookie(response: Response, runtime: Runtime, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _clear_cookie(response: Response, runtime: Runtime, name: str) -> None:
    response.delete_cookie(
        name,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def _apply_session_cookie(response: Response, runtime: Runtime, token: str) -> None:
    _set_cookie(
        response,
        runtime,
        SESSION_COOKIE,
        token,
        max_age=runtime.settings.session_ttl_days * 24 * 60 * 60,
    )


def _login_error_redirect(runtime: Runtime, code: str) -> RedirectResponse:
    return RedirectResponse(f"{runtime.settings.login_path}?error={code}", status_code=302)


def _user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        email_verified=user.email_verified,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
    )


def _session_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


async def get_session(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> SessionContext:
    """Resolve the caller's session and rotate the token it presented."""
    ctx = runtime.sessions.validate(_session_token(request, authorization))
    if ctx is None:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    rotated = runtime.sessions.mint_token(ctx.session)
    request.state.session_token = rotated
    _apply_session_cookie(response, runtime, rotated)
    return ctx


async def get_elevated_session(
    ctx: SessionContext = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
) -> SessionContext:
    runtime.elevated.require(ctx.user)
    return ctx


def _start_session(
    runtime: Runtime, request: Request, response: Response, user: User
) -> str:
    issued = runtime.sessions.create(
        user.id,
        user_agent=request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    _apply_session_cookie(response, runtime, issued.token)
    return issued.token


def _complete_browser_login(
    runtime: Runtime, request: Request, identity: ExternalIdentity
) -> RedirectResponse:
    resolution = runtime.identity.resolve(identity)
    response = RedirectResponse(runtime.settings.post_login_path, status_code=302)
    _start_session(runtime, request, response, resolution.user)
    logger.info(
        "browser_login_complete",
        provider=identity.provider,
        user_id=resolution.user.id,
        is_new_user=resolution.is_new_user,
    )
    return response


def _oauth_provider(runtime: Runtime, name: str) -> OAuth2Provider:
    provider = runtime.oauth_providers.get(name)
    if provider is None:
        raise _http_error("not_found", "Unknown provider", status_code=404)
    return provider


async def _oauth_begin(runtime: Runtime, provider: OAuth2Provider) -> RedirectResponse:
    issued = await runtime.states.issue(provider.name)
    url = provider.begin(issued.token)
    response = RedirectResponse(url, status_code=302)
    _set_cookie(response, runtime, STATE_COOKIE, issued.token, FLOW_COOKIE_MAX_AGE)
    return response


async def _oauth_callback(
    runtime: Runtime, provider: OAuth2Provider, request: Request, params: Mapping[str, Any]
) -> RedirectResponse:
    await _enforce_rate_limit(
        runtime,
        f"callback:{provider.name}:{_client_ip(request)}",
        runtime.settings.callback_rate_limit_per_minute,
        60,
    )
    try:
        await runtime.states.consume(
            params.get("state"), request.cookies.get(STATE_COOKIE), provider.name
        )
        identity = await provider.complete(params)
        response = _complete_browser_login(runtime, request, identity)
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", provider=provider.name, error_code=exc.error_code)
        response = _login_error_redirect(runtime, exc.error_code)
    _clear_cookie(response, runtime, STATE_COOKIE)
    return response


async def _saml_begin(runtime: Runtime, domain: Optional[str]) -> RedirectResponse:
    begin = runtime.saml.begin(domain)
    # The AuthnRequest ID doubles as the single-use state for the POST callback
    await runtime.states.issue(
        runtime.saml.name, {"domain": begin.domain}, token=begin.request_id
    )
    response = RedirectResponse(begin.url, status_code=302)
    _set_cookie(response, runtime, SAML_REQUEST_COOKIE, begin.request_id, FLOW_COOKIE_MAX_AGE)
    _set_cookie(response, runtime, SAML_DOMAIN_COOKIE, begin.domain, FLOW_COOKIE_MAX_AGE)
    return response


async def _saml_callback(runtime: Runtime, request: Request, form: FormData) -> RedirectResponse:
    await _enforce_rate_limit(
        runtime,
        f"callback:saml:{_client_ip(request)}",
        runtime.settings.callback_rate_limit_per_minute,
        60,
    )
    saml_response = form.get("SAMLResponse")
    request_id = request.cookies.get(SAML_REQUEST_COOKIE)
    try:
        context = await runtime.states.consume(request_id, request_id, runtime.saml.name)
        domain = context.get("domain")
        if domain != request.cookies.get(SAML_DOMAIN_COOKIE):
            logger.warning("saml_domain_mismatch", domain=domain)
            raise InvalidStateError("Invalid state")
        identity = await asyncio.to_thread(
            runtime.saml.complete,
            saml_response if isinstance(saml_response, str) else None,
            request_id,
            domain,
        )
        response = _complete_browser_login(runtime, request, identity)
    except ServiceError as exc:
        logger.warning("saml_callback_failed", error_code=exc.error_code)
        response = _login_error_redirect(runtime, exc.error_code)
    _clear_cookie(response, runtime, SAML_REQUEST_COOKIE)
    _clear_cookie(response, runtime, SAML_DOMAIN_COOKIE)
    return response


async def _send_otp(
    runtime: Runtime, email: str, purpose: str, redirect_path: Optional[str] = None
) -> None:
    await _enforce_rate_limit(
        runtime,
        f"otp:{email}",
        runtime.settings.otp_send_rate_limit_per_minute,
        60,
    )
    await runtime.otp.send(email, purpose, redirect_path)


def _verify_response(runtime: Runtime, verification: OtpVerification) -> tuple[User, VerifyResponse]:
    user = runtime.store.get_user(verification.user_id)
    if user is None:
        raise NotFoundError("User not found")
    body = VerifyResponse(
        user=_user_out(user),
        has_passkey=runtime.passkeys.has_passkey(user),
        redirect_path=runtime.post_login_redirect(user, verification.redirect_path),
        is_new_user=verification.purpose == "signup",
    )
    return user, body


@router.post("/auth/signup", response_model=SuccessResponse, tags=["auth"])
async def signup(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    """Email a signup code, or a login code when the address already has an account."""
    existing = runtime.store.get_user_by_email(body.email)
    purpose = "login" if existing is not None and existing.email_verified else "signup"
    await _send_otp(runtime, body.email, purpose)
    return SuccessResponse()


@router.post("/auth/login-link", response_model=SuccessResponse, tags=["auth"])
async def send_login_link(body: LoginLinkRequest, runtime: Runtime = Depends(get_runtime)):
    """Email a login code and magic link.

    Always answers success so the endpoint cannot be used to probe for accounts.
    """
    await _enforce_rate_limit(
        runtime,
        f"otp:{body.email}",
        runtime.settings.otp_send_rate_limit_per_minute,
        60,
    )
    try:
        await runtime.otp.send(body.email, "login", body.redirect_path)
    except NotFoundError:
        logger.info("login_link_unknown_email", email=redact_email(body.email))
    return SuccessResponse()


@router.post("/auth/verify", response_model=VerifyResponse, tags=["auth"])
async def verify(
    body: VerifyRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    if body.token:
        verification = runtime.otp.verify_by_token(body.token)
    else:
        verification = runtime.otp.verify_by_code(body.email, body.code)
    user, result = _verify_response(runtime, verification)
    _start_session(runtime, request, response, user)
    return result


@router.post("/auth/verify/resend", response_model=SuccessResponse, tags=["auth"])
async def resend_verification(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    if runtime.store.get_user_by_email(body.email) is None:
        raise NotFoundError("User not found")
    await _send_otp(runtime, body.email, "verification")
    return SuccessResponse()


@router.get("/magiclink/{token}", tags=["auth"])
async def magic_link(
    request: Request,
    token: str = Path(..., max_length=128),
    runtime: Runtime = Depends(get_runtime),
):
    """Browser entry point for emailed links.

    An expired link triggers a fresh code so the login page can tell the
    user to check their inbox again.
    """
    record = runtime.store.get_otp(token)
    try:
        verification = runtime.otp.verify_by_token(token)
        user, result = _verify_response(runtime, verification)
    except ExpiredError as exc:
        if record is not None:
            try:
                await runtime.otp.send(record.email, record.purpose, record.redirect_path)
            except ServiceError as resend_exc:
                logger.warning("magic_link_resend_failed", error_code=resend_exc.error_code)
        return _login_error_redirect(runtime, exc.error_code)
    except ServiceError as exc:
        logger.info("magic_link_failed", error_code=exc.error_code)
        return _login_error_redirect(runtime, exc.error_code)
    response = RedirectResponse(result.redirect_path, status_code=302)
    _start_session(runtime, request, response, user)
    return response


@router.post("/auth/passkey/register-options", tags=["passkeys"])
async def passkey_register_options(
    ctx: SessionContext = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    return runtime.passkeys.begin_registration(ctx.user)


@router.post(
    "/auth/passkey/verify-registration", response_model=PasskeyVerifyResponse, tags=["passkeys"]
)
async def passkey_verify_registration(
    body: CredentialRequest,
    ctx: SessionContext = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.passkeys.complete_registration(ctx.user, body.credential)
    return PasskeyVerifyResponse(verified=True)


def _user_for_email(runtime: Runtime, email: str) -> User:
    user = runtime.store.get_user_by_email(email)
    if user is None:
        raise NotFoundError("User not found")
    return user


@router.post("/auth/passkey/auth-options", tags=["passkeys"])
async def passkey_auth_options(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    return runtime.passkeys.begin_authentication(_user_for_email(runtime, body.email))


@router.post(
    "/auth/passkey/verify-authentication", response_model=PasskeyLoginResponse, tags=["passkeys"]
)
async def passkey_verify_authentication(
    body: PasskeyAuthRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"passkey:{body.email}",
        runtime.settings.callback_rate_limit_per_minute,
        60,
    )
    user = _user_for_email(runtime, body.email)
    runtime.passkeys.complete_authentication(user, body.credential)
    _start_session(runtime, request, response, user)
    return PasskeyLoginResponse(
        user=_user_out(user), redirect_path=runtime.post_login_redirect(user)
    )


@router.post("/auth/passkey/status", response_model=PasskeyStatusResponse, tags=["passkeys"])
async def passkey_status(body: EmailRequest, runtime: Runtime = Depends(get_runtime)):
    user = runtime.store.get_user_by_email(body.email)
    return PasskeyStatusResponse(
        has_passkey=user is not None and runtime.passkeys.has_passkey(user)
    )


@router.post("/auth/passkey/snooze", response_model=SnoozeResponse, tags=["passkeys"])
async def passkey_snooze(
    body: SnoozeRequest,
    ctx: SessionContext = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    return SnoozeResponse(snoozed_until=runtime.passkeys.snooze(ctx.user, body.days))


@router.post("/auth/session", response_model=SessionCreatedResponse, tags=["session"])
async def create_session(
    body: SessionCreateRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key"),
):
    """Server-to-server session creation for a known user id."""
    expected = runtime.settings.internal_api_key
    if not expected or not x_internal_key or not _keys_match(expected, x_internal_key):
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    if runtime.store.get_user(body.user_id) is None:
        raise NotFoundError("User not found")
    issued = runtime.sessions.create(body.user_id, user_agent=body.user_agent, ip=body.ip)
    _apply_session_cookie(response, runtime, issued.token)
    return SessionCreatedResponse(session_id=issued.session.id, jwt=issued.token)


def _keys_match(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected.encode(), presented.encode())


@router.get("/auth/session", response_model=SessionResponse, tags=["session"])
async def read_session(request: Request, ctx: SessionContext = Depends(get_session)):
    return SessionResponse(
        user=SessionUser(
            id=ctx.user.id,
            email=ctx.user.email,
            organization_id=ctx.session.organization_id,
        ),
        jwt=request.state.session_token,
    )


@router.put("/auth/session", response_model=JwtResponse, tags=["session"])
async def refresh_session(
    body: SessionRefreshRequest, response: Response, runtime: Runtime = Depends(get_runtime)
):
    issued = runtime.sessions.refresh(body.jwt)
    _apply_session_cookie(response, runtime, issued.token)
    return JwtResponse(jwt=issued.token)


@router.post("/auth/logout", response_model=SuccessResponse, tags=["session"])
async def logout(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
):
    """Revoke the current session, if any, and clear the cookie."""
    ctx = runtime.sessions.validate(_session_token(request, authorization))
    if ctx is not None:
        runtime.sessions.delete(ctx.session.id)
    _clear_cookie(response, runtime, SESSION_COOKIE)
    return SuccessResponse()


@router.get("/auth/check", response_model=CheckResponse, tags=["session"])
async def check_auth(ctx: SessionContext = Depends(get_session)):
    return CheckResponse(authenticated=True)


def _organization_list(runtime: Runtime, user: User) -> OrganizationListResponse:
    organizations = []
    for membership in runtime.store.list_memberships(user.id):
        org = runtime.store.get_organization(membership.organization_id)
        if org is None:
            continue
        organizations.append(
            OrganizationOut(
                id=org.id,
                name=org.name,
                slug=org.slug,
                role=membership.role,
                created_at=org.created_at,
            )
        )
    return OrganizationListResponse(organizations=organizations)


@router.get("/organizations", response_model=OrganizationListResponse, tags=["organizations"])
async def list_organizations(
    ctx: SessionContext = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    return _organization_list(runtime, ctx.user)


@router.post(
    "/organizations",
    response_model=OrganizationOut,
    status_code=201,
    tags=["organizations"],
)
async def create_organization(
    body: OrganizationCreateRequest,
    ctx: SessionContext = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    org = runtime.store.create_organization(body.name, ctx.user.id)
    logger.info("organization_created", organization_id=org.id, owner_id=ctx.user.id)
    return OrganizationOut(
        id=org.id, name=org.name, slug=org.slug, role="owner", created_at=org.created_at
    )


@router.post("/sysadmin/verify/send", response_model=SuccessResponse, tags=["sysadmin"])
async def sysadmin_send_code(
    ctx: SessionContext = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(
        runtime,
        f"otp:{ctx.user.email}",
        runtime.settings.otp_send_rate_limit_per_minute,
        60,
    )
    await runtime.elevated.send_code(ctx.user)
    return SuccessResponse()


@router.post("/sysadmin/verify", response_model=ElevatedResponse, tags=["sysadmin"])
async def sysadmin_verify(
    body: CodeRequest,
    ctx: SessionContext = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    verified_at = runtime.elevated.verify(ctx.user, body.code)
    return ElevatedResponse(
        verified_at=verified_at, expires_at=verified_at + runtime.elevated.window
    )


@router.get("/sysadmin/users", response_model=AdminUserListResponse, tags=["sysadmin"])
async def sysadmin_users(
    ctx: SessionContext = Depends(get_elevated_session), runtime: Runtime = Depends(get_runtime)
):
    users = [
        AdminUserOut(**_user_out(user).model_dump(), created_at=user.created_at)
        for user in runtime.store.list_users()
    ]
    return AdminUserListResponse(users=users)


@router.get(
    "/sysadmin/organizations", response_model=OrganizationListResponse, tags=["sysadmin"]
)
async def sysadmin_organizations(
    ctx: SessionContext = Depends(get_elevated_session), runtime: Runtime = Depends(get_runtime)
):
    return OrganizationListResponse(
        organizations=[
            OrganizationOut(id=org.id, name=org.name, slug=org.slug, created_at=org.created_at)
            for org in runtime.store.list_organizations()
        ]
    )


# Provider routes come last so they do not shadow the fixed /auth/* paths above.
@router.get("/auth/{provider}", tags=["auth"])
async def provider_get(
    request: Request,
    provider: str = Path(..., max_length=32),
    runtime: Runtime = Depends(get_runtime),
):
    """Start a sign-in with ``provider``, or finish one when the IdP redirects back."""
    params = dict(request.query_params)
    if provider == runtime.saml.name:
        return await _saml_begin(runtime, params.get("domain"))
    oauth = _oauth_provider(runtime, provider)
    if any(key in params for key in ("code", "state", "error")):
        return await _oauth_callback(runtime, oauth, request, params)
    return await _oauth_begin(runtime, oauth)


@router.post("/auth/{provider}", tags=["auth"])
async def provider_post(
    request: Request,
    provider: str = Path(..., max_length=32),
    runtime: Runtime = Depends(get_runtime),
):
    """Form-post callbacks: Apple ``form_post`` and the SAML HTTP-POST binding."""
    form = await request.form()
    if provider == runtime.saml.name:
        return await _saml_callback(runtime, request, form)
    oauth = _oauth_provider(runtime, provider)
    params = {key: value for key, value in form.items() if isinstance(value, str)}
    return await _oauth_callback(runtime, oauth, request, params)
