from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Bound on credential JSON posted by browsers
MAX_CREDENTIAL_DEPTH = 8
MAX_ARRAY_ITEMS = 64


def _validate_json_depth(obj: Any, max_depth: int = MAX_CREDENTIAL_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches a parser."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width characters

    Args:
        value: String to normalize

    Returns:
        NFKC normalized string
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_OTP_CODE = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_code(value: str) -> str:
    value = value.strip()
    if not _OTP_CODE.match(value):
        raise ValueError("code must be 6 digits")
    return value


class CamelModel(BaseModel):
    """JSON bodies use camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    error: str
    code: str
    details: Optional[Any] = None


class EmailRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginLinkRequest(EmailRequest):
    redirect_path: Optional[str] = Field(default=None, max_length=512)


class VerifyRequest(CamelModel):
    """Either a magic-link ``token`` or an ``email`` + ``code`` pair."""

    token: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = None
    code: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: Optional[str]) -> Optional[str]:
        return _validate_code(value) if value is not None else None

    @model_validator(mode="after")
    def _token_or_code(self):
        if self.token:
            return self
        if self.email and self.code:
            return self
        raise ValueError("provide either token or email and code")


class CredentialRequest(CamelModel):
    credential: dict

    @field_validator("credential")
    @classmethod
    def _check_credential(cls, value: dict) -> dict:
        _validate_json_depth(value)
        return value


class PasskeyAuthRequest(CredentialRequest):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class SnoozeRequest(CamelModel):
    days: int = Field(default=7, ge=1, le=90)


class SessionCreateRequest(CamelModel):
    user_id: str = Field(..., max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip: Optional[str] = Field(default=None, max_length=64)


class SessionRefreshRequest(CamelModel):
    jwt: str = Field(..., max_length=4096)


class OrganizationCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=120)

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("name must not be blank")
        return cleaned


class CodeRequest(CamelModel):
    code: str

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return _validate_code(value)


class SuccessResponse(CamelModel):
    success: bool = True


class UserOut(CamelModel):
    id: str
    email: str
    email_verified: bool
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class VerifyResponse(CamelModel):
    user: UserOut
    has_passkey: bool
    redirect_path: str
    is_new_user: bool


class PasskeyVerifyResponse(CamelModel):
    verified: bool


class PasskeyLoginResponse(CamelModel):
    user: UserOut
    redirect_path: str


class PasskeyStatusResponse(CamelModel):
    has_passkey: bool


class SnoozeResponse(CamelModel):
    snoozed_until: datetime


class SessionCreatedResponse(CamelModel):
    session_id: str
    jwt: str


class SessionUser(CamelModel):
    id: str
    email: str
    organization_id: Optional[str] = None


class SessionResponse(CamelModel):
    user: SessionUser
    jwt: str


class JwtResponse(CamelModel):
    jwt: str


class CheckResponse(CamelModel):
    authenticated: bool


class OrganizationOut(CamelModel):
    id: str
    name: str
    slug: str
    role: Optional[str] = None
    created_at: datetime


class OrganizationListResponse(CamelModel):
    organizations: List[OrganizationOut]


class AdminUserOut(UserOut):
    created_at: datetime


class AdminUserListResponse(CamelModel):
    users: List[AdminUserOut]


class ElevatedResponse(CamelModel):
    verified_at: datetime
    expires_at: datetime
