from __future__ import annotations

import json
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from convergeauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class SamlConnection(BaseModel):
    """Identity provider entry for one email domain."""

    entry_point: str
    idp_cert: str
    idp_entity_id: str | None = None

    model_config = ConfigDict(extra="ignore")


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/convergeauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/var/lib/convergeauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks and runtime resets used by the test suite.",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    post_login_path: str = env_field("/home", "POST_LOGIN_PATH")
    login_path: str = env_field("/login", "LOGIN_PATH")
    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Mark auth cookies Secure (disable only for plain-http dev)"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    internal_api_key: str | None = env_field(
        None, "INTERNAL_API_KEY", description="Shared key for server-to-server session creation"
    )

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("convergeauth", "JWT_ISSUER")
    jwt_audience: str = env_field("convergeauth-web", "JWT_AUDIENCE")
    session_token_ttl_minutes: int = env_field(5, "SESSION_TOKEN_TTL_MINUTES")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    state_ttl_minutes: int = env_field(10, "STATE_TTL_MINUTES")

    # Email one-time codes
    otp_salt: str | None = env_field(
        None, "OTP_SALT", description="HMAC key for OTP lookup tokens; defaults to JWT_SECRET"
    )
    otp_ttl_minutes: int = env_field(15, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_send_rate_limit_per_minute: int = env_field(5, "OTP_SEND_RATE_LIMIT_PER_MINUTE")
    callback_rate_limit_per_minute: int = env_field(30, "CALLBACK_RATE_LIMIT_PER_MINUTE")

    # Passkeys
    webauthn_rp_id: str | None = env_field(
        None, "WEBAUTHN_RP_ID", description="Relying party id; defaults to the APP_BASE_URL host"
    )
    webauthn_rp_name: str = env_field("ConvergeAuth", "WEBAUTHN_RP_NAME")
    webauthn_challenge_ttl_seconds: int = env_field(300, "WEBAUTHN_CHALLENGE_TTL_SECONDS")

    # Sysadmin gate
    sysadmin_emails: list[str] = env_field([], "SYSADMIN_EMAILS")
    elevated_verification_minutes: int = env_field(60, "ELEVATED_VERIFICATION_MINUTES")

    # OAuth settings
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_microsoft_tenant: str = env_field("common", "OAUTH_MICROSOFT_TENANT")
    oauth_microsoft_resource: str = env_field("User.Read", "OAUTH_MICROSOFT_RESOURCE")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_team_id: str | None = env_field(None, "OAUTH_APPLE_TEAM_ID")
    oauth_apple_key_id: str | None = env_field(None, "OAUTH_APPLE_KEY_ID")
    oauth_apple_private_key: str | None = env_field(None, "OAUTH_APPLE_PRIVATE_KEY")

    # SAML
    saml_sp_entity_id: str | None = env_field(
        None, "SAML_SP_ENTITY_ID", description="Service provider entity id; defaults to APP_BASE_URL"
    )
    saml_connections: dict[str, SamlConnection] = env_field(
        {}, "SAML_CONNECTIONS", description="JSON object mapping email domain to IdP settings"
    )

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("ConvergeAuth", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("sysadmin_emails", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("sysadmin_emails")
    @classmethod
    def _lower_emails(cls, value: list[str]) -> list[str]:
        return [email.lower() for email in value]

    @field_validator("saml_connections", mode="before")
    @classmethod
    def _parse_saml_connections(cls, value: Any) -> Any:
        if isinstance(value, str):
            if not value.strip():
                return {}
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("SAML_CONNECTIONS must be a JSON object") from exc
        if isinstance(value, dict):
            return {str(domain).lower(): conn for domain, conn in value.items()}
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/convergeauth"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated

    @property
    def resolved_otp_salt(self) -> str:
        return self.otp_salt or self.jwt_secret

    @property
    def resolved_rp_id(self) -> str:
        return self.webauthn_rp_id or (urlparse(self.app_base_url).hostname or "localhost")

    @property
    def resolved_sp_entity_id(self) -> str:
        return self.saml_sp_entity_id or self.app_base_url.rstrip("/")

    def callback_url(self, provider: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/auth/{provider}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
