from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from convergeauth.logging import get_logger
from convergeauth.storage.common import (
    check_user_updates,
    ensure_aware,
    normalize_email,
    slugify,
)
from convergeauth.storage.errors import ConstraintViolation
from convergeauth.storage.models import (
    Authenticator,
    Membership,
    Organization,
    OtpRecord,
    Session,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        display_name TEXT,
        avatar_url TEXT,
        webauthn_challenge TEXT,
        webauthn_challenge_expires_at TIMESTAMPTZ,
        passkey_snoozed_until TIMESTAMPTZ,
        elevated_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_identity (
        provider TEXT NOT NULL,
        subject TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, subject)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webauthn_authenticator (
        credential_id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        sign_count BIGINT NOT NULL DEFAULT 0,
        transports JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_record (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        redirect_path TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id UUID,
        created_at TIMESTAMPTZ NOT NULL,
        last_accessed_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_membership (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id UUID NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT 'member',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, organization_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_record_user_idx ON otp_record (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)


class PostgresStore:
    """Postgres-backed store for users, sessions and one-time credentials."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            email_verified=bool(row.get("email_verified", False)),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            webauthn_challenge=row.get("webauthn_challenge"),
            webauthn_challenge_expires_at=ensure_aware(row.get("webauthn_challenge_expires_at")),
            passkey_snoozed_until=ensure_aware(row.get("passkey_snoozed_until")),
            elevated_verified_at=ensure_aware(row.get("elevated_verified_at")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _authenticator_from_row(row: dict) -> Authenticator:
        transports: Any = row.get("transports") or []
        if isinstance(transports, str):
            try:
                transports = json.loads(transports)
            except json.JSONDecodeError:
                transports = []
        return Authenticator(
            credential_id=row["credential_id"],
            user_id=str(row["user_id"]),
            public_key=row["public_key"],
            sign_count=int(row.get("sign_count") or 0),
            transports=list(transports),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            last_used_at=ensure_aware(row.get("last_used_at")),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OtpRecord:
        return OtpRecord(
            token=row["token"],
            user_id=str(row["user_id"]),
            email=row["email"],
            purpose=row["purpose"],
            redirect_path=row.get("redirect_path"),
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            attempts=int(row.get("attempts") or 0),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        org_id = row.get("organization_id")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=ensure_aware(row["created_at"]),
            last_accessed_at=ensure_aware(row["last_accessed_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            organization_id=str(org_id) if org_id else None,
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        user = User.new(
            normalize_email(email),
            email_verified=email_verified,
            display_name=display_name,
            avatar_url=avatar_url,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, email_verified, display_name, avatar_url, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.email_verified,
                        user.display_name,
                        user.avatar_url,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        check_user_updates(fields)
        if not fields:
            return self.get_user(user_id)
        # Column names come from MUTABLE_USER_FIELDS, never from request input
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), utcnow(), user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = %s WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    def link_identity(self, user_id: str, provider: str, subject: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_identity (provider, subject, user_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, subject) DO NOTHING
                    """,
                    (provider, subject, user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.* FROM app_user u
                JOIN user_identity i ON i.user_id = u.id
                WHERE i.provider = %s AND i.subject = %s
                """,
                (provider, subject),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # webauthn
    def set_webauthn_challenge(
        self, user_id: str, challenge: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET webauthn_challenge = %s, webauthn_challenge_expires_at = %s
                WHERE id = %s
                """,
                (challenge, expires_at, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def pop_webauthn_challenge(self, user_id: str) -> Optional[tuple[str, datetime]]:
        # The old values are read in the same statement that clears them
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user AS u
                SET webauthn_challenge = NULL, webauthn_challenge_expires_at = NULL
                FROM (
                    SELECT id, webauthn_challenge, webauthn_challenge_expires_at
                    FROM app_user WHERE id = %s FOR UPDATE
                ) AS prev
                WHERE u.id = prev.id AND prev.webauthn_challenge IS NOT NULL
                RETURNING prev.webauthn_challenge, prev.webauthn_challenge_expires_at
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["webauthn_challenge"], ensure_aware(row["webauthn_challenge_expires_at"])

    def add_authenticator(self, authenticator: Authenticator) -> Authenticator:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO webauthn_authenticator
                        (credential_id, user_id, public_key, sign_count, transports, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        authenticator.credential_id,
                        authenticator.user_id,
                        authenticator.public_key,
                        authenticator.sign_count,
                        json.dumps(authenticator.transports),
                        authenticator.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "credential already registered", {"field": "credential_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": authenticator.user_id})
        return authenticator

    def list_authenticators(self, user_id: str) -> List[Authenticator]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webauthn_authenticator WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._authenticator_from_row(row) for row in rows]

    def get_authenticator(self, credential_id: str) -> Optional[Authenticator]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webauthn_authenticator WHERE credential_id = %s",
                (credential_id,),
            ).fetchone()
        return self._authenticator_from_row(row) if row else None

    def advance_sign_count(
        self, credential_id: str, new_count: int, used_at: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE webauthn_authenticator
                SET sign_count = %s, last_used_at = %s
                WHERE credential_id = %s
                  AND (sign_count < %s OR (sign_count = 0 AND %s = 0))
                RETURNING credential_id
                """,
                (new_count, used_at, credential_id, new_count, new_count),
            ).fetchone()
        return row is not None

    # one-time codes
    def save_otp(self, record: OtpRecord) -> OtpRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_record
                    (token, user_id, email, purpose, redirect_path, created_at, expires_at, attempts)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (token) DO UPDATE SET
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at,
                    redirect_path = EXCLUDED.redirect_path,
                    purpose = EXCLUDED.purpose,
                    attempts = 0
                """,
                (
                    record.token,
                    record.user_id,
                    record.email,
                    record.purpose,
                    record.redirect_path,
                    record.created_at,
                    record.expires_at,
                    record.attempts,
                ),
            )
        return record

    def get_otp(self, token: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_record WHERE token = %s", (token,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def get_latest_otp_for_user(self, user_id: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_record WHERE user_id = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id,),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def take_otp_attempt(self, token: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_record SET attempts = attempts + 1
                WHERE token = %s AND attempts < %s
                RETURNING attempts
                """,
                (token, max_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def consume_otp(self, token: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM otp_record WHERE token = %s RETURNING *", (token,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def delete_otps_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM otp_record WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM otp_record WHERE expires_at <= %s", (now,))
            return result.rowcount

    def count_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS expired FROM otp_record WHERE expires_at <= %s", (now,)
            ).fetchone()
        return int(row["expired"])

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        organization_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl,
            organization_id=organization_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session
                        (id, user_id, organization_id, created_at, last_accessed_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.organization_id,
                        sess.created_at,
                        sess.last_accessed_at,
                        sess.expires_at,
                        sess.user_agent,
                        sess.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self, session_id: str, last_accessed_at: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET last_accessed_at = %s, expires_at = %s
                WHERE id = %s RETURNING *
                """,
                (last_accessed_at, expires_at, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return result.rowcount

    def count_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS expired FROM auth_session WHERE expires_at <= %s", (now,)
            ).fetchone()
        return int(row["expired"])

    # organizations
    def create_organization(self, name: str, owner_id: str) -> Organization:
        base = slugify(name)
        org_id = str(uuid.uuid4())
        with self._connect() as conn:
            taken = {
                row["slug"]
                for row in conn.execute(
                    "SELECT slug FROM organization WHERE slug = %s OR slug LIKE %s",
                    (base, f"{base}-%"),
                ).fetchall()
            }
            slug, suffix = base, 2
            while slug in taken:
                slug = f"{base}-{suffix}"
                suffix += 1
            try:
                row = conn.execute(
                    "INSERT INTO organization (id, name, slug) VALUES (%s, %s, %s) RETURNING *",
                    (org_id, name, slug),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO organization_membership (user_id, organization_id, role)
                    VALUES (%s, %s, 'owner')
                    """,
                    (owner_id, org_id),
                )
            except errors.UniqueViolation:
                raise ConstraintViolation("organization slug taken", {"field": "slug"})
            except errors.ForeignKeyViolation:
                raise ConstraintViolation("user does not exist", {"user_id": owner_id})
        return Organization(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            created_at=ensure_aware(row["created_at"]) or utcnow(),
        )

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (organization_id,)
            ).fetchone()
        if not row:
            return None
        return Organization(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            created_at=ensure_aware(row["created_at"]) or utcnow(),
        )

    def list_organizations(self, limit: int = 100) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [
            Organization(
                id=str(row["id"]),
                name=row["name"],
                slug=row["slug"],
                created_at=ensure_aware(row["created_at"]) or utcnow(),
            )
            for row in rows
        ]

    def list_memberships(self, user_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM organization_membership
                WHERE user_id = %s ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            Membership(
                user_id=str(row["user_id"]),
                organization_id=str(row["organization_id"]),
                role=row.get("role", "member"),
                created_at=ensure_aware(row["created_at"]) or utcnow(),
            )
            for row in rows
        ]
