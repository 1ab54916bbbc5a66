from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from erpcore.logging import get_logger
from erpcore.storage.errors import ConstraintViolation
from erpcore.storage.models import (
    OneTimeToken,
    RefreshToken,
    SecurityEvent,
    Subject,
    as_utc,
    utcnow,
)

_SUBJECT_COLUMNS = """
    id, email, password_hash, first_name, last_name, role, department, company_id,
    permissions, position, employee_id, is_active, email_verified_at, last_login_at,
    created_at, updated_at, deleted_at, deleted_by
"""


def _as_uuid(value: Any) -> Optional[str]:
    """Canonical form of a UUID string, or None when ``value`` is not one."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        return None


class PostgresStore:
    """Postgres-backed credential store.

    Compound operations (refresh rotation, password reset, password change,
    soft delete) each run inside a single transaction.
    """

    REQUIRED_TABLES = (
        "app_user",
        "refresh_token",
        "password_reset_token",
        "email_verification_token",
        "security_event",
    )

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Fail fast when the auth tables are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _subject_from_row(row: Dict[str, Any]) -> Subject:
        permissions = row.get("permissions") or []
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        deleted_by = row.get("deleted_by")
        return Subject(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            role=row.get("role", "employee"),
            department=row.get("department"),
            company_id=row.get("company_id"),
            permissions=list(permissions),
            position=row.get("position"),
            employee_id=row.get("employee_id"),
            is_active=row.get("is_active", True),
            email_verified_at=row.get("email_verified_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
            deleted_by=str(deleted_by) if deleted_by else None,
        )

    # -- subjects --------------------------------------------------------

    def create_subject(self, subject: Subject) -> Subject:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (
                        id, email, password_hash, first_name, last_name, role, department,
                        company_id, permissions, position, employee_id, is_active,
                        email_verified_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SUBJECT_COLUMNS}
                    """,
                    (
                        subject.id,
                        subject.email.lower(),
                        subject.password_hash,
                        subject.first_name,
                        subject.last_name,
                        subject.role,
                        subject.department,
                        subject.company_id,
                        json.dumps(list(subject.permissions)),
                        subject.position,
                        subject.employee_id,
                        subject.is_active,
                        subject.email_verified_at,
                        subject.created_at,
                        subject.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return self._subject_from_row(row)

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SUBJECT_COLUMNS} FROM app_user WHERE id = %s AND deleted_at IS NULL",
                (subject_id,),
            ).fetchone()
        return self._subject_from_row(row) if row else None

    def get_subject_by_email(self, email: str) -> Optional[Subject]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SUBJECT_COLUMNS} FROM app_user
                WHERE lower(email) = lower(%s) AND deleted_at IS NULL
                """,
                (email,),
            ).fetchone()
        return self._subject_from_row(row) if row else None

    def list_subjects(
        self, *, company_id: Optional[str] = None, limit: int = 100
    ) -> List[Subject]:
        query = f"SELECT {_SUBJECT_COLUMNS} FROM app_user WHERE deleted_at IS NULL"
        params: list[Any] = []
        if company_id is not None:
            query += " AND company_id = %s"
            params.append(company_id)
        query += " ORDER BY created_at LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._subject_from_row(row) for row in rows]

    def record_login(self, subject_id: str, at: Optional[datetime] = None) -> None:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s AND deleted_at IS NULL",
                (at or utcnow(), subject_id),
            )

    def set_subject_active(self, subject_id: str, is_active: bool) -> Optional[Subject]:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return None
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE app_user SET is_active = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_SUBJECT_COLUMNS}
                """,
                (is_active, subject_id),
            ).fetchone()
            if row and not is_active:
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (subject_id,))
        return self._subject_from_row(row) if row else None

    def update_subject_profile(
        self,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[Subject]:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET first_name = COALESCE(%s, first_name),
                    last_name = COALESCE(%s, last_name),
                    updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_SUBJECT_COLUMNS}
                """,
                (first_name, last_name, subject_id),
            ).fetchone()
        return self._subject_from_row(row) if row else None

    def update_subject_role(
        self, subject_id: str, role: str, permissions: List[str]
    ) -> Optional[Subject]:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET role = %s, permissions = %s::jsonb, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_SUBJECT_COLUMNS}
                """,
                (role, json.dumps(list(permissions)), subject_id),
            ).fetchone()
        return self._subject_from_row(row) if row else None

    def soft_delete_subject(self, subject_id: str, deleted_by: Optional[str] = None) -> bool:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return False
        deleted_by = _as_uuid(deleted_by)
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_user
                SET deleted_at = now(), deleted_by = %s, is_active = FALSE, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (deleted_by, subject_id),
            ).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (subject_id,))
            conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (subject_id,))
            conn.execute("DELETE FROM email_verification_token WHERE user_id = %s", (subject_id,))
        return True

    def change_password(self, subject_id: str, password_hash: str) -> bool:
        subject_id = _as_uuid(subject_id)
        if subject_id is None:
            return False
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (password_hash, subject_id),
            ).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (subject_id,))
        return True

    # -- refresh tokens --------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, user_id, expires_at, created_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.subject_id,
                        token.expires_at,
                        token.created_at,
                        token.ip_address,
                        token.user_agent,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", field="token")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown subject", field="subject_id")
        return token

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            subject_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, replacement: RefreshToken, *, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            # DELETE ... RETURNING locks the row, so a concurrent rotation of the
            # same token sees nothing once this transaction commits
            row = conn.execute(
                """
                DELETE FROM refresh_token WHERE token = %s AND user_id = %s
                RETURNING expires_at
                """,
                (old_token, replacement.subject_id),
            ).fetchone()
            if not row or as_utc(row["expires_at"]) <= now:
                return False
            conn.execute(
                """
                INSERT INTO refresh_token (token, user_id, expires_at, created_at, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    replacement.token,
                    replacement.subject_id,
                    replacement.expires_at,
                    replacement.created_at,
                    replacement.ip_address,
                    replacement.user_agent,
                ),
            )
        return True

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount > 0

    # -- password reset / email verification ------------------------------

    def create_reset_token(self, token: OneTimeToken) -> OneTimeToken:
        self._insert_one_time("password_reset_token", token)
        return token

    def create_verification_token(self, token: OneTimeToken) -> OneTimeToken:
        self._insert_one_time("email_verification_token", token)
        return token

    def _insert_one_time(self, table: str, token: OneTimeToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {table} (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.token, token.subject_id, token.expires_at, token.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown subject", field="subject_id")

    def reset_password(
        self, token: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "DELETE FROM password_reset_token WHERE token = %s RETURNING user_id, expires_at",
                (token,),
            ).fetchone()
            if not row or as_utc(row["expires_at"]) <= now:
                return None
            subject_id = str(row["user_id"])
            updated = conn.execute(
                """
                UPDATE app_user SET password_hash = %s, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (password_hash, subject_id),
            ).fetchone()
            if not updated:
                return None
            conn.execute("DELETE FROM password_reset_token WHERE user_id = %s", (subject_id,))
            conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (subject_id,))
        return subject_id

    def consume_verification_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "DELETE FROM email_verification_token WHERE token = %s RETURNING user_id, expires_at",
                (token,),
            ).fetchone()
            if not row or as_utc(row["expires_at"]) <= now:
                return None
            subject_id = str(row["user_id"])
            updated = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, %s), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (now, subject_id),
            ).fetchone()
            if not updated:
                return None
            conn.execute(
                "DELETE FROM email_verification_token WHERE user_id = %s", (subject_id,)
            )
        return subject_id

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        removed = 0
        with self._connect() as conn, conn.transaction():
            for table in ("refresh_token", "password_reset_token", "email_verification_token"):
                cur = conn.execute(f"DELETE FROM {table} WHERE expires_at <= %s", (now,))
                removed += cur.rowcount
        if removed:
            self.logger.info("expired_tokens_purged", count=removed)
        return removed

    # -- security events -------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        user_id = _as_uuid(event.subject_id)
        detail = dict(event.detail)
        if event.subject_id and user_id is None:
            # Claimed by an unverifiable token; keep it out of the uuid column
            detail["subject_ref"] = event.subject_id
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, event, user_id, ip_address, user_agent, path, method, detail, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    event.id,
                    event.event,
                    user_id,
                    event.ip_address,
                    event.user_agent,
                    event.path,
                    event.method,
                    json.dumps(detail, default=str),
                    event.created_at,
                ),
            )

    def list_security_events(
        self,
        *,
        subject_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        query = "SELECT * FROM security_event WHERE TRUE"
        params: list[Any] = []
        if subject_id is not None:
            subject_id = _as_uuid(subject_id)
            if subject_id is None:
                return []
            query += " AND user_id = %s"
            params.append(subject_id)
        if event is not None:
            query += " AND event = %s"
            params.append(event)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SecurityEvent(
                id=str(row["id"]),
                event=row["event"],
                subject_id=str(row["user_id"]) if row.get("user_id") else None,
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                path=row.get("path"),
                method=row.get("method"),
                detail=row.get("detail") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]
