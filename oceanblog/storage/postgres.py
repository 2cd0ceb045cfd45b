from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from oceanblog.logging import get_logger
from oceanblog.storage.errors import ConstraintViolation, RecordNotFound, StaleRecordError
from oceanblog.storage.models import RefreshTokenRecord, User

_USER_COLUMNS = (
    "id",
    "email",
    "name",
    "password_hash",
    "role",
    "is_active",
    "is_email_verified",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expires",
    "login_attempts",
    "lock_until",
    "last_login",
    "refresh_tokens",
    "bio",
    "avatar",
    "location",
    "website",
    "created_at",
    "updated_at",
    "version",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed user store.

    Refresh tokens live in a JSONB column on ``app_user`` so the session list
    is written together with the rest of the record; ``version`` guards that
    write with a compare-and-set.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the user table and citext exist before serving requests."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.app_user",)
            ).fetchone()
            if not row or not row.get("oid"):
                raise RuntimeError(
                    "Missing required Postgres table app_user. Apply sql/001_users.sql first."
                )
            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise RuntimeError(
                    "citext extension is missing. Apply sql/001_users.sql to enable case-insensitive emails."
                )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        raw_tokens = row.get("refresh_tokens") or []
        if isinstance(raw_tokens, str):
            raw_tokens = json.loads(raw_tokens)
        tokens = [
            RefreshTokenRecord(
                token=entry["token"],
                created_at=datetime.fromisoformat(entry["created_at"]),
            )
            for entry in raw_tokens
        ]
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            email_verification_token=row.get("email_verification_token"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=_aware(row.get("password_reset_expires")),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=_aware(row.get("lock_until")),
            last_login=_aware(row.get("last_login")),
            refresh_tokens=tokens,
            bio=row.get("bio"),
            avatar=row.get("avatar"),
            location=row.get("location"),
            website=row.get("website"),
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            version=row["version"],
        )

    @staticmethod
    def _row_params(user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email.strip().lower(),
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "email_verification_token": user.email_verification_token,
            "password_reset_token": user.password_reset_token,
            "password_reset_expires": user.password_reset_expires,
            "login_attempts": user.login_attempts,
            "lock_until": user.lock_until,
            "last_login": user.last_login,
            "refresh_tokens": json.dumps(
                [{"token": r.token, "created_at": r.created_at.isoformat()} for r in user.refresh_tokens]
            ),
            "bio": user.bio,
            "avatar": user.avatar,
            "location": user.location,
            "website": user.website,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
            "version": user.version,
        }

    # users
    def create_user(self, user: User) -> User:
        params = self._row_params(user)
        params["version"] = 1
        columns = ", ".join(_USER_COLUMNS)
        placeholders = ", ".join(f"%({c})s" for c in _USER_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO app_user ({columns}) VALUES ({placeholders}) RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        # the column is UUID; anything else would be a cast error, not a miss
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def save_user(self, user: User) -> User:
        params = self._row_params(user)
        assignments = ", ".join(
            f"{c} = %({c})s" for c in _USER_COLUMNS if c not in {"id", "created_at", "updated_at", "version"}
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user
                    SET {assignments}, version = version + 1, updated_at = now()
                    WHERE id = %(id)s AND version = %(version)s
                    RETURNING *
                    """,
                    params,
                ).fetchone()
                if not row:
                    current = conn.execute(
                        "SELECT version FROM app_user WHERE id = %s", (user.id,)
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if row:
            return self._user_from_row(row)
        if not current:
            raise RecordNotFound(user.id)
        raise StaleRecordError(user.id, user.version, current["version"])

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET role = %s, version = version + 1, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (role, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
