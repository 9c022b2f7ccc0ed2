from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from petconsult.logging import get_logger
from petconsult.storage.errors import ConstraintViolation
from petconsult.storage.models import (
    ROLE_ADMIN,
    ROLE_USER,
    Admin,
    NewPet,
    Pet,
    RefreshToken,
    User,
    VerificationCode,
    new_id,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        mobile TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'ADMIN',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pet (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE RESTRICT,
        name TEXT NOT NULL,
        species TEXT NOT NULL,
        breed TEXT,
        age INTEGER,
        gender TEXT NOT NULL DEFAULT 'UNKNOWN',
        is_neutered BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expiry_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        mobile TEXT NOT NULL,
        purpose TEXT NOT NULL,
        code TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (mobile, purpose)
    )
    """,
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        mobile=row["mobile"],
        password_hash=row["password_hash"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=row.get("role", ROLE_USER),
        is_active=row.get("is_active", True),
        is_verified=row.get("is_verified", False),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_login_at=row.get("last_login_at"),
    )


def _admin_from_row(row: dict) -> Admin:
    return Admin(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=row.get("role", ROLE_ADMIN),
        is_active=row.get("is_active", True),
        created_at=row["created_at"],
        last_login_at=row.get("last_login_at"),
    )


def _pet_from_row(row: dict) -> Pet:
    return Pet(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        species=row["species"],
        breed=row.get("breed"),
        age=row.get("age"),
        gender=row.get("gender", "UNKNOWN"),
        is_neutered=row.get("is_neutered", False),
        created_at=row["created_at"],
    )


def _token_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        is_revoked=row.get("is_revoked", False),
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
    )


def _code_from_row(row: dict) -> VerificationCode:
    return VerificationCode(
        mobile=row["mobile"],
        purpose=row["purpose"],
        code=row["code"],
        expires_at=row["expires_at"],
        attempts=row.get("attempts", 0),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Each ``with self._connect()`` block is one transaction: the pool commits
    on a clean exit and rolls back when the block raises, which is what makes
    the multi-statement methods below atomic.
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
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        mobile: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = ROLE_USER,
        is_verified: bool = False,
        pet: Optional[NewPet] = None,
    ) -> Tuple[User, Optional[Pet]]:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, mobile, password_hash, first_name, last_name, role, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, mobile, password_hash, first_name, last_name, role, is_verified),
                ).fetchone()
                pet_row = None
                if pet is not None:
                    pet_row = conn.execute(
                        """
                        INSERT INTO pet (id, user_id, name, species, breed, age, gender, is_neutered)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            new_id(),
                            user_id,
                            pet.name,
                            pet.species,
                            pet.breed,
                            pet.age,
                            pet.gender,
                            pet.is_neutered,
                        ),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("mobile already exists", {"field": "mobile"})
        return _user_from_row(row), _pet_from_row(pet_row) if pet_row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.DataError:
            # ids are UUIDs; anything else cannot match a row
            return None
        return _user_from_row(row) if row else None

    def get_user_by_mobile(self, mobile: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE mobile = %s", (mobile,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(
        self, limit: int = 50, *, before: Optional[Tuple[datetime, str]] = None
    ) -> List[User]:
        with self._connect() as conn:
            if before is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM app_user
                    WHERE (created_at, id) < (%s, %s::uuid)
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (before[0], before[1], limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC, id DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [_user_from_row(row) for row in rows]

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, "password_hash = %s", (password_hash,))

    def update_user_profile(
        self, user_id: str, first_name: str, last_name: str
    ) -> Optional[User]:
        return self._update_user(
            user_id, "first_name = %s, last_name = %s", (first_name, last_name)
        )

    def mark_user_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, "is_verified = TRUE", ())

    def touch_user_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, "last_login_at = %s", (at,))

    def set_user_active(
        self, user_id: str, active: bool, *, revoke_tokens: bool = False, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
            if row and revoke_tokens:
                conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                    WHERE user_id = %s AND is_revoked = FALSE
                    """,
                    (now, user_id),
                )
        return _user_from_row(row) if row else None

    def delete_user(self, user_id: str, *, include_pets: bool = False) -> bool:
        try:
            with self._connect() as conn:
                if include_pets:
                    conn.execute("DELETE FROM pet WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
                row = conn.execute(
                    "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user still owns pets", {"user_id": user_id})
        return row is not None

    def count_user_pets(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM pet WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["total"]) if row else 0

    def list_user_pets(self, user_id: str) -> List[Pet]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pet WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [_pet_from_row(row) for row in rows]

    # admins
    def create_admin(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = ROLE_ADMIN,
    ) -> Admin:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_user (id, email, password_hash, first_name, last_name, role)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), email, password_hash, first_name, last_name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("admin already exists", {"field": "email"})
        return _admin_from_row(row)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM admin_user WHERE id = %s", (admin_id,)
                ).fetchone()
        except errors.DataError:
            return None
        return _admin_from_row(row) if row else None

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user WHERE email = %s", (email,)
            ).fetchone()
        return _admin_from_row(row) if row else None

    def touch_admin_login(self, admin_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_user SET last_login_at = %s WHERE id = %s", (at, admin_id)
            )

    # refresh tokens
    @staticmethod
    def _insert_refresh_token(
        conn: Any, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        row = conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, expires_at)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (new_id(), token_hash, user_id, expires_at),
        ).fetchone()
        return _token_from_row(row)

    def create_refresh_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                return self._insert_refresh_token(conn, token_hash, user_id, expires_at)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already stored")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": user_id})

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def revoke_refresh_token(
        self, token_hash: str, *, user_id: Optional[str] = None, now: datetime
    ) -> bool:
        with self._connect() as conn:
            if user_id is not None:
                row = conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                    WHERE token_hash = %s AND user_id = %s AND is_revoked = FALSE
                    RETURNING id
                    """,
                    (now, token_hash, user_id),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                    WHERE token_hash = %s AND is_revoked = FALSE
                    RETURNING id
                    """,
                    (now, token_hash),
                ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (now, user_id),
            )
            return cur.rowcount

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        user_id: str,
        expires_at: datetime,
        *,
        now: datetime,
    ) -> Optional[RefreshToken]:
        # The conditional UPDATE row-locks the old token; a concurrent rotation
        # blocks on it and then matches nothing.
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_token SET is_revoked = TRUE, revoked_at = %s
                    WHERE token_hash = %s AND user_id = %s
                      AND is_revoked = FALSE AND expires_at > %s
                    RETURNING id
                    """,
                    (now, old_hash, user_id, now),
                ).fetchone()
                if row is None:
                    return None
                return self._insert_refresh_token(conn, new_hash, user_id, expires_at)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already stored")

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (expired_before,)
            )
            return cur.rowcount

    # verification codes
    def upsert_verification_code(self, record: VerificationCode) -> VerificationCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO verification_code (mobile, purpose, code, expires_at, attempts, created_at)
                VALUES (%s, %s, %s, %s, 0, %s)
                ON CONFLICT (mobile, purpose) DO UPDATE
                SET code = EXCLUDED.code,
                    expires_at = EXCLUDED.expires_at,
                    attempts = 0,
                    created_at = EXCLUDED.created_at
                RETURNING *
                """,
                (
                    record.mobile,
                    record.purpose,
                    record.code,
                    record.expires_at,
                    record.created_at,
                ),
            ).fetchone()
        return _code_from_row(row)

    def get_verification_code(
        self, mobile: str, purpose: str
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_code WHERE mobile = %s AND purpose = %s",
                (mobile, purpose),
            ).fetchone()
        return _code_from_row(row) if row else None

    def increment_verification_attempts(self, mobile: str, purpose: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_code SET attempts = attempts + 1
                WHERE mobile = %s AND purpose = %s
                RETURNING attempts
                """,
                (mobile, purpose),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    def delete_verification_code(
        self, mobile: str, purpose: str, *, code: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            if code is not None:
                row = conn.execute(
                    """
                    DELETE FROM verification_code
                    WHERE mobile = %s AND purpose = %s AND code = %s
                    RETURNING mobile
                    """,
                    (mobile, purpose, code),
                ).fetchone()
            else:
                row = conn.execute(
                    "DELETE FROM verification_code WHERE mobile = %s AND purpose = %s RETURNING mobile",
                    (mobile, purpose),
                ).fetchone()
        return row is not None

    def purge_verification_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_code WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount
