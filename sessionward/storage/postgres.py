from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Set

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Session, User, normalize_email, utcnow

_SESSION_COLUMNS = (
    "id, user_id, refresh_token, refresh_token_expires_at, ip_address, user_agent, "
    "refresh_count, last_refreshed_at, revoked, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed user and session store.

    Refresh rotation is a single conditional UPDATE so concurrent refreshes of
    the same token cannot both succeed.
    """

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

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` and ``user_session`` tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT,
                    roles TEXT[] NOT NULL DEFAULT '{}',
                    password_changed_at TIMESTAMPTZ,
                    reset_code_digest TEXT UNIQUE,
                    reset_code_sent_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_session (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
                    refresh_token TEXT NOT NULL UNIQUE,
                    refresh_token_expires_at TIMESTAMPTZ NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    refresh_count INTEGER NOT NULL DEFAULT 0,
                    last_refreshed_at TIMESTAMPTZ,
                    revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS user_session_user_id_idx ON user_session (user_id)"
            )

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            roles=set(row.get("roles") or ()),
            created_at=row.get("created_at") or utcnow(),
            password_changed_at=row.get("password_changed_at"),
            reset_code_digest=row.get("reset_code_digest"),
            reset_code_sent_at=row.get("reset_code_sent_at"),
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            refresh_token_expires_at=row["refresh_token_expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            refresh_count=row.get("refresh_count") or 0,
            last_refreshed_at=row.get("last_refreshed_at"),
            revoked=bool(row.get("revoked")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        roles: Optional[Set[str]] = None,
    ) -> User:
        user = User.new(email, password_hash, roles=roles)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, roles, password_changed_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        sorted(user.roles),
                        user.password_changed_at,
                        user.created_at,
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

    def consume_reset_digest(self, digest: str) -> Optional[User]:
        """Atomically clear a pending reset code; returns the pre-update row."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user AS u
                SET reset_code_digest = NULL, reset_code_sent_at = NULL
                FROM app_user AS prev
                WHERE prev.id = u.id AND u.reset_code_digest = %s
                RETURNING prev.*
                """,
                (digest,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, password_hash = %s, roles = %s, password_changed_at = %s,
                        reset_code_digest = %s, reset_code_sent_at = %s
                    WHERE id = %s
                    """,
                    (
                        normalize_email(user.email),
                        user.password_hash,
                        sorted(user.roles),
                        user.password_changed_at,
                        user.reset_code_digest,
                        user.reset_code_sent_at,
                        user.id,
                    ),
                )
                if result.rowcount == 0:
                    raise ConstraintViolation("user not found", {"user_id": user.id})
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def delete_user(self, user_id: str) -> bool:
        # user_session rows go with the user through ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO user_session ({_SESSION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.refresh_token_expires_at,
                        session.ip_address,
                        session.user_agent,
                        session.refresh_count,
                        session.last_refreshed_at,
                        session.revoked,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE id = %s AND revoked = FALSE",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE refresh_token = %s",
                (refresh_token,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, session: Session) -> Session:
        """Persist mutable fields; the fingerprint columns are never written."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE user_session
                    SET refresh_token = %s,
                        refresh_token_expires_at = %s,
                        refresh_count = GREATEST(refresh_count, %s),
                        last_refreshed_at = %s,
                        revoked = revoked OR %s,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (
                        session.refresh_token,
                        session.refresh_token_expires_at,
                        session.refresh_count,
                        session.last_refreshed_at,
                        session.revoked,
                        session.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        if not row:
            raise ConstraintViolation("session not found", {"session_id": session.id})
        return self._session_from_row(row)

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        refreshed_at: datetime,
    ) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE user_session
                    SET refresh_token = %s,
                        refresh_count = refresh_count + 1,
                        last_refreshed_at = %s,
                        refresh_token_expires_at = %s,
                        updated_at = %s
                    WHERE id = %s AND refresh_token = %s AND revoked = FALSE
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (new_token, refreshed_at, expires_at, refreshed_at, session_id, expected_token),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE user_session
                SET revoked = TRUE,
                    updated_at = CASE WHEN revoked THEN updated_at ELSE now() END
                WHERE id = %s
                RETURNING {_SESSION_COLUMNS}
                """,
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE user_session SET revoked = TRUE, updated_at = now() "
                "WHERE user_id = %s AND revoked = FALSE",
                (user_id,),
            )
            return result.rowcount

    def list_sessions_for_user(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        query = f"SELECT {_SESSION_COLUMNS} FROM user_session WHERE user_id = %s"
        if not include_revoked:
            query += " AND revoked = FALSE"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount
