from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Profile, Session, SmtpConfig, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_profile (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'user')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (email, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        subject_id UUID NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'user')),
        token_fingerprint CHAR(64) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        rotated_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        user_agent VARCHAR(200),
        source_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_subject_idx ON auth_session (subject_id, role)",
    """
    CREATE INDEX IF NOT EXISTS auth_session_active_fp_idx
        ON auth_session (token_fingerprint) WHERE revoked_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS smtp_config (
        id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        host TEXT NOT NULL,
        port INTEGER NOT NULL,
        username TEXT NOT NULL,
        password TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for profiles, sessions and the SMTP record."""

    def __init__(self, dsn: str, fs_root: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # profiles
    def upsert_profile(self, email: str, role: str) -> Profile:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_profile (id, email, role, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (email, role) DO NOTHING
                """,
                (str(uuid.uuid4()), email, role, utcnow()),
            )
            row = conn.execute(
                "SELECT * FROM auth_profile WHERE email = %s AND role = %s",
                (email, role),
            ).fetchone()
        return self._profile_from_row(row)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        try:
            uuid.UUID(str(profile_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_profile WHERE id = %s", (profile_id,)
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def get_profile_by_email(self, email: str, role: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_profile WHERE email = %s AND role = %s",
                (email, role),
            ).fetchone()
        return self._profile_from_row(row) if row else None

    def delete_profile(self, profile_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_profile WHERE id = %s", (profile_id,))
            return result.rowcount > 0

    # sessions
    def _insert_session_row(self, conn, session: Session) -> None:
        try:
            conn.execute(
                """
                INSERT INTO auth_session (id, subject_id, role, token_fingerprint, created_at,
                                          rotated_at, revoked_at, user_agent, source_address)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.subject_id,
                    session.role,
                    session.token_fingerprint,
                    session.created_at,
                    session.rotated_at,
                    session.revoked_at,
                    session.user_agent,
                    session.source_address,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})

    def insert_session(self, session: Session) -> Session:
        with self._connect() as conn:
            self._insert_session_row(conn, session)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            uuid.UUID(str(session_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_active_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE token_fingerprint = %s AND revoked_at IS NULL
                LIMIT 1
                """,
                (fingerprint,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self, session_id: str, expected_fingerprint: str, successor: Session
    ) -> bool:
        # The conditional UPDATE takes the row lock; a concurrent rotation blocks
        # on it and then matches zero rows once this transaction commits.
        with self._connect() as conn:
            now = utcnow()
            result = conn.execute(
                """
                UPDATE auth_session
                SET revoked_at = %s, rotated_at = %s
                WHERE id = %s AND revoked_at IS NULL AND token_fingerprint = %s
                """,
                (now, now, session_id, expected_fingerprint),
            )
            if result.rowcount != 1:
                conn.rollback()
                return False
            self._insert_session_row(conn, successor)
        return True

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (utcnow(), session_id),
            )
            return result.rowcount > 0

    def revoke_subject_sessions(self, subject_id: str, role: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE subject_id = %s AND role = %s AND revoked_at IS NULL
                """,
                (utcnow(), subject_id, role),
            )
            return result.rowcount

    # smtp
    def get_smtp_config(self) -> Optional[SmtpConfig]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM smtp_config WHERE id = 1").fetchone()
        if not row:
            return None
        return SmtpConfig(
            host=row["host"],
            port=int(row["port"]),
            username=row["username"],
            password=row["password"],
            updated_at=row["updated_at"],
        )

    def save_smtp_config(self, config: SmtpConfig) -> SmtpConfig:
        config.updated_at = utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO smtp_config (id, host, port, username, password, updated_at)
                VALUES (1, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    host = EXCLUDED.host,
                    port = EXCLUDED.port,
                    username = EXCLUDED.username,
                    password = EXCLUDED.password,
                    updated_at = EXCLUDED.updated_at
                """,
                (config.host, config.port, config.username, config.password, config.updated_at),
            )
        return config

    def delete_smtp_config(self) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM smtp_config WHERE id = 1")
            return result.rowcount > 0

    @staticmethod
    def _profile_from_row(row: dict) -> Profile:
        return Profile(
            id=str(row["id"]),
            email=row["email"],
            role=row["role"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            subject_id=str(row["subject_id"]),
            role=row["role"],
            token_fingerprint=row["token_fingerprint"],
            created_at=row.get("created_at") or utcnow(),
            rotated_at=row.get("rotated_at"),
            revoked_at=row.get("revoked_at"),
            user_agent=row.get("user_agent"),
            source_address=row.get("source_address"),
        )
