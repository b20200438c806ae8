from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskman.logging import get_logger
from taskman.storage.errors import ConstraintViolation
from taskman.storage.memory import TASK_MUTABLE_FIELDS
from taskman.storage.models import RevokedToken, Task, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token TEXT PRIMARY KEY,
        revoked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        due_date DATE NOT NULL,
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ('low', 'medium', 'high')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in progress', 'completed')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_user_idx ON task(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS revoked_token_expiry_idx ON revoked_token(expires_at)",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostgresStore:
    """Postgres-backed credential, revocation and task store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
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
        """Create the tables this service needs if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        user = User.new(username, email, password_hash, password_algo)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.password_algo,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo", "argon2id"),
            created_at=_aware(row["created_at"]),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # revoked tokens
    def revoke_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> RevokedToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_token (token, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token) DO NOTHING
                """,
                (token, expires_at),
            )
            row = conn.execute(
                "SELECT * FROM revoked_token WHERE token = %s", (token,)
            ).fetchone()
        return RevokedToken(
            token=row["token"],
            revoked_at=_aware(row["revoked_at"]),
            expires_at=_aware(row.get("expires_at")),
        )

    def is_token_revoked(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_token WHERE token = %s", (token,)
            ).fetchone()
        return row is not None

    def prune_revoked_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_token WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (cutoff,),
            )
            return cur.rowcount

    # tasks
    def _task_from_row(self, row: Dict[str, Any]) -> Task:
        return Task(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            description=row["description"],
            due_date=row["due_date"],
            priority=row.get("priority", "medium"),
            status=row.get("status", "pending"),
            created_at=_aware(row["created_at"]),
        )

    def create_task(
        self,
        user_id: str,
        title: str,
        description: str,
        due_date: date,
        *,
        priority: str = "medium",
        status: str = "pending",
    ) -> Task:
        task = Task.new(
            user_id, title, description, due_date, priority=priority, status=status
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO task (id, user_id, title, description, due_date, priority, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        task.id,
                        task.user_id,
                        task.title,
                        task.description,
                        task.due_date,
                        task.priority,
                        task.status,
                        task.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return task

    def list_tasks(self, user_id: str) -> List[Task]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    def get_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]:
        try:
            uuid.UUID(str(task_id))
        except ValueError:
            return None
        query = "SELECT * FROM task WHERE id = %s"
        params: List[Any] = [task_id]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._task_from_row(row) if row else None

    def update_task(
        self, task_id: str, changes: Dict[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Task]:
        allowed = {k: v for k, v in changes.items() if k in TASK_MUTABLE_FIELDS}
        if not allowed:
            return self.get_task(task_id, user_id=user_id)
        if self.get_task(task_id, user_id=user_id) is None:
            return None
        # Column names come from TASK_MUTABLE_FIELDS, never from the caller
        assignments = ", ".join(f"{column} = %s" for column in sorted(allowed))
        params: List[Any] = [allowed[column] for column in sorted(allowed)]
        query = f"UPDATE task SET {assignments} WHERE id = %s"
        params.append(task_id)
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._task_from_row(row) if row else None

    def delete_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]:
        if self.get_task(task_id, user_id=user_id) is None:
            return None
        query = "DELETE FROM task WHERE id = %s"
        params: List[Any] = [task_id]
        if user_id:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._task_from_row(row) if row else None
