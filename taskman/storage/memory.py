from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskman.logging import get_logger
from taskman.storage.errors import ConstraintViolation
from taskman.storage.models import RevokedToken, Task, User

TASK_MUTABLE_FIELDS = frozenset({"title", "description", "due_date", "priority", "status"})


class MemoryStore:
    """In-memory document store persisted to a JSON file under ``fs_root``.

    Holds users, revoked tokens and tasks. Every operation runs under one
    re-entrant lock, so uniqueness checks and the write that follows them are
    atomic with respect to other requests in the same process.
    """

    def __init__(self, fs_root: str = "/tmp/taskman") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.revoked_tokens: Dict[str, RevokedToken] = {}
        self.tasks: Dict[str, Task] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @contextmanager
    def _write(self):
        """Hold the lock for a mutation and persist it, or undo it if persisting fails."""
        with self._data_lock:
            snapshot = (dict(self.users), dict(self.revoked_tokens), dict(self.tasks))
            try:
                yield
                self._persist_state()
            except Exception:
                self.users, self.revoked_tokens, self.tasks = snapshot
                raise

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(username, email, password_hash, password_algo)
            with self._write():
                self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            with self._write():
                self.users.pop(user_id, None)
                for task_id, task in list(self.tasks.items()):
                    if task.user_id == user_id:
                        self.tasks.pop(task_id, None)
            return True

    # revoked tokens
    def revoke_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> RevokedToken:
        with self._data_lock:
            existing = self.revoked_tokens.get(token)
            if existing:
                return existing
            record = RevokedToken(token=token, expires_at=expires_at)
            with self._write():
                self.revoked_tokens[token] = record
            return record

    def is_token_revoked(self, token: str) -> bool:
        with self._data_lock:
            return token in self.revoked_tokens

    def prune_revoked_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            stale = [tok for tok, rec in self.revoked_tokens.items() if rec.prunable(now)]
            if stale:
                with self._write():
                    for tok in stale:
                        self.revoked_tokens.pop(tok, None)
            return len(stale)

    # tasks
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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            task = Task.new(
                user_id,
                title,
                description,
                due_date,
                priority=priority,
                status=status,
            )
            with self._write():
                self.tasks[task.id] = task
            return task

    def list_tasks(self, user_id: str) -> List[Task]:
        with self._data_lock:
            owned = [t for t in self.tasks.values() if t.user_id == user_id]
            return sorted(owned, key=lambda t: t.created_at)

    def get_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or (user_id and task.user_id != user_id):
                return None
            return task

    def update_task(
        self, task_id: str, changes: Dict[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(task_id, user_id=user_id)
            if not task:
                return None
            allowed = {k: v for k, v in changes.items() if k in TASK_MUTABLE_FIELDS}
            updated = replace(task, **allowed)
            with self._write():
                self.tasks[task_id] = updated
            return updated

    def delete_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(task_id, user_id=user_id)
            if not task:
                return None
            with self._write():
                self.tasks.pop(task_id, None)
            return task

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "revoked_tokens": [
                self._serialize_revoked_token(r) for r in self.revoked_tokens.values()
            ],
            "tasks": [self._serialize_task(t) for t in self.tasks.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.revoked_tokens = {
            r["token"]: self._deserialize_revoked_token(r)
            for r in data.get("revoked_tokens", [])
        }
        self.tasks = {t["id"]: self._deserialize_task(t) for t in data.get("tasks", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data.get("username", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_revoked_token(self, record: RevokedToken) -> dict:
        return {
            "token": record.token,
            "revoked_at": self._serialize_datetime(record.revoked_at),
            "expires_at": self._serialize_datetime(record.expires_at),
        }

    def _deserialize_revoked_token(self, data: dict) -> RevokedToken:
        return RevokedToken(
            token=data["token"],
            revoked_at=self._deserialize_datetime(data["revoked_at"]),
            expires_at=self._deserialize_datetime(data.get("expires_at")),
        )

    def _serialize_task(self, task: Task) -> dict:
        return {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "description": task.description,
            "due_date": task.due_date.isoformat(),
            "priority": task.priority,
            "status": task.status,
            "created_at": self._serialize_datetime(task.created_at),
        }

    def _deserialize_task(self, data: dict) -> Task:
        return Task(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=data["title"],
            description=data["description"],
            due_date=date.fromisoformat(data["due_date"]),
            priority=data.get("priority", "medium"),
            status=data.get("status", "pending"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
