from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

TASK_PRIORITIES = ("low", "medium", "high")
TASK_STATUSES = ("pending", "in progress", "completed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, username: str, email: str, password_hash: str, password_algo: str = "argon2id"
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash,
            password_algo=password_algo,
        )


@dataclass
class RevokedToken:
    """A bearer token that must never authenticate again."""

    token: str = field(repr=False)
    revoked_at: datetime = field(default_factory=_utcnow)
    # When the token stops verifying on its own (exp plus leeway); None if unreadable
    expires_at: Optional[datetime] = None

    def prunable(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())


@dataclass
class Task:
    id: str
    user_id: str
    title: str
    description: str
    due_date: date
    priority: str = "medium"
    status: str = "pending"
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        title: str,
        description: str,
        due_date: date,
        *,
        priority: str = "medium",
        status: str = "pending",
    ) -> "Task":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            description=description,
            due_date=due_date,
            priority=priority,
            status=status,
        )
