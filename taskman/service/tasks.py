from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from taskman.logging import get_logger
from taskman.service.errors import NotFoundError, ServerError, ValidationError
from taskman.storage.models import TASK_PRIORITIES, TASK_STATUSES, Task

logger = get_logger(__name__)

_UPDATABLE = ("title", "description", "due_date", "priority", "status")


class TaskStore(Protocol):
    def create_task(
        self,
        user_id: str,
        title: str,
        description: str,
        due_date: date,
        *,
        priority: str = "medium",
        status: str = "pending",
    ) -> Task: ...

    def list_tasks(self, user_id: str) -> List[Task]: ...

    def get_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]: ...

    def update_task(
        self, task_id: str, changes: Dict[str, Any], *, user_id: Optional[str] = None
    ) -> Optional[Task]: ...

    def delete_task(self, task_id: str, *, user_id: Optional[str] = None) -> Optional[Task]: ...


def _check_choices(fields: Dict[str, Any]) -> None:
    priority = fields.get("priority")
    if priority is not None and priority not in TASK_PRIORITIES:
        raise ValidationError(
            "invalid priority", detail={"field": "priority", "allowed": list(TASK_PRIORITIES)}
        )
    status = fields.get("status")
    if status is not None and status not in TASK_STATUSES:
        raise ValidationError(
            "invalid status", detail={"field": "status", "allowed": list(TASK_STATUSES)}
        )


class TaskService:
    """Per-user task CRUD. A task owned by someone else is reported as missing."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def create_task(self, user_id: str, fields: Dict[str, Any]) -> Task:
        missing = [name for name in ("title", "description", "due_date") if not fields.get(name)]
        if missing:
            raise ValidationError("missing required fields", detail={"fields": missing})
        _check_choices(fields)
        try:
            task = self.store.create_task(
                user_id,
                fields["title"],
                fields["description"],
                fields["due_date"],
                priority=fields.get("priority") or "medium",
                status=fields.get("status") or "pending",
            )
        except Exception as exc:
            logger.error("task_create_failed", user_id=user_id, error=str(exc))
            raise ServerError("error creating task") from exc
        logger.info("task_created", user_id=user_id, task_id=task.id)
        return task

    def list_tasks(self, user_id: str) -> List[Task]:
        try:
            return self.store.list_tasks(user_id)
        except Exception as exc:
            logger.error("task_list_failed", user_id=user_id, error=str(exc))
            raise ServerError("error fetching tasks") from exc

    def get_task(self, user_id: str, task_id: str) -> Task:
        try:
            task = self.store.get_task(task_id, user_id=user_id)
        except Exception as exc:
            logger.error("task_fetch_failed", task_id=task_id, error=str(exc))
            raise ServerError("error fetching task") from exc
        if task is None:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        return task

    def update_task(self, user_id: str, task_id: str, fields: Dict[str, Any]) -> Task:
        changes = {k: v for k, v in fields.items() if k in _UPDATABLE and v is not None}
        _check_choices(changes)
        try:
            task = self.store.update_task(task_id, changes, user_id=user_id)
        except Exception as exc:
            logger.error("task_update_failed", task_id=task_id, error=str(exc))
            raise ServerError("error updating task") from exc
        if task is None:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        logger.info("task_updated", user_id=user_id, task_id=task_id, fields=sorted(changes))
        return task

    def delete_task(self, user_id: str, task_id: str) -> Task:
        try:
            task = self.store.delete_task(task_id, user_id=user_id)
        except Exception as exc:
            logger.error("task_delete_failed", task_id=task_id, error=str(exc))
            raise ServerError("error deleting task") from exc
        if task is None:
            raise NotFoundError("task not found", detail={"task_id": task_id})
        logger.info("task_deleted", user_id=user_id, task_id=task_id)
        return task
