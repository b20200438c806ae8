"""Unit tests for TaskService error mapping and ownership scoping."""

from datetime import date

import pytest

from taskman.service.errors import NotFoundError, ServerError, ValidationError
from taskman.service.tasks import TaskService
from taskman.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(store):
    return TaskService(store)


@pytest.fixture
def owner(store):
    return store.create_user("alice", "a@x.com", "$argon2id$fake")


def _fields(**overrides):
    fields = {"title": "t", "description": "d", "due_date": date(2026, 11, 1)}
    fields.update(overrides)
    return fields


class BrokenStore:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RuntimeError("connection lost")

        return fail


def test_missing_fields_rejected(service, owner):
    with pytest.raises(ValidationError) as excinfo:
        service.create_task(owner.id, {"title": "t"})
    assert excinfo.value.detail == {"fields": ["description", "due_date"]}


def test_unknown_priority_rejected(service, owner):
    with pytest.raises(ValidationError):
        service.create_task(owner.id, _fields(priority="urgent"))


def test_none_values_are_not_applied_on_update(service, owner):
    task = service.create_task(owner.id, _fields(priority="high"))
    updated = service.update_task(owner.id, task.id, {"priority": None, "status": "completed"})
    assert updated.priority == "high"
    assert updated.status == "completed"


def test_foreign_task_is_not_found(service, store, owner):
    task = service.create_task(owner.id, _fields())
    other = store.create_user("bob", "b@x.com", "$argon2id$fake")

    with pytest.raises(NotFoundError):
        service.get_task(other.id, task.id)
    with pytest.raises(NotFoundError):
        service.delete_task(other.id, task.id)
    assert service.get_task(owner.id, task.id).id == task.id


@pytest.mark.parametrize(
    "call,message",
    [
        (lambda s: s.create_task("u1", _fields()), "error creating task"),
        (lambda s: s.list_tasks("u1"), "error fetching tasks"),
        (lambda s: s.get_task("u1", "t1"), "error fetching task"),
        (lambda s: s.update_task("u1", "t1", {"title": "x"}), "error updating task"),
        (lambda s: s.delete_task("u1", "t1"), "error deleting task"),
    ],
)
def test_store_failures_become_server_errors(call, message):
    with pytest.raises(ServerError) as excinfo:
        call(TaskService(BrokenStore()))
    assert excinfo.value.message == message
