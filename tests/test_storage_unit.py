"""Unit tests for the JSON-persisted memory store.

Tests for:
- User uniqueness and lookup
- Revoked-token records and pruning
- Owner-scoped task CRUD
- Persistence across store instances
"""

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from taskman.storage.errors import ConstraintViolation
from taskman.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def test_user(memory_store):
    """Create a test user."""
    return memory_store.create_user("alice", "a@x.com", "$argon2id$fake")


class TestUsers:
    def test_duplicate_email_rejected_without_mutation(self, memory_store, test_user):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("other", "a@x.com", "$argon2id$fake2")

        assert excinfo.value.detail == {"field": "email"}
        assert [u.id for u in memory_store.list_users()] == [test_user.id]

    def test_email_match_is_case_sensitive(self, memory_store, test_user):
        assert memory_store.get_user_by_email("A@x.com") is None
        memory_store.create_user("alice-caps", "A@x.com", "$argon2id$fake")
        assert len(memory_store.list_users()) == 2

    def test_username_not_unique(self, memory_store, test_user):
        memory_store.create_user("alice", "alice2@x.com", "$argon2id$fake")
        assert len(memory_store.list_users()) == 2

    def test_lookup_by_id_and_email(self, memory_store, test_user):
        assert memory_store.get_user(test_user.id) == test_user
        assert memory_store.get_user_by_email("a@x.com") == test_user
        assert memory_store.get_user("missing") is None

    def test_concurrent_signups_with_one_email_create_one_user(self, memory_store):
        errors = []

        def attempt(i):
            try:
                memory_store.create_user(f"user{i}", "race@x.com", "$argon2id$fake")
            except ConstraintViolation as exc:
                errors.append(exc)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(memory_store.list_users()) == 1
        assert len(errors) == 7

    def test_delete_user_removes_their_tasks(self, memory_store, test_user):
        memory_store.create_task(test_user.id, "t", "d", date(2026, 1, 1))
        assert memory_store.delete_user(test_user.id) is True
        assert memory_store.list_tasks(test_user.id) == []
        assert memory_store.delete_user(test_user.id) is False


class TestRevokedTokens:
    def test_revoke_is_idempotent(self, memory_store):
        first = memory_store.revoke_token("tok")
        second = memory_store.revoke_token("tok")

        assert first is second
        assert memory_store.is_token_revoked("tok")
        assert not memory_store.is_token_revoked("other")

    def test_prune_keeps_unknown_and_future_expiry(self, memory_store):
        now = datetime.now(timezone.utc)
        memory_store.revoke_token("expired", now - timedelta(seconds=1))
        memory_store.revoke_token("live", now + timedelta(hours=1))
        memory_store.revoke_token("unknown", None)

        assert memory_store.prune_revoked_tokens(now) == 1
        assert not memory_store.is_token_revoked("expired")
        assert memory_store.is_token_revoked("live")
        assert memory_store.is_token_revoked("unknown")


class TestTasks:
    def test_create_applies_defaults(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, "Write", "report", date(2026, 2, 1))

        assert task.priority == "medium"
        assert task.status == "pending"
        assert task.user_id == test_user.id

    def test_create_for_unknown_user_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_task("ghost", "t", "d", date(2026, 1, 1))

    def test_other_users_cannot_see_task(self, memory_store, test_user):
        bob = memory_store.create_user("bob", "b@x.com", "$argon2id$fake")
        task = memory_store.create_task(test_user.id, "t", "d", date(2026, 1, 1))

        assert memory_store.get_task(task.id, user_id=bob.id) is None
        assert memory_store.list_tasks(bob.id) == []
        assert memory_store.update_task(task.id, {"title": "x"}, user_id=bob.id) is None
        assert memory_store.delete_task(task.id, user_id=bob.id) is None
        assert memory_store.get_task(task.id, user_id=test_user.id).title == "t"

    def test_update_ignores_protected_fields(self, memory_store, test_user):
        task = memory_store.create_task(test_user.id, "t", "d", date(2026, 1, 1))
        updated = memory_store.update_task(
            task.id,
            {"status": "completed", "user_id": "someone-else", "id": "new-id"},
            user_id=test_user.id,
        )

        assert updated.status == "completed"
        assert updated.user_id == test_user.id
        assert updated.id == task.id
        assert updated.created_at == task.created_at

    def test_list_in_creation_order(self, memory_store, test_user):
        first = memory_store.create_task(test_user.id, "first", "d", date(2026, 1, 1))
        second = memory_store.create_task(test_user.id, "second", "d", date(2026, 1, 2))
        assert [t.id for t in memory_store.list_tasks(test_user.id)] == [first.id, second.id]


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", "a@x.com", "$argon2id$fake")
    task = store.create_task(user.id, "t", "d", date(2026, 3, 4), priority="high")
    expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)
    store.revoke_token("tok", expiry)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_email("a@x.com").id == user.id
    assert reloaded.get_user(user.id).password_hash == "$argon2id$fake"
    reloaded_task = reloaded.get_task(task.id)
    assert reloaded_task.due_date == date(2026, 3, 4)
    assert reloaded_task.priority == "high"
    assert reloaded.revoked_tokens["tok"].expires_at == expiry
    with pytest.raises(ConstraintViolation):
        reloaded.create_user("again", "a@x.com", "$argon2id$fake")


class TestFailedPersist:
    """A write whose state file cannot be saved leaves memory unchanged."""

    @pytest.fixture
    def broken_disk(self, memory_store, monkeypatch):
        def fail():
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(memory_store, "_persist_state", fail)
        return memory_store

    def test_create_user_rolled_back(self, broken_disk):
        with pytest.raises(RuntimeError):
            broken_disk.create_user("alice", "a@x.com", "$argon2id$fake")
        assert broken_disk.list_users() == []

    def test_revoke_rolled_back(self, broken_disk):
        with pytest.raises(RuntimeError):
            broken_disk.revoke_token("tok")
        assert not broken_disk.is_token_revoked("tok")

    def test_task_writes_rolled_back(self, memory_store, test_user, monkeypatch):
        task = memory_store.create_task(test_user.id, "t", "d", date(2026, 1, 1))

        def fail():
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(memory_store, "_persist_state", fail)

        with pytest.raises(RuntimeError):
            memory_store.create_task(test_user.id, "t2", "d", date(2026, 1, 2))
        with pytest.raises(RuntimeError):
            memory_store.update_task(task.id, {"status": "completed"})
        with pytest.raises(RuntimeError):
            memory_store.delete_task(task.id)

        assert [t.id for t in memory_store.list_tasks(test_user.id)] == [task.id]
        assert memory_store.get_task(task.id).status == "pending"
