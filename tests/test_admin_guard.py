"""Tests for the administrative-rights cache and the "one admin left" invariant."""

import threading
import time
from contextlib import contextmanager

import pytest

from warden.service.admin_guard import BASELINE_ADMIN_RIGHTS, AdminGuard
from warden.service.errors import NotAllowedError
from warden.service.guarded import NO_ADMIN_LEFT, GuardedStore
from warden.service.invalidation import InvalidationCoordinator
from warden.storage.memory import MemoryStore
from warden.storage.models import Right, Role, User

PASSWORD = "Password123!"


def _user(runtime, email, roles):
    return runtime.users.create_user(email, password=PASSWORD, roles=roles, send_welcome=False)


class TestAdminCache:
    def test_admin_rights_are_baseline_rights_that_exist(self, runtime):
        assert runtime.admin_guard.get_admin_rights() == BASELINE_ADMIN_RIGHTS
        assert "USER_TOKEN_CREATE" not in runtime.admin_guard.get_admin_rights()

    def test_admin_roles(self, runtime):
        assert runtime.admin_guard.get_admin_roles() == frozenset({"ADMIN"})
        assert runtime.admin_guard.is_admin_role("ADMIN")
        assert not runtime.admin_guard.is_admin_role("USER")

    def test_no_admin_rights_means_no_admin_roles(self, memory_store):
        memory_store.save_right(Right(authority="DOC_READ"))
        memory_store.save_role(Role(name="READER", rights={"DOC_READ"}))
        guard = AdminGuard(memory_store)
        assert guard.get_admin_rights() == frozenset()
        assert guard.get_admin_roles() == frozenset()
        assert not guard.grants_admin({"DOC_READ"})

    def test_role_write_resets_cache(self, runtime):
        runtime.admin_guard.get_admin_roles()
        assert not runtime.admin_guard.is_empty()

        runtime.roles.create_role(Role(name="OPS", rights=set(BASELINE_ADMIN_RIGHTS)))

        assert runtime.admin_guard.is_empty()
        assert runtime.admin_guard.get_admin_roles() == frozenset({"ADMIN", "OPS"})

    def test_right_write_resets_cache(self, runtime):
        runtime.admin_guard.get_admin_rights()
        runtime.rights.create_right("DOC_READ")
        assert runtime.admin_guard.is_empty()

    def test_deleting_baseline_right_shrinks_admin_rights(self, runtime):
        runtime.rights.delete_right("TRANSLATION_DELETE")
        assert "TRANSLATION_DELETE" not in runtime.admin_guard.get_admin_rights()
        assert runtime.admin_guard.is_admin_role("ADMIN")

    def test_concurrent_reads_and_resets(self, runtime):
        errors = []
        expected = frozenset({"ADMIN"})

        def reader():
            try:
                for _ in range(200):
                    roles = runtime.admin_guard.get_admin_roles()
                    assert roles == expected
                    list(roles)
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        def resetter():
            for _ in range(200):
                runtime.admin_guard.reset()

        threads = [threading.Thread(target=reader) for _ in range(4)]
        threads.append(threading.Thread(target=resetter))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert errors == []


class TestLastAdminInvariant:
    """At least one user must keep an administrative role."""

    def test_last_admin_cannot_drop_admin_role(self, runtime):
        root = _user(runtime, "root@example.com", ["ADMIN"])
        with pytest.raises(NotAllowedError) as exc:
            runtime.users.patch_user(root.id, {"roles": ["USER"]})
        assert exc.value.message == NO_ADMIN_LEFT
        assert runtime.raw_store.get_user(root.id).roles == {"ADMIN"}

    def test_admin_can_be_demoted_when_another_remains(self, runtime):
        root = _user(runtime, "root@example.com", ["ADMIN"])
        _user(runtime, "ops@example.com", ["ADMIN"])
        demoted = runtime.users.patch_user(root.id, {"roles": ["USER"]})
        assert demoted.roles == {"USER"}

    def test_last_admin_cannot_be_deleted(self, runtime):
        root = _user(runtime, "root@example.com", ["ADMIN"])
        with pytest.raises(NotAllowedError):
            runtime.users.delete_user(root.id)
        assert runtime.raw_store.get_user(root.id) is not None

    def test_admin_can_be_deleted_when_another_remains(self, runtime):
        root = _user(runtime, "root@example.com", ["ADMIN"])
        _user(runtime, "ops@example.com", ["ADMIN"])
        runtime.users.delete_user(root.id)
        assert runtime.raw_store.get_user(root.id) is None

    def test_moving_between_admin_roles_is_allowed(self, runtime):
        runtime.roles.create_role(Role(name="OPS", rights=set(BASELINE_ADMIN_RIGHTS)))
        root = _user(runtime, "root@example.com", ["ADMIN"])
        moved = runtime.users.patch_user(root.id, {"roles": ["OPS"]})
        assert moved.roles == {"OPS"}

    def test_last_admin_cannot_be_disabled_by_losing_roles_in_full_update(self, runtime):
        root = _user(runtime, "root@example.com", ["ADMIN"])
        with pytest.raises(NotAllowedError):
            runtime.users.update_user(
                root.id,
                {
                    "email": root.email,
                    "first_name": "",
                    "last_name": "",
                    "locale": root.locale,
                    "roles": [],
                    "enabled": True,
                    "login_disabled": False,
                    "password": None,
                },
            )


class TestAdminRoleDemotion:
    """An administrative role may not lose its admin rights while it holds the last admins."""

    @pytest.fixture
    def ops_admin(self, runtime):
        runtime.roles.create_role(Role(name="OPS", rights=set(BASELINE_ADMIN_RIGHTS)))
        return _user(runtime, "ops@example.com", ["OPS"])

    def test_demoting_sole_admin_role_is_blocked(self, runtime, ops_admin):
        with pytest.raises(NotAllowedError):
            runtime.roles.patch_role("OPS", {"rights": ["USER_READ"]})
        assert runtime.raw_store.get_role("OPS").rights == set(BASELINE_ADMIN_RIGHTS)
        assert runtime.admin_guard.is_admin_role("OPS")

    def test_demotion_is_blocked_at_the_store_layer(self, runtime, ops_admin):
        with pytest.raises(NotAllowedError):
            runtime.store.save_role(Role(name="OPS", rights={"USER_READ"}))

    def test_demotion_allowed_while_another_admin_exists(self, runtime, ops_admin):
        _user(runtime, "root@example.com", ["ADMIN"])
        runtime.auth.issue_tokens(ops_admin)

        runtime.roles.patch_role("OPS", {"rights": ["USER_READ"]})

        assert not runtime.admin_guard.is_admin_role("OPS")
        assert runtime.raw_store.list_session_tokens(ops_admin.email) == []

    def test_adding_rights_to_admin_role_is_allowed(self, runtime, ops_admin):
        rights = set(BASELINE_ADMIN_RIGHTS) | {"USER_TOKEN_CREATE"}
        runtime.roles.patch_role("OPS", {"rights": sorted(rights)})
        assert runtime.raw_store.get_role("OPS").rights == rights

    def test_sole_admin_role_cannot_be_deleted(self, runtime, ops_admin):
        with pytest.raises(NotAllowedError):
            runtime.store.delete_role("OPS")

    def test_protected_admin_role_cannot_be_edited(self, runtime):
        with pytest.raises(NotAllowedError):
            runtime.roles.patch_role("ADMIN", {"rights": []})


class RecordingStore(MemoryStore):
    def __init__(self, *args, **kwargs):
        self.events = []
        super().__init__(*args, **kwargs)

    def lock_admin_roles(self):
        self.events.append("lock")

    def list_users_by_role(self, role_name):
        self.events.append("check")
        return super().list_users_by_role(role_name)


class TestConcurrentAdminWrites:
    def test_demotion_and_admin_delete_cannot_both_succeed(self, runtime, monkeypatch):
        """A delete racing a role demotion sees the demoted role, not the cached one."""
        runtime.roles.create_role(Role(name="OPS", rights=set(BASELINE_ADMIN_RIGHTS)))
        _user(runtime, "ops@example.com", ["OPS"])
        root = _user(runtime, "root@example.com", ["ADMIN"])
        assert runtime.admin_guard.get_admin_roles() == frozenset({"ADMIN", "OPS"})

        original_reset = runtime.admin_guard.reset
        demotion_running = threading.Event()
        demotion_errors = []

        def slow_reset():
            if threading.current_thread() is worker:
                demotion_running.set()
                time.sleep(0.2)
            original_reset()

        def demote():
            try:
                runtime.store.save_role(Role(name="OPS", rights={"USER_READ"}))
            except NotAllowedError as exc:  # pragma: no cover - surfaced below
                demotion_errors.append(exc)

        monkeypatch.setattr(runtime.admin_guard, "reset", slow_reset)
        worker = threading.Thread(target=demote)
        worker.start()
        assert demotion_running.wait(5)

        with pytest.raises(NotAllowedError):
            runtime.store.delete_user(root.id)
        worker.join()

        assert demotion_errors == []
        assert runtime.raw_store.get_user(root.id) is not None
        assert not runtime.admin_guard.is_admin_role("OPS")

    def test_admin_lock_is_taken_before_the_check(self, tmp_path):
        store = RecordingStore(fs_root=str(tmp_path / "recording"))
        for authority in BASELINE_ADMIN_RIGHTS:
            store.save_right(Right(authority=authority))
        store.save_role(Role(name="ADMIN", rights=set(BASELINE_ADMIN_RIGHTS)))
        store.create_user(User(id="u1", email="root@example.com", roles={"ADMIN"}))
        store.create_user(User(id="u2", email="ops@example.com", roles={"ADMIN"}))
        guarded = GuardedStore(store, AdminGuard(store), InvalidationCoordinator(store))
        store.events.clear()

        assert guarded.delete_user("u1") is True

        assert store.events[0] == "lock"
        assert "check" in store.events

    def test_role_write_resets_cache_before_commit(self, runtime, monkeypatch):
        events = []
        depth = [0]
        original_save = runtime.raw_store.save_role
        original_reset = runtime.admin_guard.reset
        original_transaction = runtime.raw_store.transaction

        @contextmanager
        def transaction():
            depth[0] += 1
            try:
                with original_transaction():
                    yield
            finally:
                depth[0] -= 1
                if depth[0] == 0:
                    events.append("commit")

        def save_role(role):
            events.append("write")
            return original_save(role)

        def reset():
            events.append("reset")
            original_reset()

        monkeypatch.setattr(runtime.raw_store, "transaction", transaction)
        monkeypatch.setattr(runtime.raw_store, "save_role", save_role)
        monkeypatch.setattr(runtime.admin_guard, "reset", reset)
        runtime.store.save_role(Role(name="OPS", rights=set(BASELINE_ADMIN_RIGHTS)))

        write = events.index("write")
        assert events[write + 1:] == ["reset", "commit", "reset"]
        assert runtime.admin_guard.get_admin_roles() == frozenset({"ADMIN", "OPS"})
