"""Unit tests for auth/store.py -- user registry.

Covers:
- identity normalization and lookup by username or e-mail
- uniqueness over the normalized form, across both columns, under concurrency
- password policy enforcement on create and credential change only
- role defaults vs explicit grants
- partial updates, deactivate / reactivate, delete
- schema upgrade of a users table created before password_changed_at
"""

import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, inspect, text

from auth.db import create_auth_engine
from auth.errors import DuplicateIdentityError, NotFoundError, WeakCredentialError
from auth.models import Action, NewUser, Role, UserPatch
from auth.permissions import default_grants_for, grant

STRONG_PASSWORD = "StrongP@ss1"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class TestCreate:
    def test_normalizes_username_and_email(self, service) -> None:
        user = service.users.create(
            NewUser(username="  Alice ", email=" Alice@Lab.Test ", name=" Alice Smith ", password=STRONG_PASSWORD)
        )
        assert user.username == "alice"
        assert user.email == "alice@lab.test"
        assert user.name == "Alice Smith"
        assert service.users.get_by_id(user.id) == user

    def test_verifier_is_not_the_password(self, service, make_user) -> None:
        user = make_user("alice")
        assert user.credential_verifier != STRONG_PASSWORD
        assert service.hasher.verify(STRONG_PASSWORD, user.credential_verifier)
        assert STRONG_PASSWORD not in repr(user)

    def test_multibyte_password_over_bcrypt_limit_rejected(self, service) -> None:
        # Within 72 characters but 84 UTF-8 bytes.
        with pytest.raises(WeakCredentialError) as exc_info:
            service.users.create(
                NewUser(username="alice", email="alice@lab.test", name="Alice", password="Aa1!" + "\u00e9" * 40)
            )
        assert any("72 bytes" in v for v in exc_info.value.violations)
        assert service.users.find_by_login_identity("alice") is None

    def test_multibyte_password_within_limit_accepted(self, service) -> None:
        password = "Aa1!" + "\u00e9" * 34
        user = service.users.create(NewUser(username="alice", email="alice@lab.test", name="Alice", password=password))
        assert service.hasher.verify(password, user.credential_verifier)

    def test_password_changed_at_starts_at_creation(self, make_user) -> None:
        user = make_user("alice")
        assert user.password_changed_at is not None
        assert user.password_changed_at == user.created_at

    def test_role_defaults_applied(self, make_user) -> None:
        user = make_user("tech", role=Role.technician)
        assert user.permissions == default_grants_for(Role.technician)

    def test_explicit_grants_override_role(self, service) -> None:
        user = service.users.create(
            NewUser(
                username="custom",
                email="custom@lab.test",
                name="Custom",
                password=STRONG_PASSWORD,
                role=Role.admin,
                permissions=[grant("reports", Action.view)],
            )
        )
        stored = service.users.get_by_id(user.id)
        assert stored.permissions == [grant("reports", Action.view)]

    def test_explicit_empty_grants_honoured(self, service) -> None:
        user = service.users.create(
            NewUser(username="nobody", email="nobody@lab.test", name="N", password=STRONG_PASSWORD, permissions=[])
        )
        assert service.users.get_by_id(user.id).permissions == []

    def test_weak_password_rejected_before_insert(self, service) -> None:
        with pytest.raises(WeakCredentialError) as excinfo:
            service.users.create(NewUser(username="bob", email="bob@lab.test", name="Bob", password="weak"))
        assert len(excinfo.value.violations) == 4
        assert not service.users.has_users()

    def test_blank_username_rejected(self, service) -> None:
        with pytest.raises(ValueError):
            service.users.create(NewUser(username="   ", email="x@lab.test", name="X", password=STRONG_PASSWORD))


class TestUniqueness:
    def test_username_case_insensitive(self, make_user) -> None:
        make_user("alice")
        with pytest.raises(DuplicateIdentityError) as excinfo:
            make_user("ALICE", email="other@lab.test")
        assert excinfo.value.field == "username"

    def test_email_case_insensitive(self, make_user) -> None:
        make_user("alice", email="alice@lab.test")
        with pytest.raises(DuplicateIdentityError) as excinfo:
            make_user("alice2", email="Alice@LAB.test")
        assert excinfo.value.field == "email"

    def test_username_may_not_equal_another_email(self, make_user) -> None:
        make_user("alice", email="shared@lab.test")
        with pytest.raises(DuplicateIdentityError):
            make_user("shared@lab.test", email="fresh@lab.test")

    def test_inactive_user_keeps_identity(self, service, make_user) -> None:
        alice = make_user("alice")
        service.users.deactivate(alice.id)
        with pytest.raises(DuplicateIdentityError):
            make_user("alice", email="new@lab.test")

    def test_concurrent_creates_single_winner(self, service) -> None:
        results: list[str] = []
        barrier = threading.Barrier(8)

        def worker(i: int) -> None:
            barrier.wait()
            try:
                service.users.create(
                    NewUser(username="racer", email=f"racer{i}@lab.test", name="Racer", password=STRONG_PASSWORD)
                )
                results.append("ok")
            except DuplicateIdentityError:
                results.append("dup")

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("dup") == 7
        assert len(service.users.list_users()) == 1


class TestLookup:
    def test_find_by_username_or_email(self, service, make_user) -> None:
        alice = make_user("alice", email="a.smith@lab.test")
        assert service.users.find_by_login_identity(" ALICE ").id == alice.id
        assert service.users.find_by_login_identity("A.Smith@lab.test").id == alice.id
        assert service.users.find_by_login_identity("nobody") is None
        assert service.users.find_by_login_identity("   ") is None

    def test_list_users_by_tenant(self, service, make_user) -> None:
        make_user("alice", tenant_id="center-1")
        make_user("bob", tenant_id="center-2")
        make_user("carol")
        assert [u.username for u in service.users.list_users()] == ["alice", "bob", "carol"]
        assert [u.username for u in service.users.list_users(tenant_id="center-1")] == ["alice"]

    def test_count_active_admins(self, service, make_user) -> None:
        make_user("root", role=Role.admin)
        second = make_user("root2", role=Role.admin)
        make_user("tech", role=Role.technician)
        assert service.users.count_active_admins() == 2
        service.users.deactivate(second.id)
        assert service.users.count_active_admins() == 1


class TestUpdate:
    def test_role_change_resets_grants(self, service, make_user) -> None:
        user = make_user("alice", role=Role.student)
        updated = service.users.update(user.id, UserPatch(role=Role.accountant))
        assert updated.role == Role.accountant
        assert updated.permissions == default_grants_for(Role.accountant)
        assert service.users.get_by_id(user.id).permissions == default_grants_for(Role.accountant)

    def test_role_change_with_explicit_grants(self, service, make_user) -> None:
        user = make_user("alice")
        updated = service.users.update(
            user.id, UserPatch(role=Role.qc, permissions=[grant("quality", Action.view)])
        )
        assert updated.permissions == [grant("quality", Action.view)]

    def test_name_only_update_skips_password_policy(self, service, make_user) -> None:
        user = make_user("alice")
        service.config.update({"password_min_length": 20})
        updated = service.users.update(user.id, UserPatch(name="Alice Renamed"))
        assert updated.name == "Alice Renamed"
        assert updated.credential_verifier == user.credential_verifier

    def test_password_change_checked_and_rehashed(self, service, make_user) -> None:
        user = make_user("alice")
        with pytest.raises(WeakCredentialError):
            service.users.update(user.id, UserPatch(password="short"))
        updated = service.users.update(user.id, UserPatch(password="N3w!Password"))
        assert service.hasher.verify("N3w!Password", updated.credential_verifier)
        assert not service.hasher.verify(STRONG_PASSWORD, updated.credential_verifier)

    def test_password_change_moves_password_changed_at(self, service, make_user) -> None:
        user = make_user("alice")
        renamed = service.users.update(user.id, UserPatch(name="Alice B"))
        assert renamed.password_changed_at == user.password_changed_at
        rotated = service.users.update(user.id, UserPatch(password="N3w!Password"))
        assert rotated.password_changed_at > user.password_changed_at
        assert service.users.get_by_id(user.id).password_changed_at == rotated.password_changed_at

    def test_update_keeps_concurrent_deactivation_and_login(self, service, make_user, monkeypatch) -> None:
        """An update working from a stale snapshot only writes the fields it changes."""
        user = make_user("alice")
        stale = service.users.get_by_id(user.id)
        service.users.deactivate(user.id)
        service.users.update_last_login(user.id, T0)

        real_get = service.users.get_by_id
        snapshots = iter([stale])
        monkeypatch.setattr(service.users, "get_by_id", lambda uid: next(snapshots, None) or real_get(uid))

        updated = service.users.update(user.id, UserPatch(name="Alice Renamed"))

        stored = real_get(user.id)
        assert stored.name == "Alice Renamed"
        assert stored.is_active is False
        assert stored.last_login_at == T0
        assert updated == stored

    def test_email_change_conflict(self, service, make_user) -> None:
        make_user("alice")
        bob = make_user("bob")
        with pytest.raises(DuplicateIdentityError):
            service.users.update(bob.id, UserPatch(email="ALICE@lab.test"))

    def test_unknown_user(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.users.update("missing", UserPatch(name="x"))


class TestLifecycle:
    def test_deactivate_and_reactivate(self, service, make_user) -> None:
        user = make_user("alice")
        assert service.users.deactivate(user.id).is_active is False
        assert service.users.get_by_id(user.id).is_active is False
        assert service.users.reactivate(user.id).is_active is True

    def test_deactivate_unknown(self, service) -> None:
        with pytest.raises(NotFoundError):
            service.users.deactivate("missing")

    def test_delete_user(self, service, make_user) -> None:
        user = make_user("alice")
        assert service.users.delete_user(user.id) is True
        assert service.users.get_by_id(user.id) is None
        assert service.users.delete_user(user.id) is False


def test_existing_users_table_gains_password_changed_at(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'legacy.db'}"
    legacy = create_engine(url)
    with legacy.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE users (id VARCHAR(32) PRIMARY KEY, username VARCHAR(255) NOT NULL UNIQUE, "
                "email VARCHAR(320) NOT NULL UNIQUE, name VARCHAR(255) NOT NULL, credential_verifier TEXT NOT NULL, "
                "role VARCHAR(30) NOT NULL, permissions TEXT NOT NULL, is_active INTEGER NOT NULL DEFAULT 1, "
                "created_at VARCHAR(32) NOT NULL, last_login_at VARCHAR(32), tenant_id VARCHAR(64))"
            )
        )
    legacy.dispose()

    engine = create_auth_engine(url)
    try:
        columns = {c["name"] for c in inspect(engine).get_columns("users")}
        assert "password_changed_at" in columns
        # Running the upgrade twice is harmless.
        create_auth_engine(url).dispose()
    finally:
        engine.dispose()
