"""Tests for the account store, lifecycle transitions and the authorization guard."""

import pytest

from identcore.service.accounts import AccountLifecycle, can_manage, ensure_usable
from identcore.service.errors import (
    AccountBlockedError,
    AccountNotVerifiedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StaleTokenError,
)
from identcore.storage.errors import ConstraintViolation
from identcore.storage.memory import MemoryStore
from identcore.storage.models import Account, AccountStatus, AuthContext, Role


def _context(account: Account) -> AuthContext:
    return AuthContext(account_id=account.id, role=account.role, token_version=account.token_version)


@pytest.fixture
def lifecycle(store):
    return AccountLifecycle(store)


class TestRoles:
    def test_hierarchy(self):
        assert Role.MANAGER.at_least(Role.ADMIN)
        assert Role.ADMIN.at_least(Role.USER)
        assert Role.ADMIN.at_least(Role.ADMIN)
        assert not Role.USER.at_least(Role.ADMIN)
        assert not Role.ADMIN.at_least(Role.MANAGER)

    def test_can_manage_requires_strictly_higher_rank(self):
        user = Account.new("u@example.com", "h", role=Role.USER)
        admin = Account.new("a@example.com", "h", role=Role.ADMIN)
        other_admin = Account.new("b@example.com", "h", role=Role.ADMIN)
        manager = Account.new("m@example.com", "h", role=Role.MANAGER)

        assert can_manage(admin, user)
        assert can_manage(manager, admin)
        assert not can_manage(admin, other_admin)
        assert not can_manage(user, admin)
        assert not can_manage(manager, manager)


class TestMemoryStore:
    """Durable store contract against the in-memory backend."""

    def test_email_is_normalized_and_unique(self, store):
        store.create_account(" Person@Example.COM ", "h")

        assert store.get_account_by_email("person@example.com").email == "person@example.com"
        with pytest.raises(ConstraintViolation):
            store.create_account("person@example.com", "h")

    def test_deleted_email_can_be_reused(self, store):
        first = store.create_account("p@example.com", "h", status=AccountStatus.ACTIVE)
        store.update_status(
            first.id, AccountStatus.DELETED, expected=[AccountStatus.ACTIVE], bump_token_version=True
        )

        second = store.create_account("p@example.com", "h2")

        assert second.id != first.id
        assert store.get_account_by_email("p@example.com").id == second.id
        assert store.get_account_by_email("p@example.com", include_deleted=True).id == second.id

    def test_include_deleted_finds_tombstone(self, store):
        account = store.create_account("p@example.com", "h", status=AccountStatus.ACTIVE)
        store.update_status(account.id, AccountStatus.DELETED, expected=[AccountStatus.ACTIVE])

        assert store.get_account_by_email("p@example.com") is None
        tombstone = store.get_account_by_email("p@example.com", include_deleted=True)
        assert tombstone.status == AccountStatus.DELETED
        assert tombstone.deleted_at is not None

    def test_conditional_status_update(self, store):
        account = store.create_account("p@example.com", "h")

        assert store.update_status(
            account.id, AccountStatus.BLOCKED, expected=[AccountStatus.ACTIVE]
        ) is None
        updated = store.update_status(
            account.id, AccountStatus.ACTIVE, expected=[AccountStatus.PENDING_VERIFICATION]
        )
        assert updated.status == AccountStatus.ACTIVE
        assert updated.token_version == 0

    def test_returned_accounts_are_copies(self, store):
        account = store.create_account("p@example.com", "h")
        account.role = Role.MANAGER

        assert store.get_account(account.id).role == Role.USER

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account("p@example.com", "h", role=Role.ADMIN)
        store.update_password(account.id, "h2")

        reloaded = MemoryStore(fs_root=str(tmp_path)).get_account(account.id)

        assert reloaded.role == Role.ADMIN
        assert reloaded.password_hash == "h2"
        assert reloaded.token_version == 1
        assert reloaded.created_at == account.created_at

    def test_list_accounts_filters_role_and_deleted(self, store):
        store.create_account("u@example.com", "h")
        admin = store.create_account("a@example.com", "h", role=Role.ADMIN)
        gone = store.create_account("g@example.com", "h", role=Role.ADMIN)
        store.update_status(gone.id, AccountStatus.DELETED, expected=[AccountStatus.PENDING_VERIFICATION])

        assert [a.id for a in store.list_accounts(role=Role.ADMIN)] == [admin.id]
        assert len(store.list_accounts()) == 2


class TestLifecycle:
    """State machine transitions."""

    def test_activate_then_block_and_unblock(self, lifecycle):
        account = lifecycle.create_pending("p@example.com", "h")

        active = lifecycle.activate(account.id)
        blocked = lifecycle.block(account.id)
        unblocked = lifecycle.unblock(account.id)

        assert active.status == AccountStatus.ACTIVE
        assert blocked.status == AccountStatus.BLOCKED
        assert unblocked.status == AccountStatus.ACTIVE
        assert (active.token_version, blocked.token_version, unblocked.token_version) == (0, 1, 2)

    def test_invalid_transition_is_conflict(self, lifecycle):
        account = lifecycle.create_pending("p@example.com", "h")

        with pytest.raises(ConflictError) as exc_info:
            lifecycle.block(account.id)
        assert exc_info.value.detail == {"status": "pending_verification", "requested": "blocked"}

    def test_deleted_is_terminal(self, lifecycle):
        account = lifecycle.create_pending("p@example.com", "h")
        lifecycle.soft_delete(account.id)

        with pytest.raises(ConflictError):
            lifecycle.activate(account.id)
        with pytest.raises(ConflictError):
            lifecycle.soft_delete(account.id)
        with pytest.raises(NotFoundError):
            lifecycle.get(account.id)
        with pytest.raises(NotFoundError):
            lifecycle.set_role(account.id, Role.ADMIN)

    def test_unknown_account(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.activate("missing")

    def test_duplicate_email_is_conflict(self, lifecycle):
        lifecycle.create_pending("p@example.com", "h")
        with pytest.raises(ConflictError):
            lifecycle.create_pending("P@example.com", "h")

    def test_role_and_password_changes_bump_version(self, lifecycle):
        account = lifecycle.create_pending("p@example.com", "h")

        promoted = lifecycle.set_role(account.id, Role.ADMIN)
        rehashed = lifecycle.set_password(account.id, "h2", bump_token_version=False)
        changed = lifecycle.set_password(account.id, "h3")

        assert promoted.token_version == 1
        assert rehashed.token_version == 1
        assert changed.token_version == 2


class TestAuthorize:
    """Guard over a verified access-token context."""

    def _active(self, store, role=Role.USER, email="p@example.com"):
        return store.create_account(email, "h", role=role, status=AccountStatus.ACTIVE)

    def test_current_token_passes(self, store, lifecycle):
        account = self._active(store)
        assert lifecycle.authorize(_context(account)).id == account.id

    @pytest.mark.parametrize(
        "status, error",
        [
            (AccountStatus.PENDING_VERIFICATION, AccountNotVerifiedError),
            (AccountStatus.BLOCKED, AccountBlockedError),
            (AccountStatus.DELETED, ForbiddenError),
        ],
    )
    def test_status_errors(self, store, lifecycle, status, error):
        account = store.create_account("p@example.com", "h", status=status)

        with pytest.raises(error):
            lifecycle.authorize(_context(account))
        with pytest.raises(error):
            ensure_usable(account)

    def test_stale_token_version(self, store, lifecycle):
        account = self._active(store)
        context = _context(account)
        lifecycle.set_role(account.id, Role.ADMIN)

        with pytest.raises(StaleTokenError):
            lifecycle.authorize(context)

    def test_vanished_account(self, lifecycle):
        with pytest.raises(ForbiddenError):
            lifecycle.authorize(AuthContext(account_id="gone", role=Role.USER, token_version=0))

    def test_hierarchy_check(self, store, lifecycle):
        admin = self._active(store, Role.ADMIN, "a@example.com")
        manager = self._active(store, Role.MANAGER, "m@example.com")
        user = self._active(store, Role.USER, "u@example.com")

        assert lifecycle.authorize(_context(admin), required_role=Role.ADMIN)
        assert lifecycle.authorize(_context(manager), required_role=Role.ADMIN)
        with pytest.raises(ForbiddenError) as exc_info:
            lifecycle.authorize(_context(user), required_role=Role.ADMIN)
        assert exc_info.value.detail == {"required_role": "admin"}

    def test_exclusive_role_set(self, store, lifecycle):
        admin = self._active(store, Role.ADMIN, "a@example.com")
        manager = self._active(store, Role.MANAGER, "m@example.com")

        assert lifecycle.authorize(_context(manager), allowed_roles={Role.MANAGER})
        with pytest.raises(ForbiddenError):
            lifecycle.authorize(_context(admin), allowed_roles={Role.MANAGER})

    def test_role_change_rules(self, store, lifecycle):
        admin = self._active(store, Role.ADMIN, "a@example.com")
        manager = self._active(store, Role.MANAGER, "m@example.com")
        user = self._active(store, Role.USER, "u@example.com")

        lifecycle.ensure_can_change_role(manager, user)
        with pytest.raises(ForbiddenError):
            lifecycle.ensure_can_change_role(admin, user)
        with pytest.raises(ForbiddenError):
            lifecycle.ensure_can_change_role(manager, manager)
