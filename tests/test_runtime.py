import sys
from pathlib import Path

import pytest

from conftest import PASSWORD
from identcore.service.errors import ConflictError, ValidationError
from identcore.service.runtime import _mask_url_password, reset_runtime_for_tests
from identcore.storage.memory import MemoryStore
from identcore.storage.memory_cache import MemoryCache
from identcore.storage.models import AccountStatus, Role

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from bootstrap_manager import bootstrap_manager  # noqa: E402


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    return reset_runtime_for_tests()


def test_test_mode_runtime_uses_in_process_backends(runtime):
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.auth.store is runtime.store
    assert not runtime.email_service.is_configured


def test_runtime_refuses_reset_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    try:
        with pytest.raises(RuntimeError):
            reset_runtime_for_tests()
    finally:
        monkeypatch.setenv("TEST_MODE", "true")
        reset_runtime_for_tests()


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("postgresql://app:pw@db/identcore") == "postgresql://app:***@db/identcore"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) is None


async def test_runtime_shutdown(runtime):
    await runtime.auth.register("a@example.com", PASSWORD)
    await runtime.shutdown()

    assert await runtime.cache.list_families("anyone") == []


class TestBootstrapManager:
    def test_creates_active_manager(self, runtime):
        result = bootstrap_manager(runtime, "Ops@Example.com", PASSWORD)

        account = runtime.store.get_account(result["account_id"])
        assert result["status"] == "created"
        assert account.email == "ops@example.com"
        assert account.role == Role.MANAGER
        assert account.status == AccountStatus.ACTIVE

    def test_is_idempotent(self, runtime):
        bootstrap_manager(runtime, "ops@example.com", PASSWORD)
        assert bootstrap_manager(runtime, "ops@example.com", PASSWORD)["status"] == "already_manager"

    def test_promotes_pending_account(self, runtime):
        pending = runtime.auth.accounts.create_pending("ops@example.com", "h")

        result = bootstrap_manager(runtime, "ops@example.com", PASSWORD)

        account = runtime.store.get_account(pending.id)
        assert result["status"] == "promoted"
        assert (account.role, account.status) == (Role.MANAGER, AccountStatus.ACTIVE)

    def test_promoted_account_takes_the_supplied_password(self, runtime):
        hashing = runtime.auth.passwords
        pending = runtime.auth.accounts.create_pending(
            "ops@example.com", hashing.hash_password("registered by someone else")
        )

        bootstrap_manager(runtime, "ops@example.com", PASSWORD)

        account = runtime.store.get_account(pending.id)
        assert hashing.verify_password(PASSWORD, account.password_hash)
        assert not hashing.verify_password("registered by someone else", account.password_hash)

    def test_existing_manager_requires_matching_password(self, runtime):
        bootstrap_manager(runtime, "ops@example.com", PASSWORD)

        with pytest.raises(ConflictError):
            bootstrap_manager(runtime, "ops@example.com", "some other passphrase")

    def test_dry_run_changes_nothing(self, runtime):
        result = bootstrap_manager(runtime, "ops@example.com", PASSWORD, dry_run=True)

        assert result["status"] == "dry_run"
        assert runtime.store.get_account_by_email("ops@example.com") is None

    def test_blocked_account_is_not_promoted(self, runtime):
        account = runtime.store.create_account(
            "ops@example.com", "h", status=AccountStatus.BLOCKED
        )

        with pytest.raises(ConflictError):
            bootstrap_manager(runtime, "ops@example.com", PASSWORD)
        assert runtime.store.get_account(account.id).role == Role.USER

    def test_rejects_weak_password(self, runtime):
        with pytest.raises(ValidationError):
            bootstrap_manager(runtime, "ops@example.com", "short")
