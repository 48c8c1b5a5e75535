from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from identcore.logging import get_logger
from identcore.storage.common import account_from_row, normalize_email
from identcore.storage.errors import ConstraintViolation
from identcore.storage.models import Account, AccountStatus, Role, utcnow


class MemoryStore:
    """In-memory account store for tests and single-node development.

    When ``fs_root`` is given the accounts are mirrored to a JSON state file so a
    dev server keeps its users across restarts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Optional[Path]:
        if not self.fs_root:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        path = self._state_path()
        if not path:
            return
        payload = [
            {
                "id": acct.id,
                "email": acct.email,
                "password_hash": acct.password_hash,
                "role": acct.role.value,
                "status": acct.status.value,
                "token_version": acct.token_version,
                "created_at": self._serialize_datetime(acct.created_at),
                "updated_at": self._serialize_datetime(acct.updated_at),
                "deleted_at": self._serialize_datetime(acct.deleted_at),
            }
            for acct in self.accounts.values()
        ]
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps({"accounts": payload}))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path or not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_state_load_failed", error=str(exc), path=str(path))
            return False
        for row in data.get("accounts", []):
            row = dict(row)
            for key in ("created_at", "updated_at", "deleted_at"):
                row[key] = self._deserialize_datetime(row.get(key))
            acct = account_from_row(row)
            self.accounts[acct.id] = acct
        return True

    def _live_by_email(self, email: str) -> Optional[Account]:
        return next(
            (
                a
                for a in self.accounts.values()
                if a.email == email and a.status != AccountStatus.DELETED
            ),
            None,
        )

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if self._live_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(normalized, password_hash, role=role, status=status)
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            live = self._live_by_email(normalized)
            if live or not include_deleted:
                return replace(live) if live else None
            deleted = [
                a for a in self.accounts.values() if a.email == normalized
            ]
            if not deleted:
                return None
            latest = max(deleted, key=lambda a: a.deleted_at or a.updated_at)
            return replace(latest)

    def _mutate(self, account_id: str, **changes) -> Optional[Account]:
        account = self.accounts.get(account_id)
        if not account:
            return None
        for key, value in changes.items():
            setattr(account, key, value)
        account.updated_at = utcnow()
        self._persist_state()
        return replace(account)

    def update_status(
        self,
        account_id: str,
        new_status: AccountStatus,
        *,
        expected: Iterable[AccountStatus],
        bump_token_version: bool = False,
    ) -> Optional[Account]:
        expected_set = set(expected)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.status not in expected_set:
                return None
            changes: dict = {"status": new_status}
            if bump_token_version:
                changes["token_version"] = account.token_version + 1
            if new_status == AccountStatus.DELETED:
                changes["deleted_at"] = utcnow()
            return self._mutate(account_id, **changes)

    def update_role(
        self, account_id: str, role: Role, *, bump_token_version: bool = True
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.is_deleted:
                return None
            changes: dict = {"role": role}
            if bump_token_version:
                changes["token_version"] = account.token_version + 1
            return self._mutate(account_id, **changes)

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.is_deleted:
                return None
            changes: dict = {"password_hash": password_hash}
            if bump_token_version:
                changes["token_version"] = account.token_version + 1
            return self._mutate(account_id, **changes)

    def list_accounts(
        self, *, role: Optional[Role] = None, limit: int = 100
    ) -> List[Account]:
        with self._data_lock:
            results = [
                replace(a)
                for a in self.accounts.values()
                if not a.is_deleted and (role is None or a.role == role)
            ]
            return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]
