"""Storage contracts shared between the memory, Postgres and Redis backends.

The durable ``AccountStore`` holds the Account aggregate. The ephemeral
``EphemeralStore`` holds everything with its own time-to-live (OTP records,
rate-limit windows, refresh-session families) and exposes each multi-step
state change as one atomic call so no caller ever performs read-then-write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Protocol

from identcore.storage.models import (
    Account,
    AccountStatus,
    OtpAttempt,
    OtpPurpose,
    OtpRecord,
    RefreshSession,
    Role,
    RotationResult,
    WindowCount,
)


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness and lookups."""
    return email.strip().lower()


def account_from_row(row: Mapping[str, Any]) -> Account:
    """Build an Account from a dict-like row (Postgres dict_row or JSON state)."""
    return Account(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        role=Role(row.get("role", Role.USER.value)),
        status=AccountStatus(row.get("status", AccountStatus.PENDING_VERIFICATION.value)),
        token_version=int(row.get("token_version", 0)),
        created_at=row["created_at"],
        updated_at=row.get("updated_at") or row["created_at"],
        deleted_at=row.get("deleted_at"),
    )


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Account]: ...

    def update_status(
        self,
        account_id: str,
        new_status: AccountStatus,
        *,
        expected: Iterable[AccountStatus],
        bump_token_version: bool = False,
    ) -> Optional[Account]: ...

    def update_role(
        self, account_id: str, role: Role, *, bump_token_version: bool = True
    ) -> Optional[Account]: ...

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Optional[Account]: ...

    def list_accounts(
        self, *, role: Optional[Role] = None, limit: int = 100
    ) -> List[Account]: ...


class EphemeralStore(Protocol):
    # one-time codes
    async def put_otp(self, record: OtpRecord, ttl_seconds: int) -> None: ...

    async def get_otp(self, account_id: str, purpose: OtpPurpose) -> Optional[OtpRecord]: ...

    async def decrement_otp_attempts(
        self, account_id: str, purpose: OtpPurpose
    ) -> Optional[OtpAttempt]: ...

    async def consume_otp(
        self, account_id: str, purpose: OtpPurpose, reference: str
    ) -> bool: ...

    async def delete_otp(self, account_id: str, purpose: OtpPurpose) -> None: ...

    # rate limiting
    async def hit_window(self, key: str, window_seconds: int) -> WindowCount: ...

    # refresh families
    async def create_refresh_session(self, session: RefreshSession) -> None: ...

    async def get_refresh_session(
        self, family_id: str, session_id: str
    ) -> Optional[RefreshSession]: ...

    async def rotate_refresh_session(
        self,
        family_id: str,
        session_id: str,
        sequence: int,
        new_session: RefreshSession,
        *,
        now: datetime,
        grace_seconds: int,
    ) -> RotationResult: ...

    async def revoke_family(self, family_id: str) -> bool: ...

    async def list_families(self, account_id: str) -> List[str]: ...

    async def current_session(self, family_id: str) -> Optional[RefreshSession]: ...

    async def close(self) -> None: ...
