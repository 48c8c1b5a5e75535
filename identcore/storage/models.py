from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Actor classes; the hierarchy is manager > admin > user."""

    USER = "user"
    ADMIN = "admin"
    MANAGER = "manager"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    def at_least(self, required: "Role") -> bool:
        return self.rank >= required.rank


ROLE_RANK: dict[Role, int] = {Role.USER: 0, Role.ADMIN: 1, Role.MANAGER: 2}


class AccountStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    BLOCKED = "blocked"
    DELETED = "deleted"


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: Role = Role.USER
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    token_version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            role=role,
            status=status,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.status == AccountStatus.DELETED


@dataclass
class OtpRecord:
    account_id: str
    purpose: OtpPurpose
    code_hash: str
    expires_at: datetime
    attempts_remaining: int
    reference: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def to_mapping(self) -> dict[str, str]:
        """Flat string mapping as stored in the ephemeral store."""
        return {
            "account_id": self.account_id,
            "purpose": self.purpose.value,
            "code_hash": self.code_hash,
            "expires_at": str(self.expires_at.timestamp()),
            "attempts": str(self.attempts_remaining),
            "reference": self.reference,
            "created_at": str(self.created_at.timestamp()),
        }

    @classmethod
    def from_mapping(cls, raw: dict) -> "OtpRecord":
        return cls(
            account_id=raw["account_id"],
            purpose=OtpPurpose(raw["purpose"]),
            code_hash=raw["code_hash"],
            expires_at=datetime.fromtimestamp(float(raw["expires_at"]), timezone.utc),
            attempts_remaining=int(raw["attempts"]),
            reference=raw["reference"],
            created_at=datetime.fromtimestamp(float(raw["created_at"]), timezone.utc),
        )


@dataclass
class RefreshSession:
    session_id: str
    account_id: str
    family_id: str
    sequence: int
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    replaced_by: Optional[str] = None
    device_id: Optional[str] = None

    @property
    def is_current(self) -> bool:
        return not self.revoked and self.replaced_by is None

    def to_mapping(self) -> dict[str, str]:
        return {
            "session_id": self.session_id,
            "account_id": self.account_id,
            "family_id": self.family_id,
            "sequence": str(self.sequence),
            "issued_at": str(self.issued_at.timestamp()),
            "expires_at": str(self.expires_at.timestamp()),
            "revoked": "1" if self.revoked else "0",
            "replaced_by": self.replaced_by or "",
            "device_id": self.device_id or "",
        }

    @classmethod
    def from_mapping(cls, raw: dict) -> "RefreshSession":
        return cls(
            session_id=raw["session_id"],
            account_id=raw["account_id"],
            family_id=raw["family_id"],
            sequence=int(raw["sequence"]),
            issued_at=datetime.fromtimestamp(float(raw["issued_at"]), timezone.utc),
            expires_at=datetime.fromtimestamp(float(raw["expires_at"]), timezone.utc),
            revoked=raw.get("revoked") == "1",
            replaced_by=raw.get("replaced_by") or None,
            device_id=raw.get("device_id") or None,
        )


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    RACED = "raced"
    REUSED = "reused"
    REVOKED = "revoked"
    EXPIRED = "expired"
    MISSING = "missing"


@dataclass
class RotationResult:
    """Outcome of a compare-and-swap on a refresh family's current pointer."""

    outcome: RotationOutcome
    session: Optional[RefreshSession] = None


@dataclass
class OtpAttempt:
    """Snapshot returned by the atomic decrement of an OTP record."""

    record: OtpRecord
    attempts_remaining: int


@dataclass
class WindowCount:
    count: int
    reset_after: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthContext:
    account_id: str
    role: Role
    token_version: int
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None
