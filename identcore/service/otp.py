from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from identcore.config import Settings
from identcore.logging import get_logger
from identcore.service.crypto import codes_match, generate_otp_code, hash_otp_code
from identcore.service.errors import (
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNotFoundError,
)
from identcore.storage.common import EphemeralStore
from identcore.storage.models import OtpPurpose, OtpRecord

logger = get_logger(__name__)


@dataclass
class OtpIssue:
    reference: str
    code: str
    expires_at: datetime


class OtpEngine:
    """Issues and verifies one-time codes bound to (account, purpose).

    Only the keyed hash of a code is stored. Verification decrements the
    attempts counter atomically before comparing, and a match is consumed with
    a conditional delete on the record reference so that concurrent correct
    submissions produce exactly one success.
    """

    # Records outlive their expiry so a late submission reads as expired, not absent
    EXPIRED_RETENTION_SECONDS = 300

    def __init__(
        self,
        cache: EphemeralStore,
        *,
        key: str,
        ttl_minutes: int = 10,
        max_attempts: int = 5,
        code_length: int = 6,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self._key = key
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_attempts = max_attempts
        self.code_length = code_length
        self.clock = clock

    @classmethod
    def from_settings(
        cls, cache: EphemeralStore, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "OtpEngine":
        return cls(
            cache,
            key=settings.otp_secret or settings.jwt_secret,
            ttl_minutes=settings.otp_ttl_minutes,
            max_attempts=settings.otp_max_attempts,
            code_length=settings.otp_code_length,
            clock=clock,
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    def _hash(self, account_id: str, purpose: OtpPurpose, code: str) -> str:
        return hash_otp_code(account_id, purpose.value, code, key=self._key)

    async def issue(self, account_id: str, purpose: OtpPurpose) -> OtpIssue:
        code = generate_otp_code(self.code_length)
        now = self._now()
        record = OtpRecord(
            account_id=account_id,
            purpose=purpose,
            code_hash=self._hash(account_id, purpose, code),
            expires_at=now + self.ttl,
            attempts_remaining=self.max_attempts,
            created_at=now,
        )
        ttl_seconds = int(self.ttl.total_seconds()) + self.EXPIRED_RETENTION_SECONDS
        await self.cache.put_otp(record, ttl_seconds)
        logger.info("otp_issued", account_id=account_id, purpose=purpose.value)
        return OtpIssue(reference=record.reference, code=code, expires_at=record.expires_at)

    async def verify(self, account_id: str, purpose: OtpPurpose, submitted_code: str) -> OtpRecord:
        attempt = await self.cache.decrement_otp_attempts(account_id, purpose)
        if attempt is None:
            raise OtpNotFoundError("no active code")
        record = attempt.record
        if record.expires_at <= self._now():
            await self.cache.consume_otp(account_id, purpose, record.reference)
            raise OtpExpiredError("code has expired")

        if codes_match(record.code_hash, self._hash(account_id, purpose, submitted_code or "")):
            if not await self.cache.consume_otp(account_id, purpose, record.reference):
                # A concurrent submission consumed it first
                raise OtpNotFoundError("no active code")
            logger.info("otp_verified", account_id=account_id, purpose=purpose.value)
            return record

        if attempt.attempts_remaining <= 0:
            await self.cache.consume_otp(account_id, purpose, record.reference)
            logger.warning(
                "otp_attempts_exhausted", account_id=account_id, purpose=purpose.value
            )
            raise OtpAttemptsExceededError("too many incorrect codes")
        logger.info(
            "otp_mismatch",
            account_id=account_id,
            purpose=purpose.value,
            attempts_remaining=attempt.attempts_remaining,
        )
        raise OtpMismatchError(attempts_remaining=attempt.attempts_remaining)

    async def invalidate(self, account_id: str, purpose: OtpPurpose) -> None:
        await self.cache.delete_otp(account_id, purpose)
