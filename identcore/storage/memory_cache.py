from __future__ import annotations

import math
import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from identcore.storage.models import (
    OtpAttempt,
    OtpPurpose,
    OtpRecord,
    RefreshSession,
    RotationOutcome,
    RotationResult,
    WindowCount,
)


class _Family:
    __slots__ = ("account_id", "current", "sequence", "revoked", "rotated_at", "expires_at", "sessions")

    def __init__(self, session: RefreshSession, expires_at: float) -> None:
        self.account_id = session.account_id
        self.current = session.session_id
        self.sequence = session.sequence
        self.revoked = False
        self.rotated_at = session.issued_at.timestamp()
        self.expires_at = expires_at
        self.sessions: Dict[str, RefreshSession] = {session.session_id: replace(session)}


class MemoryCache:
    """In-process ephemeral store used in tests and single-node development.

    Mirrors the Redis scripts one to one: each public method runs under a single
    lock so the atomic primitives behave identically. ``clock`` returns epoch
    seconds and is injectable so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._lock = threading.Lock()
        self._otps: Dict[Tuple[str, OtpPurpose], Tuple[OtpRecord, float]] = {}
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._families: Dict[str, _Family] = {}
        self._account_families: Dict[str, Set[str]] = {}

    def _live_otp(self, key: Tuple[str, OtpPurpose]) -> Optional[OtpRecord]:
        entry = self._otps.get(key)
        if not entry:
            return None
        record, evict_at = entry
        if evict_at <= self.clock():
            self._otps.pop(key, None)
            return None
        return record

    def _live_family(self, family_id: str) -> Optional[_Family]:
        family = self._families.get(family_id)
        if family and family.expires_at <= self.clock():
            self._families.pop(family_id, None)
            return None
        return family

    def _copy_session(self, family: _Family, session_id: str) -> Optional[RefreshSession]:
        session = family.sessions.get(session_id)
        if not session:
            return None
        copied = replace(session)
        copied.revoked = session.revoked or family.revoked
        return copied

    # one-time codes

    async def put_otp(self, record: OtpRecord, ttl_seconds: int) -> None:
        with self._lock:
            self._otps[(record.account_id, record.purpose)] = (
                replace(record),
                self.clock() + max(1, int(ttl_seconds)),
            )

    async def get_otp(self, account_id: str, purpose: OtpPurpose) -> Optional[OtpRecord]:
        with self._lock:
            record = self._live_otp((account_id, purpose))
            return replace(record) if record else None

    async def decrement_otp_attempts(
        self, account_id: str, purpose: OtpPurpose
    ) -> Optional[OtpAttempt]:
        key = (account_id, purpose)
        with self._lock:
            record = self._live_otp(key)
            if not record:
                return None
            record.attempts_remaining -= 1
            if record.attempts_remaining < 0:
                self._otps.pop(key, None)
                return None
            return OtpAttempt(record=replace(record), attempts_remaining=record.attempts_remaining)

    async def consume_otp(
        self, account_id: str, purpose: OtpPurpose, reference: str
    ) -> bool:
        key = (account_id, purpose)
        with self._lock:
            record = self._live_otp(key)
            if not record or record.reference != reference:
                return False
            self._otps.pop(key, None)
            return True

    async def delete_otp(self, account_id: str, purpose: OtpPurpose) -> None:
        with self._lock:
            self._otps.pop((account_id, purpose), None)

    # rate limiting

    async def hit_window(self, key: str, window_seconds: int) -> WindowCount:
        now = self.clock()
        with self._lock:
            count, resets_at = self._windows.get(key, (0, 0.0))
            if resets_at <= now:
                count, resets_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, resets_at)
        return WindowCount(count=count, reset_after=max(1, math.ceil(resets_at - now)))

    # refresh families

    async def create_refresh_session(self, session: RefreshSession) -> None:
        with self._lock:
            self._families[session.family_id] = _Family(session, session.expires_at.timestamp())
            self._account_families.setdefault(session.account_id, set()).add(session.family_id)

    async def get_refresh_session(
        self, family_id: str, session_id: str
    ) -> Optional[RefreshSession]:
        with self._lock:
            family = self._live_family(family_id)
            if not family:
                return None
            return self._copy_session(family, session_id)

    async def rotate_refresh_session(
        self,
        family_id: str,
        session_id: str,
        sequence: int,
        new_session: RefreshSession,
        *,
        now: datetime,
        grace_seconds: int,
    ) -> RotationResult:
        now_ts = now.timestamp()
        with self._lock:
            family = self._live_family(family_id)
            if not family:
                return RotationResult(RotationOutcome.MISSING)
            if family.revoked:
                return RotationResult(RotationOutcome.REVOKED)
            presented = family.sessions.get(session_id)
            if sequence == family.sequence and family.current == session_id:
                if not presented:
                    return RotationResult(RotationOutcome.MISSING)
                if presented.expires_at.timestamp() <= now_ts:
                    return RotationResult(RotationOutcome.EXPIRED)
                presented.replaced_by = new_session.session_id
                family.sessions[new_session.session_id] = replace(new_session)
                family.current = new_session.session_id
                family.sequence = new_session.sequence
                family.rotated_at = now_ts
                family.expires_at = max(family.expires_at, new_session.expires_at.timestamp())
                return RotationResult(RotationOutcome.ROTATED, replace(new_session))
            if (
                grace_seconds > 0
                and sequence == family.sequence - 1
                and presented is not None
                and presented.replaced_by == family.current
                and now_ts - family.rotated_at <= grace_seconds
            ):
                return RotationResult(
                    RotationOutcome.RACED, self._copy_session(family, family.current)
                )
            family.revoked = True
            return RotationResult(RotationOutcome.REUSED)

    async def revoke_family(self, family_id: str) -> bool:
        with self._lock:
            family = self._live_family(family_id)
            if not family or family.revoked:
                return False
            family.revoked = True
            return True

    async def list_families(self, account_id: str) -> List[str]:
        with self._lock:
            family_ids = self._account_families.get(account_id, set())
            live = {fid for fid in family_ids if self._live_family(fid)}
            self._account_families[account_id] = live
            return sorted(live)

    async def current_session(self, family_id: str) -> Optional[RefreshSession]:
        with self._lock:
            family = self._live_family(family_id)
            if not family or family.revoked:
                return None
            return self._copy_session(family, family.current)

    async def close(self) -> None:
        with self._lock:
            self._otps.clear()
            self._windows.clear()
            self._families.clear()
            self._account_families.clear()
