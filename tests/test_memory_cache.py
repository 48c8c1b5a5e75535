"""Tests for the in-process ephemeral store primitives."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

from identcore.storage.memory_cache import MemoryCache
from identcore.storage.models import OtpPurpose, OtpRecord, RefreshSession, RotationOutcome


def _record(clock, attempts=3, account_id="acct"):
    return OtpRecord(
        account_id=account_id,
        purpose=OtpPurpose.REGISTRATION,
        code_hash="hash",
        expires_at=datetime.fromtimestamp(clock() + 600, timezone.utc),
        attempts_remaining=attempts,
    )


def _session(clock, family_id="fam", session_id="s0", sequence=0, ttl=3600):
    now = datetime.fromtimestamp(clock(), timezone.utc)
    return RefreshSession(
        session_id=session_id,
        account_id="acct",
        family_id=family_id,
        sequence=sequence,
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )


def _now(clock):
    return datetime.fromtimestamp(clock(), timezone.utc)


class TestOtpPrimitives:
    async def test_decrement_until_gone(self, cache, clock):
        await cache.put_otp(_record(clock, attempts=2), 900)

        first = await cache.decrement_otp_attempts("acct", OtpPurpose.REGISTRATION)
        second = await cache.decrement_otp_attempts("acct", OtpPurpose.REGISTRATION)
        third = await cache.decrement_otp_attempts("acct", OtpPurpose.REGISTRATION)

        assert (first.attempts_remaining, second.attempts_remaining) == (1, 0)
        assert third is None
        assert await cache.get_otp("acct", OtpPurpose.REGISTRATION) is None

    async def test_consume_requires_matching_reference(self, cache, clock):
        record = _record(clock)
        await cache.put_otp(record, 900)

        assert not await cache.consume_otp("acct", OtpPurpose.REGISTRATION, "other")
        assert await cache.consume_otp("acct", OtpPurpose.REGISTRATION, record.reference)
        assert not await cache.consume_otp("acct", OtpPurpose.REGISTRATION, record.reference)

    async def test_record_evicted_after_ttl(self, cache, clock):
        await cache.put_otp(_record(clock), 900)
        clock.advance(901)

        assert await cache.get_otp("acct", OtpPurpose.REGISTRATION) is None

    def test_decrement_is_atomic_across_threads(self, clock):
        cache = MemoryCache(clock=clock)
        asyncio.run(cache.put_otp(_record(clock, attempts=50), 900))
        results = []

        def worker():
            results.append(asyncio.run(cache.decrement_otp_attempts("acct", OtpPurpose.REGISTRATION)))

        threads = [threading.Thread(target=worker) for _ in range(60)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        remaining = sorted(r.attempts_remaining for r in results if r is not None)
        assert remaining == list(range(50))
        assert sum(1 for r in results if r is None) == 10


class TestWindows:
    async def test_fixed_window(self, cache, clock):
        assert (await cache.hit_window("k", 60)).count == 1
        clock.advance(30)
        hit = await cache.hit_window("k", 60)
        assert (hit.count, hit.reset_after) == (2, 30)

        clock.advance(30)
        assert (await cache.hit_window("k", 60)).count == 1


class TestRefreshFamilies:
    async def test_rotation_outcomes(self, cache, clock):
        await cache.create_refresh_session(_session(clock))
        now = _now(clock)

        rotated = await cache.rotate_refresh_session(
            "fam", "s0", 0, _session(clock, session_id="s1", sequence=1), now=now, grace_seconds=0
        )
        reused = await cache.rotate_refresh_session(
            "fam", "s0", 0, _session(clock, session_id="s2", sequence=1), now=now, grace_seconds=0
        )
        revoked = await cache.rotate_refresh_session(
            "fam", "s1", 1, _session(clock, session_id="s3", sequence=2), now=now, grace_seconds=0
        )
        missing = await cache.rotate_refresh_session(
            "nope", "s0", 0, _session(clock, family_id="nope", session_id="s4", sequence=1),
            now=now, grace_seconds=0,
        )

        assert rotated.outcome == RotationOutcome.ROTATED
        assert reused.outcome == RotationOutcome.REUSED
        assert revoked.outcome == RotationOutcome.REVOKED
        assert missing.outcome == RotationOutcome.MISSING
        assert (await cache.get_refresh_session("fam", "s1")).revoked

    async def test_raced_within_grace(self, cache, clock):
        await cache.create_refresh_session(_session(clock))
        await cache.rotate_refresh_session(
            "fam", "s0", 0, _session(clock, session_id="s1", sequence=1),
            now=_now(clock), grace_seconds=5,
        )
        clock.advance(2)

        raced = await cache.rotate_refresh_session(
            "fam", "s0", 0, _session(clock, session_id="s2", sequence=1),
            now=_now(clock), grace_seconds=5,
        )

        assert raced.outcome == RotationOutcome.RACED
        assert raced.session.session_id == "s1"
        assert (await cache.current_session("fam")).session_id == "s1"

    async def test_family_tracking_and_expiry(self, cache, clock):
        await cache.create_refresh_session(_session(clock, family_id="a", ttl=100))
        await cache.create_refresh_session(_session(clock, family_id="b", ttl=1000))

        assert await cache.list_families("acct") == ["a", "b"]
        clock.advance(200)
        assert await cache.list_families("acct") == ["b"]
        assert await cache.current_session("a") is None

    async def test_close_clears_state(self, cache, clock):
        await cache.create_refresh_session(_session(clock))
        await cache.close()

        assert await cache.list_families("acct") == []
