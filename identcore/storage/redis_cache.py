from __future__ import annotations

import hashlib
import math
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis import exceptions as redis_errors

from identcore.logging import get_logger
from identcore.storage.errors import StoreUnavailable
from identcore.storage.models import (
    OtpAttempt,
    OtpPurpose,
    OtpRecord,
    RefreshSession,
    RotationOutcome,
    RotationResult,
    WindowCount,
)


class RedisCache:
    """Redis-backed ephemeral store for OTP records, rate windows and refresh families.

    Every state change that a caller would otherwise do as read-then-write is a
    single Lua script. Refresh family keys share a ``{family_id}`` hash tag so
    the rotation script touches one cluster slot.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: first hit in a window arms the expiry, later hits only count
    _WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    # Decrement before compare; a record driven below zero is dropped
    _OTP_DECREMENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return false
end
local remaining = redis.call('HINCRBY', KEYS[1], 'attempts', -1)
if remaining < 0 then
  redis.call('DEL', KEYS[1])
  return false
end
return redis.call('HGETALL', KEYS[1])
"""

    _OTP_CONSUME_SCRIPT = """
if redis.call('HGET', KEYS[1], 'reference') == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    # KEYS: family, presented session, new session, family session set
    # ARGV: sid, seq, now, grace, new_sid, new_seq, ttl, field/value pairs...
    _ROTATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return {'missing'}
end
local fam = redis.call('HMGET', KEYS[1], 'revoked', 'current', 'seq', 'rotated_at')
if fam[1] == '1' then
  return {'revoked'}
end
local now = tonumber(ARGV[3])
local presented = tonumber(ARGV[2])
local current_seq = tonumber(fam[3])
if presented == current_seq and fam[2] == ARGV[1] then
  local old_expiry = redis.call('HGET', KEYS[2], 'expires_at')
  if not old_expiry then
    return {'missing'}
  end
  if tonumber(old_expiry) <= now then
    return {'expired'}
  end
  local ttl = tonumber(ARGV[7])
  redis.call('HSET', KEYS[2], 'replaced_by', ARGV[5])
  for i = 8, #ARGV, 2 do
    redis.call('HSET', KEYS[3], ARGV[i], ARGV[i + 1])
  end
  redis.call('HSET', KEYS[1], 'current', ARGV[5], 'seq', ARGV[6], 'rotated_at', ARGV[3])
  redis.call('SADD', KEYS[4], ARGV[5])
  redis.call('EXPIRE', KEYS[1], ttl)
  redis.call('EXPIRE', KEYS[2], ttl)
  redis.call('EXPIRE', KEYS[3], ttl)
  redis.call('EXPIRE', KEYS[4], ttl)
  return {'rotated'}
end
local grace = tonumber(ARGV[4])
if grace > 0 and presented == current_seq - 1 then
  local replaced = redis.call('HGET', KEYS[2], 'replaced_by')
  local rotated_at = tonumber(fam[4] or '0')
  if replaced == fam[2] and (now - rotated_at) <= grace then
    return {'raced', fam[2]}
  end
end
redis.call('HSET', KEYS[1], 'revoked', '1')
return {'reused'}
"""

    _REVOKE_FAMILY_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
if redis.call('HGET', KEYS[1], 'revoked') == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked', '1')
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime starts serving."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (redis_errors.ConnectionError, redis_errors.TimeoutError) as exc:
            self.logger.error("redis_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", operation, exc) from exc

    @staticmethod
    def _otp_key(account_id: str, purpose: OtpPurpose) -> str:
        return f"auth:otp:{account_id}:{purpose.value}"

    @staticmethod
    def _rate_key(key: str) -> str:
        # Hash the subject so emails or addresses cannot inject delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _family_key(family_id: str) -> str:
        return f"auth:rs:{{{family_id}}}:family"

    @staticmethod
    def _session_key(family_id: str, session_id: str) -> str:
        return f"auth:rs:{{{family_id}}}:session:{session_id}"

    @staticmethod
    def _family_sessions_key(family_id: str) -> str:
        return f"auth:rs:{{{family_id}}}:sessions"

    @staticmethod
    def _account_families_key(account_id: str) -> str:
        return f"auth:account_families:{account_id}"

    @staticmethod
    def _ttl_until(expires_at: datetime, now: Optional[datetime] = None) -> int:
        reference = now.timestamp() if now else datetime.now(expires_at.tzinfo).timestamp()
        return max(1, int(math.ceil(expires_at.timestamp() - reference)))

    @staticmethod
    def _pairs_to_dict(raw) -> dict:
        if isinstance(raw, dict):
            return raw
        return {raw[i]: raw[i + 1] for i in range(0, len(raw), 2)}

    # one-time codes

    async def put_otp(self, record: OtpRecord, ttl_seconds: int) -> None:
        key = self._otp_key(record.account_id, record.purpose)
        with self._guard("put_otp"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=record.to_mapping())
            pipe.expire(key, max(1, int(ttl_seconds)))
            await pipe.execute()

    async def get_otp(self, account_id: str, purpose: OtpPurpose) -> Optional[OtpRecord]:
        with self._guard("get_otp"):
            raw = await self.client.hgetall(self._otp_key(account_id, purpose))
        if not raw:
            return None
        return OtpRecord.from_mapping(raw)

    async def decrement_otp_attempts(
        self, account_id: str, purpose: OtpPurpose
    ) -> Optional[OtpAttempt]:
        with self._guard("decrement_otp_attempts"):
            raw = await self.client.eval(
                self._OTP_DECREMENT_SCRIPT, 1, self._otp_key(account_id, purpose)
            )
        if not raw:
            return None
        record = OtpRecord.from_mapping(self._pairs_to_dict(raw))
        return OtpAttempt(record=record, attempts_remaining=record.attempts_remaining)

    async def consume_otp(
        self, account_id: str, purpose: OtpPurpose, reference: str
    ) -> bool:
        with self._guard("consume_otp"):
            result = await self.client.eval(
                self._OTP_CONSUME_SCRIPT, 1, self._otp_key(account_id, purpose), reference
            )
        return bool(int(result))

    async def delete_otp(self, account_id: str, purpose: OtpPurpose) -> None:
        with self._guard("delete_otp"):
            await self.client.delete(self._otp_key(account_id, purpose))

    # rate limiting

    async def hit_window(self, key: str, window_seconds: int) -> WindowCount:
        with self._guard("hit_window"):
            count, ttl_ms = await self.client.eval(
                self._WINDOW_SCRIPT, 1, self._rate_key(key), int(window_seconds * 1000)
            )
        return WindowCount(count=int(count), reset_after=max(1, math.ceil(int(ttl_ms) / 1000)))

    # refresh families

    async def create_refresh_session(self, session: RefreshSession) -> None:
        ttl = self._ttl_until(session.expires_at, session.issued_at)
        family_key = self._family_key(session.family_id)
        sessions_key = self._family_sessions_key(session.family_id)
        session_key = self._session_key(session.family_id, session.session_id)
        account_key = self._account_families_key(session.account_id)
        with self._guard("create_refresh_session"):
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(
                family_key,
                mapping={
                    "account_id": session.account_id,
                    "current": session.session_id,
                    "seq": str(session.sequence),
                    "revoked": "0",
                    "rotated_at": str(session.issued_at.timestamp()),
                },
            )
            pipe.hset(session_key, mapping=session.to_mapping())
            pipe.sadd(sessions_key, session.session_id)
            pipe.expire(family_key, ttl)
            pipe.expire(session_key, ttl)
            pipe.expire(sessions_key, ttl)
            await pipe.execute()
            # The account index lives in another slot; it is only a lookup aid
            pipe = self.client.pipeline()
            pipe.sadd(account_key, session.family_id)
            pipe.expire(account_key, ttl, gt=True)
            pipe.expire(account_key, ttl, nx=True)
            await pipe.execute()

    async def _load_session(self, family_id: str, session_id: str) -> Optional[RefreshSession]:
        pipe = self.client.pipeline()
        pipe.hget(self._family_key(family_id), "revoked")
        pipe.hgetall(self._session_key(family_id, session_id))
        family_revoked, raw = await pipe.execute()
        if not raw:
            return None
        session = RefreshSession.from_mapping(raw)
        if family_revoked == "1":
            session.revoked = True
        return session

    async def get_refresh_session(
        self, family_id: str, session_id: str
    ) -> Optional[RefreshSession]:
        with self._guard("get_refresh_session"):
            return await self._load_session(family_id, session_id)

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
        mapping = new_session.to_mapping()
        flat: List[str] = []
        for field_name, value in mapping.items():
            flat.extend([field_name, value])
        with self._guard("rotate_refresh_session"):
            result = await self.client.eval(
                self._ROTATE_SCRIPT,
                4,
                self._family_key(family_id),
                self._session_key(family_id, session_id),
                self._session_key(family_id, new_session.session_id),
                self._family_sessions_key(family_id),
                session_id,
                str(sequence),
                str(now.timestamp()),
                str(max(0, int(grace_seconds))),
                new_session.session_id,
                str(new_session.sequence),
                str(self._ttl_until(new_session.expires_at, now)),
                *flat,
            )
            outcome = RotationOutcome(result[0])
            if outcome == RotationOutcome.ROTATED:
                return RotationResult(outcome, new_session)
            if outcome == RotationOutcome.RACED:
                current = await self._load_session(family_id, result[1])
                return RotationResult(outcome, current)
        return RotationResult(outcome)

    async def revoke_family(self, family_id: str) -> bool:
        with self._guard("revoke_family"):
            result = await self.client.eval(
                self._REVOKE_FAMILY_SCRIPT, 1, self._family_key(family_id)
            )
        return bool(int(result))

    async def list_families(self, account_id: str) -> List[str]:
        with self._guard("list_families"):
            members = await self.client.smembers(self._account_families_key(account_id))
        return sorted(members or [])

    async def current_session(self, family_id: str) -> Optional[RefreshSession]:
        """Current session of a live family, or None when revoked or gone."""
        with self._guard("current_session"):
            family = await self.client.hgetall(self._family_key(family_id))
            if not family or family.get("revoked") == "1":
                return None
            raw = await self.client.hgetall(self._session_key(family_id, family["current"]))
        if not raw:
            return None
        return RefreshSession.from_mapping(raw)

    async def close(self) -> None:
        """Close the connection pool; called on runtime shutdown or reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
