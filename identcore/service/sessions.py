from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from identcore.logging import get_logger, log_security_event
from identcore.service.errors import (
    AuthenticationError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    ReuseDetectedError,
    TokenExpiredError,
)
from identcore.service.retry import aread_with_retries
from identcore.service.tokens import RefreshClaims, TokenIssuer
from identcore.storage.common import EphemeralStore
from identcore.storage.models import RefreshSession, RotationOutcome

logger = get_logger(__name__)


@dataclass
class SessionGrant:
    """A refresh session together with the token that represents it."""

    account_id: str
    family_id: str
    session_id: str
    sequence: int
    refresh_token: str
    expires_at: datetime
    raced: bool = False


class SessionStore:
    """Refresh-token families: create, rotate with reuse detection, revoke.

    A family is started at login and carries one current session. Rotation is a
    compare-and-swap on the family's current pointer. Presenting any token other
    than the current one revokes the whole family, except a replay of the
    immediately previous token inside ``grace_seconds`` of its rotation, which
    returns the session that rotation produced.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        issuer: TokenIssuer,
        *,
        refresh_ttl_minutes: int = 60 * 24 * 30,
        grace_seconds: int = 0,
        read_retries: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.issuer = issuer
        self.ttl = timedelta(minutes=refresh_ttl_minutes)
        self.grace_seconds = grace_seconds
        self.read_retries = read_retries
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), timezone.utc)

    def _grant(self, session: RefreshSession, *, raced: bool = False) -> SessionGrant:
        token = self.issuer.issue_refresh_token(
            session.account_id,
            session.family_id,
            session.session_id,
            session.sequence,
            session.expires_at,
            device_id=session.device_id,
        )
        return SessionGrant(
            account_id=session.account_id,
            family_id=session.family_id,
            session_id=session.session_id,
            sequence=session.sequence,
            refresh_token=token,
            expires_at=session.expires_at,
            raced=raced,
        )

    def describe(self, refresh_token: str, *, verify_exp: bool = False) -> RefreshClaims:
        try:
            return self.issuer.verify_refresh_token(refresh_token, verify_exp=verify_exp)
        except TokenExpiredError as exc:
            raise RefreshTokenExpiredError("refresh token has expired") from exc
        except AuthenticationError as exc:
            raise InvalidRefreshTokenError("invalid refresh token") from exc

    async def create(self, account_id: str, device_id: Optional[str] = None) -> SessionGrant:
        now = self._now()
        session = RefreshSession(
            session_id=uuid.uuid4().hex,
            account_id=account_id,
            family_id=uuid.uuid4().hex,
            sequence=0,
            issued_at=now,
            expires_at=now + self.ttl,
            device_id=device_id,
        )
        await self.cache.create_refresh_session(session)
        logger.info("refresh_family_created", account_id=account_id, family_id=session.family_id)
        return self._grant(session)

    async def rotate(self, refresh_token: str) -> SessionGrant:
        claims = self.describe(refresh_token, verify_exp=True)
        now = self._now()
        new_session = RefreshSession(
            session_id=uuid.uuid4().hex,
            account_id=claims.account_id,
            family_id=claims.family_id,
            sequence=claims.sequence + 1,
            issued_at=now,
            expires_at=now + self.ttl,
            device_id=claims.device_id,
        )
        result = await self.cache.rotate_refresh_session(
            claims.family_id,
            claims.session_id,
            claims.sequence,
            new_session,
            now=now,
            grace_seconds=self.grace_seconds,
        )
        if result.outcome == RotationOutcome.ROTATED and result.session:
            logger.info(
                "refresh_rotated",
                account_id=claims.account_id,
                family_id=claims.family_id,
                sequence=new_session.sequence,
            )
            return self._grant(result.session)
        if result.outcome == RotationOutcome.RACED and result.session:
            logger.info(
                "refresh_rotation_race_absorbed",
                account_id=claims.account_id,
                family_id=claims.family_id,
                sequence=claims.sequence,
            )
            return self._grant(result.session, raced=True)
        if result.outcome == RotationOutcome.REUSED:
            log_security_event(
                "refresh_token_reuse_detected",
                logger=logger,
                account_id=claims.account_id,
                family_id=claims.family_id,
                presented_sequence=claims.sequence,
            )
            raise ReuseDetectedError(family_id=claims.family_id)
        if result.outcome == RotationOutcome.EXPIRED:
            raise RefreshTokenExpiredError("refresh session has expired")
        logger.info(
            "refresh_rejected",
            outcome=result.outcome.value,
            family_id=claims.family_id,
        )
        raise InvalidRefreshTokenError("refresh token is no longer valid")

    async def revoke(self, family_id: str) -> bool:
        revoked = await self.cache.revoke_family(family_id)
        if revoked:
            logger.info("refresh_family_revoked", family_id=family_id)
        return revoked

    async def revoke_all(self, account_id: str) -> int:
        family_ids = await aread_with_retries(
            self.cache.list_families, account_id, retries=self.read_retries
        )
        revoked = 0
        for family_id in family_ids:
            if await self.cache.revoke_family(family_id):
                revoked += 1
        logger.info("refresh_families_revoked", account_id=account_id, count=revoked)
        return revoked

    async def list_active(self, account_id: str) -> List[RefreshSession]:
        family_ids = await aread_with_retries(
            self.cache.list_families, account_id, retries=self.read_retries
        )
        sessions: List[RefreshSession] = []
        now = self._now()
        for family_id in family_ids:
            current = await aread_with_retries(
                self.cache.current_session, family_id, retries=self.read_retries
            )
            if current and current.expires_at > now:
                sessions.append(current)
        return sorted(sessions, key=lambda s: s.issued_at, reverse=True)
