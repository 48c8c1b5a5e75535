from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping

from identcore.config import Settings
from identcore.logging import get_logger
from identcore.service.errors import RateLimitedError
from identcore.storage.common import EphemeralStore

logger = get_logger(__name__)


class RateScope(str, Enum):
    OTP_ISSUE = "otp-issue"
    LOGIN_ATTEMPT = "login-attempt"
    OTP_VERIFY_ATTEMPT = "otp-verify-attempt"


@dataclass(frozen=True)
class RateRule:
    limit: int
    window_seconds: int

    @property
    def enabled(self) -> bool:
        return self.limit > 0 and self.window_seconds > 0


@dataclass
class RateDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


class RateLimiter:
    """Fixed-window counters keyed by (scope, identity).

    Each hit is one atomic increment-with-window in the ephemeral store; a
    rejected hit still counts and never resets the window early.
    """

    def __init__(self, cache: EphemeralStore, rules: Mapping[RateScope, RateRule]) -> None:
        self.cache = cache
        self.rules: Dict[RateScope, RateRule] = dict(rules)

    @classmethod
    def from_settings(cls, cache: EphemeralStore, settings: Settings) -> "RateLimiter":
        return cls(
            cache,
            {
                RateScope.OTP_ISSUE: RateRule(
                    settings.otp_issue_limit, settings.otp_issue_window_seconds
                ),
                RateScope.LOGIN_ATTEMPT: RateRule(
                    settings.login_rate_limit, settings.login_window_seconds
                ),
                RateScope.OTP_VERIFY_ATTEMPT: RateRule(
                    settings.otp_verify_limit, settings.otp_verify_window_seconds
                ),
            },
        )

    @staticmethod
    def _key(scope: RateScope, identity: str) -> str:
        return f"{scope.value}:{identity.strip().lower()}"

    async def hit(self, scope: RateScope, identity: str) -> RateDecision:
        rule = self.rules.get(scope)
        if rule is None or not rule.enabled:
            return RateDecision(allowed=True, count=0, limit=0, retry_after=0)
        window = await self.cache.hit_window(self._key(scope, identity), rule.window_seconds)
        allowed = window.count <= rule.limit
        return RateDecision(
            allowed=allowed,
            count=window.count,
            limit=rule.limit,
            retry_after=0 if allowed else window.reset_after,
        )

    async def allow(self, scope: RateScope, identity: str) -> bool:
        decision = await self.hit(scope, identity)
        return decision.allowed

    async def check(self, scope: RateScope, identity: str) -> None:
        decision = await self.hit(scope, identity)
        if not decision.allowed:
            logger.warning(
                "rate_limited",
                scope=scope.value,
                count=decision.count,
                limit=decision.limit,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                retry_after=decision.retry_after, detail={"scope": scope.value}
            )
