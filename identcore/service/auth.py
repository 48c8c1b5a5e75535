from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Set

from identcore.config import Settings
from identcore.logging import get_logger, log_security_event, redact_email
from identcore.service.accounts import AccountLifecycle, ensure_usable
from identcore.service.crypto import PasswordHashing
from identcore.service.errors import (
    AuthenticationError,
    ConflictError,
    OtpNotFoundError,
    ValidationError,
)
from identcore.service.otp import OtpEngine
from identcore.service.rate_limit import RateLimiter, RateScope
from identcore.service.retry import fail_closed
from identcore.service.sessions import SessionStore
from identcore.service.tokens import TokenIssuer
from identcore.storage.common import AccountStore, EphemeralStore, normalize_email
from identcore.storage.models import (
    Account,
    AccountStatus,
    AuthContext,
    OtpPurpose,
    RefreshSession,
    Role,
    TokenPair,
)

logger = get_logger(__name__)

MAX_PASSWORD_LENGTH = 1024


class Notifier(Protocol):
    def send_registration_code(self, to_email: str, code: str, ttl_minutes: int) -> bool: ...

    def send_password_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool: ...

    def send_password_changed(self, to_email: str) -> bool: ...


@dataclass
class RegistrationResult:
    account_id: str
    email: str
    status: AccountStatus
    otp_reference: str
    otp_expires_at: datetime


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair
    family_id: str


class AuthService:
    """Registration, login, refresh rotation, password reset and account admin.

    Composes the rate limiter, account lifecycle, OTP engine, token issuer and
    session store. Every public coroutine fails closed: a store outage becomes
    ``ServiceUnavailableError`` and never an allow.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock=time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.accounts = AccountLifecycle(store, read_retries=settings.store_read_retries)
        self.passwords = PasswordHashing(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )
        self.tokens = TokenIssuer.from_settings(settings, clock=clock)
        self.otp = OtpEngine.from_settings(cache, settings, clock=clock)
        self.rate_limiter = RateLimiter.from_settings(cache, settings)
        self.sessions = SessionStore(
            cache,
            self.tokens,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            grace_seconds=settings.refresh_reuse_grace_seconds,
            read_retries=settings.store_read_retries,
            clock=clock,
        )
        self._pending_notifications: Set[asyncio.Task] = set()

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def validate_email(email: str) -> str:
        normalized = normalize_email(email or "")
        local, _, domain = normalized.partition("@")
        if not local or "." not in domain or " " in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    def validate_password(self, password: str) -> None:
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("password is too long", detail={"field": "password"})

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _notify(self, kind: str, *args) -> None:
        """Hand a message to the notifier without waiting for delivery."""
        if self.notifier is None:
            return
        send = getattr(self.notifier, kind)
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(send, *args))
        self._pending_notifications.add(task)
        task.add_done_callback(functools.partial(self._on_notification_done, kind))

    def _on_notification_done(self, kind: str, task: asyncio.Task) -> None:
        self._pending_notifications.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "notification_failed", kind=kind, error_type=type(exc).__name__, error=str(exc)
            )
        elif task.result() is False:
            logger.warning("notification_not_delivered", kind=kind)

    async def flush_notifications(self) -> None:
        """Wait for outstanding deliveries; used on shutdown and in tests."""
        while self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    async def _start_session(self, account: Account, device_id: Optional[str]) -> AuthResult:
        grant = await self.sessions.create(account.id, device_id)
        access_token, access_expires_at = self.tokens.issue_access_token(
            account.id, account.role, account.token_version
        )
        return AuthResult(
            account=account,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=grant.refresh_token,
                access_expires_at=access_expires_at,
                refresh_expires_at=grant.expires_at,
            ),
            family_id=grant.family_id,
        )

    async def _issue_otp(self, account: Account, purpose: OtpPurpose):
        issue = await self.otp.issue(account.id, purpose)
        kind = (
            "send_registration_code"
            if purpose == OtpPurpose.REGISTRATION
            else "send_password_reset_code"
        )
        self._notify(kind, account.email, issue.code, self.settings.otp_ttl_minutes)
        return issue

    # -- registration ----------------------------------------------------

    @fail_closed
    async def register(self, email: str, password: str) -> RegistrationResult:
        normalized = self.validate_email(email)
        self.validate_password(password)
        await self.rate_limiter.check(RateScope.OTP_ISSUE, normalized)

        existing = self.accounts.find_by_email(normalized)
        if existing and existing.status != AccountStatus.PENDING_VERIFICATION:
            raise ConflictError("email already registered", detail={"field": "email"})
        if existing:
            # Unverified sign-up retried: stored password kept, only the code is reissued
            account = existing
            logger.info("registration_retried", account_id=account.id)
        else:
            account = self.accounts.create_pending(
                normalized, self.passwords.hash_password(password)
            )

        issue = await self._issue_otp(account, OtpPurpose.REGISTRATION)
        logger.info("registration_started", account_id=account.id, email=redact_email(normalized))
        return RegistrationResult(
            account_id=account.id,
            email=account.email,
            status=account.status,
            otp_reference=issue.reference,
            otp_expires_at=issue.expires_at,
        )

    @fail_closed
    async def resend_verification(self, email: str) -> None:
        normalized = self.validate_email(email)
        await self.rate_limiter.check(RateScope.OTP_ISSUE, normalized)
        account = self.accounts.find_by_email(normalized)
        if not account or account.status != AccountStatus.PENDING_VERIFICATION:
            logger.info("verification_resend_skipped", email=redact_email(normalized))
            return
        await self._issue_otp(account, OtpPurpose.REGISTRATION)

    @fail_closed
    async def verify_registration(
        self, email: str, code: str, device_id: Optional[str] = None
    ) -> AuthResult:
        normalized = self.validate_email(email)
        await self.rate_limiter.check(RateScope.OTP_VERIFY_ATTEMPT, normalized)
        account = self.accounts.find_by_email(normalized)
        if not account or account.status != AccountStatus.PENDING_VERIFICATION:
            raise OtpNotFoundError("no active code")
        await self.otp.verify(account.id, OtpPurpose.REGISTRATION, code)
        account = self.accounts.activate(account.id)
        return await self._start_session(account, device_id)

    # -- sessions --------------------------------------------------------

    @fail_closed
    async def login(
        self,
        email: str,
        password: str,
        device_id: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> AuthResult:
        normalized = self.validate_email(email)
        await self.rate_limiter.check(RateScope.LOGIN_ATTEMPT, f"account:{normalized}")
        if origin:
            await self.rate_limiter.check(RateScope.LOGIN_ATTEMPT, f"origin:{origin}")

        account = self.accounts.find_by_email(normalized, include_deleted=True)
        if not account:
            self.passwords.burn_verification(password or "")
            logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError("invalid email or password")
        if not self.passwords.verify_password(password or "", account.password_hash):
            logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise AuthenticationError("invalid email or password")
        ensure_usable(account)

        if self.passwords.needs_rehash(account.password_hash):
            account = self.accounts.set_password(
                account.id, self.passwords.hash_password(password), bump_token_version=False
            )
        logger.info("login_succeeded", account_id=account.id)
        return await self._start_session(account, device_id)

    @fail_closed
    async def refresh(self, refresh_token: str) -> AuthResult:
        grant = await self.sessions.rotate(refresh_token)
        account = self.accounts.find(grant.account_id)
        if not account or account.status != AccountStatus.ACTIVE:
            await self.sessions.revoke(grant.family_id)
            if not account:
                raise AuthenticationError("account no longer exists")
            ensure_usable(account)
        access_token, access_expires_at = self.tokens.issue_access_token(
            account.id, account.role, account.token_version
        )
        return AuthResult(
            account=account,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=grant.refresh_token,
                access_expires_at=access_expires_at,
                refresh_expires_at=grant.expires_at,
            ),
            family_id=grant.family_id,
        )

    @fail_closed
    async def logout(self, refresh_token: str) -> None:
        claims = self.sessions.describe(refresh_token, verify_exp=False)
        await self.sessions.revoke(claims.family_id)
        logger.info("logout", account_id=claims.account_id, family_id=claims.family_id)

    @fail_closed
    async def logout_all(self, context: AuthContext) -> int:
        account = self.accounts.authorize(context)
        return await self.sessions.revoke_all(account.id)

    @fail_closed
    async def list_sessions(self, context: AuthContext) -> List[RefreshSession]:
        account = self.accounts.authorize(context)
        return await self.sessions.list_active(account.id)

    # -- passwords -------------------------------------------------------

    @fail_closed
    async def forgot_password(self, email: str) -> None:
        """Start a reset; identical outcome whether or not the email is known."""
        normalized = self.validate_email(email)
        await self.rate_limiter.check(RateScope.OTP_ISSUE, normalized)
        account = self.accounts.find_by_email(normalized)
        if not account or account.status != AccountStatus.ACTIVE:
            logger.info("password_reset_skipped", email=redact_email(normalized))
            return
        await self._issue_otp(account, OtpPurpose.PASSWORD_RESET)
        logger.info("password_reset_requested", account_id=account.id)

    @fail_closed
    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        normalized = self.validate_email(email)
        self.validate_password(new_password)
        await self.rate_limiter.check(RateScope.OTP_VERIFY_ATTEMPT, normalized)
        account = self.accounts.find_by_email(normalized)
        if not account or account.status != AccountStatus.ACTIVE:
            raise OtpNotFoundError("no active code")
        await self.otp.verify(account.id, OtpPurpose.PASSWORD_RESET, code)
        self.accounts.set_password(account.id, self.passwords.hash_password(new_password))
        await self.sessions.revoke_all(account.id)
        log_security_event("password_reset_completed", logger=logger, account_id=account.id)
        self._notify("send_password_changed", account.email)

    @fail_closed
    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> None:
        account = self.accounts.authorize(context)
        if not self.passwords.verify_password(current_password or "", account.password_hash):
            raise AuthenticationError("current password is incorrect")
        self.validate_password(new_password)
        self.accounts.set_password(account.id, self.passwords.hash_password(new_password))
        await self.sessions.revoke_all(account.id)
        log_security_event("password_changed", logger=logger, account_id=account.id)
        self._notify("send_password_changed", account.email)

    # -- guard -----------------------------------------------------------

    @fail_closed
    async def authenticate(self, authorization_header: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization_header)
        if not token:
            raise AuthenticationError("missing bearer token")
        return self.tokens.verify_access_token(token)

    @fail_closed
    async def require(
        self,
        authorization_header: Optional[str],
        required_role: Optional[Role] = None,
        allowed_roles: Optional[Iterable[Role]] = None,
    ) -> Account:
        context = await self.authenticate(authorization_header)
        return self.accounts.authorize(
            context, required_role=required_role, allowed_roles=allowed_roles
        )

    @fail_closed
    async def get_profile(self, context: AuthContext) -> Account:
        return self.accounts.authorize(context)

    # -- administration --------------------------------------------------

    @fail_closed
    async def block_account(self, context: AuthContext, target_id: str) -> Account:
        actor = self.accounts.authorize(context, required_role=Role.ADMIN)
        target = self.accounts.get(target_id)
        self.accounts.ensure_can_manage(actor, target, "block")
        blocked = self.accounts.block(target.id)
        await self.sessions.revoke_all(target.id)
        return blocked

    @fail_closed
    async def unblock_account(self, context: AuthContext, target_id: str) -> Account:
        actor = self.accounts.authorize(context, required_role=Role.ADMIN)
        target = self.accounts.get(target_id)
        self.accounts.ensure_can_manage(actor, target, "unblock")
        return self.accounts.unblock(target.id)

    @fail_closed
    async def delete_account(self, context: AuthContext, target_id: str) -> Account:
        actor = self.accounts.authorize(context)
        target = self.accounts.get(target_id)
        if actor.id != target.id:
            self.accounts.ensure_can_manage(actor, target, "delete")
        deleted = self.accounts.soft_delete(target.id)
        await self.sessions.revoke_all(target.id)
        return deleted

    @fail_closed
    async def change_role(self, context: AuthContext, target_id: str, new_role: Role) -> Account:
        actor = self.accounts.authorize(context, allowed_roles={Role.MANAGER})
        target = self.accounts.get(target_id)
        self.accounts.ensure_can_change_role(actor, target)
        if target.role == new_role:
            return target
        return self.accounts.set_role(target.id, new_role)
