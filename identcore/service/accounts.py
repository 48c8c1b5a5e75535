from __future__ import annotations

from typing import Iterable, Optional

from identcore.logging import get_logger, log_security_event
from identcore.service.errors import (
    AccountBlockedError,
    AccountNotVerifiedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StaleTokenError,
)
from identcore.service.retry import read_with_retries
from identcore.storage.common import AccountStore
from identcore.storage.errors import ConstraintViolation
from identcore.storage.models import Account, AccountStatus, AuthContext, Role

logger = get_logger(__name__)

NON_DELETED = (
    AccountStatus.PENDING_VERIFICATION,
    AccountStatus.ACTIVE,
    AccountStatus.BLOCKED,
)


def ensure_usable(account: Account) -> None:
    """Raise the status-specific error for anything but an active account."""
    if account.is_active:
        return
    if account.status == AccountStatus.PENDING_VERIFICATION:
        raise AccountNotVerifiedError("account email is not verified")
    if account.status == AccountStatus.BLOCKED:
        raise AccountBlockedError("account is blocked")
    raise ForbiddenError("account is deleted")


def can_manage(actor: Account, target: Account) -> bool:
    """Administrative actions need a strictly higher rank than the target."""
    return actor.id != target.id and actor.role.rank > target.role.rank


class AccountLifecycle:
    """Account state machine and authorization guard over the durable store.

    pending_verification -> active -> blocked <-> active; any non-deleted ->
    deleted (terminal). Every transition is a conditional update on the
    expected current status, so a concurrent transition loses with a conflict
    instead of overwriting.
    """

    def __init__(self, store: AccountStore, *, read_retries: int = 2) -> None:
        self.store = store
        self.read_retries = read_retries

    def find(self, account_id: str) -> Optional[Account]:
        return read_with_retries(self.store.get_account, account_id, retries=self.read_retries)

    def get(self, account_id: str) -> Account:
        account = self.find(account_id)
        if not account or account.is_deleted:
            raise NotFoundError("account not found")
        return account

    def find_by_email(self, email: str, *, include_deleted: bool = False) -> Optional[Account]:
        return read_with_retries(
            self.store.get_account_by_email,
            email,
            include_deleted=include_deleted,
            retries=self.read_retries,
        )

    def create_pending(self, email: str, password_hash: str) -> Account:
        try:
            account = self.store.create_account(
                email, password_hash, status=AccountStatus.PENDING_VERIFICATION
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        logger.info("account_created", account_id=account.id)
        return account

    def _transition(
        self,
        account_id: str,
        new_status: AccountStatus,
        expected: Iterable[AccountStatus],
        *,
        bump_token_version: bool,
    ) -> Account:
        expected = tuple(expected)
        updated = self.store.update_status(
            account_id, new_status, expected=expected, bump_token_version=bump_token_version
        )
        if updated:
            return updated
        current = self.find(account_id)
        if not current:
            raise NotFoundError("account not found")
        raise ConflictError(
            f"account is {current.status.value}",
            detail={"status": current.status.value, "requested": new_status.value},
        )

    def activate(self, account_id: str) -> Account:
        account = self._transition(
            account_id,
            AccountStatus.ACTIVE,
            (AccountStatus.PENDING_VERIFICATION,),
            bump_token_version=False,
        )
        logger.info("account_activated", account_id=account_id)
        return account

    def block(self, account_id: str) -> Account:
        account = self._transition(
            account_id, AccountStatus.BLOCKED, (AccountStatus.ACTIVE,), bump_token_version=True
        )
        log_security_event("account_blocked", logger=logger, account_id=account_id)
        return account

    def unblock(self, account_id: str) -> Account:
        account = self._transition(
            account_id, AccountStatus.ACTIVE, (AccountStatus.BLOCKED,), bump_token_version=True
        )
        logger.info("account_unblocked", account_id=account_id)
        return account

    def soft_delete(self, account_id: str) -> Account:
        account = self._transition(
            account_id, AccountStatus.DELETED, NON_DELETED, bump_token_version=True
        )
        logger.info("account_deleted", account_id=account_id)
        return account

    def set_role(self, account_id: str, role: Role) -> Account:
        updated = self.store.update_role(account_id, role, bump_token_version=True)
        if not updated:
            raise NotFoundError("account not found")
        logger.info("account_role_changed", account_id=account_id, role=role.value)
        return updated

    def set_password(self, account_id: str, password_hash: str, *, bump_token_version: bool = True) -> Account:
        updated = self.store.update_password(
            account_id, password_hash, bump_token_version=bump_token_version
        )
        if not updated:
            raise NotFoundError("account not found")
        return updated

    def authorize(
        self,
        context: AuthContext,
        required_role: Optional[Role] = None,
        allowed_roles: Optional[Iterable[Role]] = None,
    ) -> Account:
        """Re-load the caller and check status, token currency and role.

        ``required_role`` is a hierarchy check (manager > admin > user);
        ``allowed_roles`` is an exclusive set checked by membership.
        """
        account = self.find(context.account_id)
        if not account:
            raise ForbiddenError("account no longer exists")
        ensure_usable(account)
        if account.token_version != context.token_version:
            raise StaleTokenError("token was issued before the account last changed")
        if required_role is not None and not account.role.at_least(required_role):
            raise ForbiddenError(
                "insufficient role", detail={"required_role": required_role.value}
            )
        if allowed_roles is not None:
            allowed = set(allowed_roles)
            if account.role not in allowed:
                raise ForbiddenError(
                    "role not permitted",
                    detail={"allowed_roles": sorted(r.value for r in allowed)},
                )
        return account

    def ensure_can_manage(self, actor: Account, target: Account, action: str) -> None:
        if not can_manage(actor, target):
            logger.warning(
                "account_action_denied",
                actor_id=actor.id,
                target_id=target.id,
                action=action,
            )
            raise ForbiddenError(f"not allowed to {action} this account")

    def ensure_can_change_role(self, actor: Account, target: Account) -> None:
        if actor.role != Role.MANAGER:
            raise ForbiddenError("only managers may change roles")
        if actor.id == target.id:
            raise ForbiddenError("cannot change your own role")
        if target.is_deleted:
            raise NotFoundError("account not found")
