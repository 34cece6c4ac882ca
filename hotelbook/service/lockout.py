from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from hotelbook.logging import get_logger
from hotelbook.storage.models import Account, AccountProfile, utcnow

logger = get_logger(__name__)


class AccountUpdater(Protocol):
    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        ...


class LockoutGuard:
    """Counts failed verifications and locks the account at the threshold.

    Each mutation is a single ``update_account`` call, so concurrent failures
    for one account are serialized by the store and never lose increments.
    """

    def __init__(
        self,
        store: AccountUpdater,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock

    def apply_failure(self, account: Account, now: datetime) -> None:
        """Mutation used by :meth:`record_failure`; also composable into larger updates."""
        if account.lock_until is not None and account.lock_until <= now:
            # The failing attempt opens a new window as attempt number one
            account.release_lock(now)
            account.login_attempts = 1
            return
        account.login_attempts += 1
        if account.login_attempts >= self.max_attempts and not account.is_locked(now):
            account.engage_lock(now + self.lockout_duration, now)

    def apply_success(self, account: Account) -> None:
        account.login_attempts = 0
        account.lock_until = None

    def record_failure(self, account_id: str) -> Optional[Account]:
        now = self._clock()
        updated = self.store.update_account(
            account_id, lambda account: self.apply_failure(account, now)
        )
        if updated is not None and updated.is_locked(now):
            logger.warning(
                "account_locked",
                account_id=account_id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat() if updated.lock_until else None,
            )
        return updated

    def record_success(self, account_id: str) -> Optional[Account]:
        return self.store.update_account(account_id, self.apply_success)

    def is_locked(self, account: Account | AccountProfile) -> bool:
        return account.is_locked(self._clock())
