from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from hotelbook.logging import get_logger
from hotelbook.storage.errors import ConstraintViolation
from hotelbook.storage.models import Account, AuditAction, AuditEntry, utcnow


class MemoryStore:
    """In-process credential and audit store for development and tests.

    Every read returns a copy, so callers can only change stored state
    through :meth:`update_account`.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self.audit_entries: List[AuditEntry] = []
        # RLock so a mutation may read through the store on the same thread
        self._data_lock = threading.RLock()

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = copy.deepcopy(account)
            self._email_index[account.email] = account.id
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email)
            if account_id is None:
                return None
            return copy.deepcopy(self.accounts[account_id])

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        """Apply ``mutate`` to the account as one atomic step.

        The mutation runs on a copy while the store lock is held; the copy
        replaces the stored record only if ``mutate`` returns normally. Any
        exception raised by ``mutate`` leaves the record untouched and
        propagates to the caller. Returns ``None`` for an unknown id.
        """
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None:
                return None
            working = copy.deepcopy(current)
            mutate(working)
            # id, email, role and created_at are fixed after creation
            working.id, working.email = current.id, current.email
            working.role, working.created_at = current.role, current.created_at
            working.updated_at = utcnow()
            self.accounts[account_id] = working
            return copy.deepcopy(working)

    def append_audit(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_entries.append(entry)

    def list_audit(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._data_lock:
            entries = list(self.audit_entries)
        matched = [
            entry
            for entry in entries
            if (account_id is None or entry.account_id == account_id)
            and (action is None or entry.action == action)
            and (since is None or entry.created_at >= since)
            and (until is None or entry.created_at <= until)
        ]
        matched.sort(key=lambda entry: entry.created_at, reverse=True)
        return matched[:limit]

    def verify_connection(self) -> None:
        """Nothing to check for the in-process store."""
        return None

    def close(self) -> None:
        return None
