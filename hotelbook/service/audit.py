from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from hotelbook.logging import get_logger, scrub_sensitive
from hotelbook.storage.models import (
    AuditAction,
    AuditEntry,
    AuditOutcome,
    RequestOrigin,
    utcnow,
)

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit(self, entry: AuditEntry) -> None:
        ...

    def list_audit(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        ...


@dataclass
class AuditEvent:
    """Outcome of one orchestrator transition, filled in while it runs."""

    action: AuditAction
    origin: RequestOrigin
    account_id: Optional[str] = None
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    metadata: Dict[str, Any] = field(default_factory=dict)

    def fail(self, reason: str) -> None:
        self.outcome = AuditOutcome.FAILURE
        self.metadata["reason"] = reason


class AuditRecorder:
    """Append-only audit trail backed by the credential store.

    :meth:`emit` is best-effort: a failed write is logged and dropped so it
    never replaces the response of the flow being audited.
    """

    def __init__(self, store: AuditStore, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock

    def emit(self, event: AuditEvent) -> None:
        entry = AuditEntry.new(
            event.action,
            event.outcome,
            account_id=event.account_id,
            origin=event.origin,
            metadata=scrub_sensitive(event.metadata),
            now=self._clock(),
        )
        try:
            self.store.append_audit(entry)
        except Exception as exc:
            logger.warning(
                "audit_write_failed",
                action=entry.action.value,
                outcome=entry.outcome.value,
                account_id=entry.account_id,
                error=str(exc),
            )

    def list_entries(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        return self.store.list_audit(
            account_id=account_id,
            action=action,
            since=since,
            until=until,
            limit=max(1, min(limit, 500)),
        )
