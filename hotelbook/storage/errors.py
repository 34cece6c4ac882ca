from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IllegalStateTransition(Exception):
    """Raised when an account security transition is not allowed from its state."""

    def __init__(self, state: Any, event: Any):
        super().__init__(f"cannot apply {event} to account in state {state}")
        self.state = state
        self.event = event


__all__ = ["ConstraintViolation", "IllegalStateTransition"]
