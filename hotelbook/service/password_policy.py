"""Password strength and expiry rules.

Pure functions; the only time input is the optional ``now`` argument.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from hotelbook.storage.models import utcnow

MIN_LENGTH = 12
SYMBOLS = frozenset("!@#$%^&*()_+-=[]{};':\"\\|,.<>/?")

_RULES = (
    (lambda pw: len(pw) >= MIN_LENGTH, f"Password must be at least {MIN_LENGTH} characters long"),
    (lambda pw: any(c in string.ascii_lowercase for c in pw), "Password must contain at least one lowercase letter"),
    (lambda pw: any(c in string.ascii_uppercase for c in pw), "Password must contain at least one uppercase letter"),
    (lambda pw: any(c in string.digits for c in pw), "Password must contain at least one number"),
    (lambda pw: any(c in SYMBOLS for c in pw), "Password must contain at least one special character"),
)


@dataclass
class PolicyResult:
    valid: bool
    violations: List[str] = field(default_factory=list)


def validate_strength(password: Optional[str]) -> PolicyResult:
    """Check every rule and report all that fail."""
    password = password or ""
    violations = [message for check, message in _RULES if not check(password)]
    return PolicyResult(valid=not violations, violations=violations)


def is_expired(
    last_change: Optional[datetime],
    max_age_days: int,
    now: Optional[datetime] = None,
) -> bool:
    if last_change is None:
        return True
    return (now or utcnow()) > last_change + timedelta(days=max_age_days)


def strength_score(password: Optional[str]) -> int:
    """Heuristic 0-100 score for strength meters; not an acceptance rule."""
    if not password:
        return 0
    score = min(len(password) * 2, 30)
    score += sum(10 for check, _ in _RULES[1:] if check(password))
    score += min(len(set(password)) * 2, 30)
    return min(score, 100)


def strength_label(score: int) -> str:
    if score < 30:
        return "Weak"
    if score < 60:
        return "Fair"
    if score < 80:
        return "Good"
    return "Strong"
