from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from hotelbook.storage.errors import IllegalStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AccountSecurityState(str, Enum):
    """Security state of an account, derived from its stored fields."""

    ACTIVE = "active"
    LOCKED = "locked"
    AWAITING_MFA = "awaiting_mfa"


class SecurityEvent(str, Enum):
    CHALLENGE_ISSUED = "challenge_issued"
    CHALLENGE_VERIFIED = "challenge_verified"
    LOCK_ENGAGED = "lock_engaged"
    LOCK_EXPIRED = "lock_expired"


_TRANSITIONS: Dict[tuple, AccountSecurityState] = {
    (AccountSecurityState.ACTIVE, SecurityEvent.CHALLENGE_ISSUED): AccountSecurityState.AWAITING_MFA,
    # A new challenge supersedes the outstanding one
    (AccountSecurityState.AWAITING_MFA, SecurityEvent.CHALLENGE_ISSUED): AccountSecurityState.AWAITING_MFA,
    (AccountSecurityState.AWAITING_MFA, SecurityEvent.CHALLENGE_VERIFIED): AccountSecurityState.ACTIVE,
    (AccountSecurityState.ACTIVE, SecurityEvent.LOCK_ENGAGED): AccountSecurityState.LOCKED,
    (AccountSecurityState.AWAITING_MFA, SecurityEvent.LOCK_ENGAGED): AccountSecurityState.LOCKED,
    (AccountSecurityState.LOCKED, SecurityEvent.LOCK_EXPIRED): AccountSecurityState.ACTIVE,
}


def transition_security_state(
    state: AccountSecurityState, event: SecurityEvent
) -> AccountSecurityState:
    """Return the state reached by applying ``event``; raise if not allowed."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise IllegalStateTransition(state, event) from None


@dataclass
class AccountProfile:
    """Account fields that are safe to hand to callers outside the auth core."""

    id: str
    email: str
    full_name: str
    role: str
    phone_encrypted: Optional[str] = None
    mfa_enabled: bool = False
    password_expired: bool = False
    last_password_change: Optional[datetime] = None
    lock_until: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN.value

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.lock_until is not None and self.lock_until > (now or utcnow())


@dataclass
class Account:
    id: str
    email: str
    full_name: str
    password_hash: str
    role: str = AccountRole.USER.value
    phone_encrypted: Optional[str] = None
    password_history: List[str] = field(default_factory=list)
    last_password_change: Optional[datetime] = None
    password_expired: bool = False
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    otp_hash: Optional[str] = None
    otp_expiry: Optional[datetime] = None
    mfa_enabled: bool = False
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = AccountRole.USER.value,
        phone_encrypted: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Account":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            full_name=full_name,
            password_hash=password_hash,
            role=AccountRole(role).value,
            phone_encrypted=phone_encrypted,
            password_history=[password_hash],
            last_password_change=created,
            created_at=created,
            updated_at=created,
        )

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.lock_until is not None and self.lock_until > (now or utcnow())

    @property
    def has_otp_challenge(self) -> bool:
        return self.otp_hash is not None and self.otp_expiry is not None

    def security_state(self, now: Optional[datetime] = None) -> AccountSecurityState:
        if self.is_locked(now):
            return AccountSecurityState.LOCKED
        if self.has_otp_challenge:
            return AccountSecurityState.AWAITING_MFA
        return AccountSecurityState.ACTIVE

    def set_otp_challenge(self, otp_hash: str, expiry: datetime, now: Optional[datetime] = None) -> None:
        transition_security_state(self.security_state(now), SecurityEvent.CHALLENGE_ISSUED)
        self.otp_hash = otp_hash
        self.otp_expiry = expiry

    def clear_otp_challenge(self) -> None:
        self.otp_hash = None
        self.otp_expiry = None

    def engage_lock(self, lock_until: datetime, now: Optional[datetime] = None) -> None:
        transition_security_state(self.security_state(now), SecurityEvent.LOCK_ENGAGED)
        self.lock_until = lock_until
        # A locked account cannot also be mid-challenge
        self.clear_otp_challenge()

    def release_lock(self, now: Optional[datetime] = None) -> None:
        if self.lock_until is not None and self.security_state(now) == AccountSecurityState.LOCKED:
            raise IllegalStateTransition(AccountSecurityState.LOCKED, SecurityEvent.LOCK_EXPIRED)
        self.lock_until = None

    def apply_password_change(self, new_hash: str, now: datetime, history_size: int = 3) -> None:
        self.password_hash = new_hash
        self.password_history = (self.password_history + [new_hash])[-history_size:]
        self.last_password_change = now
        self.password_expired = False

    def profile(self) -> AccountProfile:
        return AccountProfile(
            id=self.id,
            email=self.email,
            full_name=self.full_name,
            role=self.role,
            phone_encrypted=self.phone_encrypted,
            mfa_enabled=self.mfa_enabled,
            password_expired=self.password_expired,
            last_password_change=self.last_password_change,
            lock_until=self.lock_until,
            created_at=self.created_at,
        )


class AuditAction(str, Enum):
    SIGNUP = "SIGNUP"
    LOGIN = "LOGIN"
    MFA_VERIFY = "MFA_VERIFY"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PROFILE_UPDATE = "PROFILE_UPDATE"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RequestOrigin:
    ip: str = "unknown"
    user_agent: str = "unknown"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one security event."""

    id: str
    action: AuditAction
    outcome: AuditOutcome
    account_id: Optional[str] = None
    ip: str = "unknown"
    user_agent: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        action: AuditAction,
        outcome: AuditOutcome,
        *,
        account_id: Optional[str] = None,
        origin: Optional[RequestOrigin] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "AuditEntry":
        origin = origin or RequestOrigin()
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            outcome=outcome,
            account_id=account_id,
            ip=origin.ip,
            user_agent=origin.user_agent,
            metadata=dict(metadata or {}),
            created_at=now or utcnow(),
        )
