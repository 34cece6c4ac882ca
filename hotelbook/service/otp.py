from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from hotelbook.logging import get_logger
from hotelbook.service.errors import AccountLockedError, NotFoundError
from hotelbook.service.hashing import SecretHasher
from hotelbook.service.lockout import AccountUpdater, LockoutGuard
from hotelbook.storage.errors import IllegalStateTransition
from hotelbook.storage.models import (
    Account,
    SecurityEvent,
    transition_security_state,
    utcnow,
)

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"[0-9]{6}")


class OtpFailure(str, Enum):
    NO_CHALLENGE = "no_challenge"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class OtpVerification:
    ok: bool
    reason: Optional[OtpFailure] = None
    account: Optional[Account] = None


class _ChallengeGone(Exception):
    """The verified challenge was consumed or replaced before it could be cleared."""


class OtpChallengeManager:
    """Issues and verifies six-digit one-time codes.

    Only the argon2 hash of a code is stored. The plaintext is returned once
    from :meth:`issue` for out-of-band delivery and is never logged.
    """

    def __init__(
        self,
        store: AccountUpdater,
        hasher: SecretHasher,
        lockout: LockoutGuard,
        *,
        ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout
        self.ttl = ttl
        self._clock = clock

    @staticmethod
    def generate_code() -> str:
        # 100000-999999 inclusive; never a leading zero
        return str(secrets.randbelow(900000) + 100000)

    def issue(self, account: Account) -> str:
        code = self.generate_code()
        code_hash = self.hasher.hash(code)
        now = self._clock()
        expiry = now + self.ttl

        def _store_challenge(record: Account) -> None:
            try:
                record.set_otp_challenge(code_hash, expiry, now)
            except IllegalStateTransition:
                raise AccountLockedError(record.lock_until) from None

        updated = self.store.update_account(account.id, _store_challenge)
        if updated is None:
            raise NotFoundError("account not found")
        logger.info("otp_issued", account_id=account.id, expires_at=expiry.isoformat())
        return code

    def verify(self, account: Account, submitted_code: str) -> OtpVerification:
        now = self._clock()
        if not account.has_otp_challenge:
            return OtpVerification(ok=False, reason=OtpFailure.NO_CHALLENGE)
        if now > account.otp_expiry:
            # Left in place: only a fresh issuance replaces an expired challenge
            return OtpVerification(ok=False, reason=OtpFailure.EXPIRED)

        code = (submitted_code or "").strip()
        if not _CODE_PATTERN.fullmatch(code) or not self.hasher.verify(account.otp_hash, code):
            self.lockout.record_failure(account.id)
            return OtpVerification(ok=False, reason=OtpFailure.MISMATCH)

        verified_hash = account.otp_hash

        def _consume(record: Account) -> None:
            # Compare-and-swap on the hash so a code is consumed at most once
            if record.otp_hash != verified_hash:
                raise _ChallengeGone()
            try:
                transition_security_state(
                    record.security_state(now), SecurityEvent.CHALLENGE_VERIFIED
                )
            except IllegalStateTransition:
                raise _ChallengeGone() from None
            record.clear_otp_challenge()
            record.mfa_enabled = True
            self.lockout.apply_success(record)

        try:
            updated = self.store.update_account(account.id, _consume)
        except _ChallengeGone:
            return OtpVerification(ok=False, reason=OtpFailure.NO_CHALLENGE)
        if updated is None:
            return OtpVerification(ok=False, reason=OtpFailure.NO_CHALLENGE)
        return OtpVerification(ok=True, account=updated)
