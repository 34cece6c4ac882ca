from __future__ import annotations

from typing import Iterable

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hotelbook.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and one-time codes.

    Comparison always goes through ``PasswordHasher.verify`` so stored
    hashes are never compared as plain strings.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Verified against when no account exists so timing matches a real check
        self._dummy_hash = self._hasher.hash("hotelbook-timing-equalizer")

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str | None, secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unverifiable")
            return False

    def matches_any(self, stored_hashes: Iterable[str], secret: str) -> bool:
        """True if ``secret`` verifies against any hash; checks every entry."""
        matched = False
        for stored_hash in stored_hashes:
            if self.verify(stored_hash, secret):
                matched = True
        return matched

    def burn(self, secret: str) -> None:
        """Spend one verification worth of work without a real hash."""
        self.verify(self._dummy_hash, secret)
