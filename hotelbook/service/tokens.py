from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from hotelbook.logging import get_logger
from hotelbook.service.errors import TokenExpiredError, TokenInvalidError
from hotelbook.storage.models import Account, AccountProfile, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class RotationResult:
    profile: AccountProfile
    tokens: TokenPair


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _derive_refresh_secret(secret: str) -> str:
    return hashlib.sha256(f"refresh:{secret}".encode()).hexdigest()


class TokenIssuer:
    """Signs, verifies and rotates HS256 access/refresh token pairs.

    One live refresh token per account: :meth:`issue` revokes whatever was
    stored before (see :meth:`_revoke_on_issue`). Supporting several devices
    would mean replacing that rule, nothing else.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        secret: str,
        refresh_secret: Optional[str] = None,
        issuer: str = "hotelbook",
        audience: str = "hotelbook-web",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._secrets = {
            ACCESS: secret,
            REFRESH: refresh_secret or _derive_refresh_secret(secret),
        }
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _sign(self, signing_input: str, token_type: str) -> str:
        return _encode_segment(
            hmac.new(
                self._secrets[token_type].encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode_jwt(self, token: str, token_type: str) -> dict[str, Any]:
        """Return verified claims or raise ``TokenInvalidError`` / ``TokenExpiredError``."""
        if not token or not token.isascii():
            raise TokenInvalidError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("Invalid token") from None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("Invalid token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalidError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("Invalid token")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Invalid token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("Invalid token")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenInvalidError("Invalid token")
        if payload.get("token_type") != token_type or not payload.get("sub"):
            raise TokenInvalidError("Invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("Invalid token") from None
        if exp_ts <= self._clock().timestamp():
            raise TokenExpiredError("Token expired")
        return payload

    def _mint(self, account: Account) -> TokenPair:
        now = self._clock()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        base = {"iss": self.issuer, "aud": self.audience, "sub": account.id}
        access_token = self._encode_jwt(
            {
                **base,
                "email": account.email,
                "role": account.role,
                "token_type": ACCESS,
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            },
            ACCESS,
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "token_type": REFRESH,
                "jti": str(uuid.uuid4()),
                "exp": int(refresh_exp.timestamp()),
            },
            REFRESH,
        )
        return TokenPair(access_token, refresh_token, access_exp, refresh_exp)

    @staticmethod
    def _revoke_on_issue(account: Account, refresh_token: str) -> None:
        """Single-session rule: a newly issued refresh token replaces the stored one."""
        account.refresh_token = refresh_token

    def issue(self, account: Account) -> TokenPair:
        pair = self._mint(account)
        updated = self.store.update_account(
            account.id, lambda record: self._revoke_on_issue(record, pair.refresh_token)
        )
        if updated is None:
            raise TokenInvalidError("Invalid token")
        return pair

    def verify_access(self, token: str) -> AccountProfile:
        claims = self._decode_jwt(token, ACCESS)
        account = self.store.get_account(claims["sub"])
        if account is None:
            raise TokenInvalidError("Invalid token")
        if claims.get("role") != account.role or claims.get("email") != account.email:
            logger.warning("access_token_claims_mismatch", account_id=account.id)
            raise TokenInvalidError("Invalid token")
        return account.profile()

    def rotate(self, refresh_token: str) -> RotationResult:
        claims = self._decode_jwt(refresh_token, REFRESH)
        minted: list[TokenPair] = []

        def _swap(record: Account) -> None:
            # Compare-and-swap: a superseded or revoked token never rotates
            if not record.refresh_token or not hmac.compare_digest(
                record.refresh_token, refresh_token
            ):
                raise TokenInvalidError("Invalid token", reason="refresh_token_mismatch")
            pair = self._mint(record)
            self._revoke_on_issue(record, pair.refresh_token)
            minted.append(pair)

        updated = self.store.update_account(claims["sub"], _swap)
        if updated is None:
            raise TokenInvalidError("Invalid token", reason="account_not_found")
        return RotationResult(profile=updated.profile(), tokens=minted[0])

    def revoke(self, account_id: str) -> None:
        def _clear(record: Account) -> None:
            record.refresh_token = None

        self.store.update_account(account_id, _clear)

    def account_id_from_refresh(self, refresh_token: str) -> Optional[str]:
        """Best-effort subject lookup for audit records; None if the token is not ours."""
        try:
            return str(self._decode_jwt(refresh_token, REFRESH)["sub"])
        except (TokenInvalidError, TokenExpiredError):
            return None
