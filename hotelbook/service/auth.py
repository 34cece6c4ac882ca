from __future__ import annotations

import contextlib
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional, Protocol

from hotelbook.config import Settings
from hotelbook.logging import get_logger
from hotelbook.service.audit import AuditEvent, AuditRecorder
from hotelbook.service.crypto import FieldCipher
from hotelbook.service.email import OtpDelivery
from hotelbook.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNoChallengeError,
    PasswordExpiredError,
    PasswordReuseError,
    PolicyViolationError,
    ServiceError,
    TokenInvalidError,
    ValidationError,
)
from hotelbook.service.hashing import SecretHasher
from hotelbook.service.lockout import LockoutGuard
from hotelbook.service.otp import OtpChallengeManager, OtpFailure
from hotelbook.service.password_policy import is_expired, validate_strength
from hotelbook.service.tokens import TokenIssuer, TokenPair
from hotelbook.storage.errors import ConstraintViolation
from hotelbook.storage.models import (
    Account,
    AccountProfile,
    AccountRole,
    AuditAction,
    AuditEntry,
    RequestOrigin,
    utcnow,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        ...

    def append_audit(self, entry: AuditEntry) -> None:
        ...

    def list_audit(self, **filters) -> List[AuditEntry]:
        ...


@dataclass
class OtpPending:
    email: str
    requires_mfa: bool = True


@dataclass
class SessionGrant:
    profile: AccountProfile
    tokens: TokenPair


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", value or "").strip().lower()


_OTP_ERRORS = {
    OtpFailure.NO_CHALLENGE: (OtpNoChallengeError, "No verification code is pending"),
    OtpFailure.EXPIRED: (OtpExpiredError, "Verification code expired"),
    OtpFailure.MISMATCH: (OtpMismatchError, "Invalid verification code"),
}


class AuthService:
    """Sequences signup, login, MFA, refresh, logout and password change.

    Each public transition runs inside :meth:`_audited`, which hands exactly
    one event to the audit sink whether the transition succeeds or raises.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        delivery: OtpDelivery,
        audit: Optional[AuditRecorder] = None,
        cipher: Optional[FieldCipher] = None,
        hasher: Optional[SecretHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.delivery = delivery
        self.audit = audit or AuditRecorder(store, clock=clock)
        self.cipher = cipher or FieldCipher(settings.encryption_key or settings.jwt_secret)
        self.hasher = hasher or SecretHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self._clock = clock
        self.lockout = LockoutGuard(
            store,
            max_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_duration_minutes),
            clock=clock,
        )
        self.otp = OtpChallengeManager(
            store,
            self.hasher,
            self.lockout,
            ttl=timedelta(minutes=settings.otp_ttl_minutes),
            clock=clock,
        )
        self.tokens = TokenIssuer(
            store,
            secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock=clock,
        )
        self.logger = logger

    @contextlib.contextmanager
    def _audited(
        self,
        action: AuditAction,
        origin: RequestOrigin,
        *,
        email: Optional[str] = None,
    ) -> Iterator[AuditEvent]:
        event = AuditEvent(action=action, origin=origin)
        if email:
            event.metadata["email"] = email
        try:
            yield event
        except ServiceError as exc:
            event.fail(exc.reason)
            self.logger.info(
                "auth_transition_failed",
                action=action.value,
                reason=exc.reason,
                account_id=event.account_id,
            )
            raise
        except Exception:
            event.fail("server_error")
            raise
        finally:
            self.audit.emit(event)

    def _send_challenge(self, account: Account, event: AuditEvent) -> None:
        code = self.otp.issue(account)
        delivered = self.delivery.deliver_otp(
            account.email, code, ttl_minutes=self.settings.otp_ttl_minutes
        )
        if not delivered:
            self.logger.warning("otp_delivery_failed", account_id=account.id)
        event.metadata["challenge_delivered"] = bool(delivered)

    def signup(
        self,
        email: str,
        password: str,
        full_name: str,
        phone: Optional[str] = None,
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> OtpPending:
        email = normalize_email(email)
        with self._audited(AuditAction.SIGNUP, origin, email=email) as event:
            policy = validate_strength(password)
            if not policy.valid:
                raise PolicyViolationError(policy.violations)
            if not (full_name or "").strip():
                raise ValidationError("Full name is required", detail={"field": "fullName"})
            if self.store.get_account_by_email(email) is not None:
                raise ConflictError("Email already registered", reason="email_taken")
            account = Account.new(
                email,
                full_name.strip(),
                self.hasher.hash(password),
                phone_encrypted=self.cipher.encrypt(phone),
                now=self._clock(),
            )
            try:
                account = self.store.create_account(account)
            except ConstraintViolation:
                raise ConflictError("Email already registered", reason="email_taken") from None
            event.account_id = account.id
            self._send_challenge(account, event)
            self.logger.info("account_registered", account_id=account.id)
            return OtpPending(email=account.email)

    def login(
        self,
        email: str,
        password: str,
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> OtpPending:
        email = normalize_email(email)
        with self._audited(AuditAction.LOGIN, origin, email=email) as event:
            account = self.store.get_account_by_email(email)
            if account is None:
                self.hasher.burn(password or "")
                raise InvalidCredentialsError(reason="account_not_found")
            event.account_id = account.id
            if self.lockout.is_locked(account):
                raise AccountLockedError(account.lock_until)
            if not self.hasher.verify(account.password_hash, password or ""):
                self.lockout.record_failure(account.id)
                raise InvalidCredentialsError(reason="invalid_password")
            self._send_challenge(account, event)
            return OtpPending(email=account.email)

    def verify_mfa(
        self,
        email: str,
        code: str,
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> SessionGrant:
        email = normalize_email(email)
        with self._audited(AuditAction.MFA_VERIFY, origin, email=email) as event:
            account = self.store.get_account_by_email(email)
            if account is None:
                raise OtpNoChallengeError(
                    _OTP_ERRORS[OtpFailure.NO_CHALLENGE][1], reason="account_not_found"
                )
            event.account_id = account.id
            if self.lockout.is_locked(account):
                raise AccountLockedError(account.lock_until)
            result = self.otp.verify(account, code)
            if not result.ok:
                error_cls, message = _OTP_ERRORS[result.reason]
                raise error_cls(message)
            tokens = self.tokens.issue(result.account)
            return SessionGrant(profile=result.account.profile(), tokens=tokens)

    def refresh(
        self,
        refresh_token: Optional[str],
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> SessionGrant:
        with self._audited(AuditAction.TOKEN_REFRESH, origin) as event:
            if not refresh_token:
                raise TokenInvalidError("Refresh token required", reason="missing_token")
            event.account_id = self.tokens.account_id_from_refresh(refresh_token)
            rotated = self.tokens.rotate(refresh_token)
            return SessionGrant(profile=rotated.profile, tokens=rotated.tokens)

    def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> None:
        with self._audited(AuditAction.LOGOUT, origin) as event:
            if not access_token:
                raise AuthenticationError("Authentication required", reason="missing_token")
            profile = self.tokens.verify_access(access_token)
            event.account_id = profile.id
            account = self.store.get_account(profile.id)
            stored = account.refresh_token if account else None
            if refresh_token and stored and stored != refresh_token:
                # Someone else rotated this session; revoking still ends it
                event.metadata["refresh_mismatch"] = True
            self.tokens.revoke(profile.id)

    def authenticate(
        self,
        access_token: Optional[str],
        *,
        allow_expired_password: bool = False,
    ) -> AccountProfile:
        """Resolve an access token to a usable account or raise.

        Locked accounts are refused. An expired password is flagged on the
        account and refused unless ``allow_expired_password`` is set.
        """
        if not access_token:
            raise AuthenticationError("Authentication required", reason="missing_token")
        profile = self.tokens.verify_access(access_token)
        now = self._clock()
        if profile.is_locked(now):
            raise AccountLockedError(profile.lock_until)
        if is_expired(profile.last_password_change, self.settings.password_expiry_days, now):
            if not profile.password_expired:

                def _flag(record: Account) -> None:
                    record.password_expired = True

                self.store.update_account(profile.id, _flag)
                profile.password_expired = True
            if not allow_expired_password:
                raise PasswordExpiredError("Password expired, please change it")
        return profile

    def authorize_admin(self, access_token: Optional[str]) -> AccountProfile:
        profile = self.authenticate(access_token)
        if profile.role != AccountRole.ADMIN.value:
            raise ForbiddenError("Admin access required")
        return profile

    def change_password(
        self,
        access_token: Optional[str],
        current_password: str,
        new_password: str,
        *,
        origin: RequestOrigin = RequestOrigin(),
    ) -> AccountProfile:
        with self._audited(AuditAction.PASSWORD_CHANGE, origin) as event:
            profile = self.authenticate(access_token, allow_expired_password=True)
            event.account_id = profile.id
            account = self.store.get_account(profile.id)
            if account is None:
                raise TokenInvalidError("Invalid token", reason="account_not_found")
            if not self.hasher.verify(account.password_hash, current_password or ""):
                self.lockout.record_failure(account.id)
                raise InvalidCredentialsError(
                    "Current password is incorrect", reason="wrong_current_password"
                )
            policy = validate_strength(new_password)
            if not policy.valid:
                raise PolicyViolationError(policy.violations)
            if self.hasher.matches_any(account.password_history, new_password):
                raise PasswordReuseError(
                    f"Cannot reuse any of your last {self.settings.password_history_size} passwords"
                )
            new_hash = self.hasher.hash(new_password)
            now = self._clock()
            expected_hash = account.password_hash

            def _apply(record: Account) -> None:
                if record.password_hash != expected_hash:
                    raise ConflictError(
                        "Password was changed by another request", reason="concurrent_change"
                    )
                record.apply_password_change(
                    new_hash, now, history_size=self.settings.password_history_size
                )

            updated = self.store.update_account(account.id, _apply)
            self.logger.info("password_changed", account_id=account.id)
            return updated.profile()

    def update_profile(
        self,
        access_token: Optional[str],
        *,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        origin: RequestOrigin = RequestOrigin(),
    ) -> AccountProfile:
        with self._audited(AuditAction.PROFILE_UPDATE, origin) as event:
            profile = self.authenticate(access_token)
            event.account_id = profile.id
            if full_name is not None and not full_name.strip():
                raise ValidationError("Full name cannot be empty", detail={"field": "fullName"})
            changed = [
                name
                for name, value in (("fullName", full_name), ("phone", phone))
                if value is not None
            ]
            phone_encrypted = self.cipher.encrypt(phone) if phone else None

            def _apply(record: Account) -> None:
                if full_name is not None:
                    record.full_name = full_name.strip()
                if phone is not None:
                    record.phone_encrypted = phone_encrypted

            updated = self.store.update_account(profile.id, _apply)
            if updated is None:
                raise TokenInvalidError("Invalid token", reason="account_not_found")
            event.metadata["fields"] = changed
            return updated.profile()

    def decrypt_phone(self, profile: AccountProfile) -> Optional[str]:
        return self.cipher.decrypt(profile.phone_encrypted)

    def list_audit(self, **filters) -> List[AuditEntry]:
        return self.audit.list_entries(**filters)
