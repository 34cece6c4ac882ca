"""Tests for the in-memory credential and audit store."""

from datetime import timedelta

import pytest

from hotelbook.storage.errors import ConstraintViolation, IllegalStateTransition
from hotelbook.storage.models import (
    Account,
    AccountSecurityState,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    SecurityEvent,
    transition_security_state,
)


@pytest.fixture
def account(memory_store, clock):
    return memory_store.create_account(
        Account.new("guest@example.com", "Guest", "hash-0", now=clock())
    )


class TestAccounts:
    def test_duplicate_email_is_a_constraint_violation(self, memory_store, account, clock):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_account(
                Account.new("guest@example.com", "Other", "hash", now=clock())
            )

        assert excinfo.value.detail == {"field": "email"}

    def test_reads_return_copies(self, memory_store, account):
        fetched = memory_store.get_account(account.id)
        fetched.login_attempts = 99

        assert memory_store.get_account(account.id).login_attempts == 0
        assert memory_store.get_account_by_email("guest@example.com").id == account.id

    def test_update_applies_mutation(self, memory_store, account):
        def _bump(record):
            record.login_attempts += 2

        updated = memory_store.update_account(account.id, _bump)

        assert updated.login_attempts == 2
        assert memory_store.get_account(account.id).login_attempts == 2

    def test_failed_mutation_leaves_record_untouched(self, memory_store, account):
        def _half_done(record):
            record.login_attempts = 3
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            memory_store.update_account(account.id, _half_done)

        assert memory_store.get_account(account.id).login_attempts == 0

    def test_identity_fields_are_fixed(self, memory_store, account):
        def _escalate(record):
            record.role = "admin"
            record.email = "other@example.com"

        updated = memory_store.update_account(account.id, _escalate)

        assert updated.role == "user"
        assert updated.email == "guest@example.com"

    def test_update_unknown_account(self, memory_store):
        assert memory_store.update_account("missing", lambda record: None) is None


class TestAccountModel:
    def test_signup_hash_seeds_history(self, account):
        assert account.password_history == ["hash-0"]
        assert account.last_password_change == account.created_at

    def test_history_keeps_last_three(self, account, clock):
        for index in range(1, 5):
            account.apply_password_change(f"hash-{index}", clock(), history_size=3)

        assert account.password_history == ["hash-2", "hash-3", "hash-4"]
        assert account.password_hash == "hash-4"

    def test_password_change_clears_expired_flag(self, account, clock):
        account.password_expired = True

        account.apply_password_change("hash-1", clock())

        assert account.password_expired is False

    def test_profile_strips_credentials(self, account):
        profile = account.profile()

        assert profile.email == account.email
        for secret_field in ("password_hash", "password_history", "otp_hash", "refresh_token"):
            assert not hasattr(profile, secret_field)

    def test_security_states(self, account, clock):
        now = clock()
        assert account.security_state(now) == AccountSecurityState.ACTIVE

        account.set_otp_challenge("otp", now + timedelta(minutes=10), now)
        assert account.security_state(now) == AccountSecurityState.AWAITING_MFA

        account.engage_lock(now + timedelta(minutes=15), now)
        assert account.security_state(now) == AccountSecurityState.LOCKED
        assert account.has_otp_challenge is False

        assert account.security_state(now + timedelta(minutes=16)) == AccountSecurityState.ACTIVE

    def test_locked_account_cannot_receive_challenge(self, account, clock):
        now = clock()
        account.engage_lock(now + timedelta(minutes=15), now)

        with pytest.raises(IllegalStateTransition):
            account.set_otp_challenge("otp", now + timedelta(minutes=10), now)

    def test_active_lock_cannot_be_released(self, account, clock):
        now = clock()
        account.engage_lock(now + timedelta(minutes=15), now)

        with pytest.raises(IllegalStateTransition):
            account.release_lock(now)

        account.release_lock(now + timedelta(minutes=15, seconds=1))
        assert account.lock_until is None

    def test_transition_table(self):
        assert (
            transition_security_state(AccountSecurityState.AWAITING_MFA, SecurityEvent.CHALLENGE_VERIFIED)
            == AccountSecurityState.ACTIVE
        )
        with pytest.raises(IllegalStateTransition):
            transition_security_state(AccountSecurityState.ACTIVE, SecurityEvent.CHALLENGE_VERIFIED)
        with pytest.raises(IllegalStateTransition):
            transition_security_state(AccountSecurityState.LOCKED, SecurityEvent.CHALLENGE_ISSUED)


class TestAudit:
    def _entry(self, action, clock, minutes, account_id="acct-1"):
        return AuditEntry.new(
            action,
            AuditOutcome.SUCCESS,
            account_id=account_id,
            now=clock() + timedelta(minutes=minutes),
        )

    def test_filters_and_orders_newest_first(self, memory_store, clock):
        memory_store.append_audit(self._entry(AuditAction.SIGNUP, clock, 0))
        memory_store.append_audit(self._entry(AuditAction.LOGIN, clock, 5))
        memory_store.append_audit(self._entry(AuditAction.LOGIN, clock, 10, account_id="acct-2"))

        logins = memory_store.list_audit(action=AuditAction.LOGIN)
        mine = memory_store.list_audit(account_id="acct-1")
        window = memory_store.list_audit(
            since=clock() + timedelta(minutes=1), until=clock() + timedelta(minutes=6)
        )

        assert [entry.account_id for entry in logins] == ["acct-2", "acct-1"]
        assert [entry.action for entry in mine] == [AuditAction.LOGIN, AuditAction.SIGNUP]
        assert len(window) == 1
        assert memory_store.list_audit(limit=1)[0].account_id == "acct-2"

    def test_entries_are_immutable(self, clock):
        entry = self._entry(AuditAction.SIGNUP, clock, 0)

        with pytest.raises(AttributeError):
            entry.outcome = AuditOutcome.FAILURE
