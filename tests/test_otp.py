"""Unit tests for one-time code issuance and verification."""

from datetime import timedelta

import pytest

from hotelbook.service.errors import AccountLockedError, NotFoundError
from hotelbook.service.lockout import LockoutGuard
from hotelbook.service.otp import OtpChallengeManager, OtpFailure
from hotelbook.storage.models import Account, AccountSecurityState


@pytest.fixture
def account(memory_store, clock):
    return memory_store.create_account(
        Account.new("guest@example.com", "Guest", "hash", now=clock())
    )


@pytest.fixture
def lockout(memory_store, clock):
    return LockoutGuard(memory_store, clock=clock)


@pytest.fixture
def otp(memory_store, hasher, lockout, clock):
    return OtpChallengeManager(
        memory_store, hasher, lockout, ttl=timedelta(minutes=10), clock=clock
    )


class TestGenerateCode:
    def test_codes_are_six_digits_without_leading_zero(self):
        for _ in range(200):
            code = OtpChallengeManager.generate_code()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999


class TestIssue:
    def test_stores_only_hash_with_expiry(self, otp, account, memory_store, clock):
        code = otp.issue(account)

        stored = memory_store.get_account(account.id)
        assert stored.otp_hash is not None
        assert stored.otp_hash != code
        assert code not in stored.otp_hash
        assert stored.otp_expiry == clock() + timedelta(minutes=10)
        assert stored.security_state(clock()) == AccountSecurityState.AWAITING_MFA

    def test_new_challenge_supersedes_old(self, otp, account, memory_store):
        first = otp.issue(account)
        second = otp.issue(account)
        if first == second:
            pytest.skip("random codes collided")

        result = otp.verify(memory_store.get_account(account.id), first)

        assert result.ok is False
        assert result.reason == OtpFailure.MISMATCH

    def test_refused_while_locked(self, otp, account, lockout, memory_store):
        for _ in range(5):
            lockout.record_failure(account.id)

        with pytest.raises(AccountLockedError):
            otp.issue(memory_store.get_account(account.id))

        assert memory_store.get_account(account.id).otp_hash is None

    def test_unknown_account(self, otp, clock):
        ghost = Account.new("ghost@example.com", "Ghost", "hash", now=clock())

        with pytest.raises(NotFoundError):
            otp.issue(ghost)


class TestVerify:
    def test_no_challenge(self, otp, account):
        result = otp.verify(account, "123456")

        assert result.ok is False
        assert result.reason == OtpFailure.NO_CHALLENGE

    def test_success_clears_challenge_and_enables_mfa(self, otp, account, memory_store, lockout):
        lockout.record_failure(account.id)
        code = otp.issue(account)

        result = otp.verify(memory_store.get_account(account.id), code)

        assert result.ok is True
        assert result.account.otp_hash is None
        assert result.account.otp_expiry is None
        assert result.account.mfa_enabled is True
        assert result.account.login_attempts == 0

    def test_code_is_accepted_at_most_once(self, otp, account, memory_store):
        code = otp.issue(account)
        snapshot = memory_store.get_account(account.id)

        first = otp.verify(snapshot, code)
        # Same stale snapshot: the store-side check still refuses the replay
        second = otp.verify(snapshot, code)
        third = otp.verify(memory_store.get_account(account.id), code)

        assert first.ok is True
        assert second.ok is False
        assert second.reason == OtpFailure.NO_CHALLENGE
        assert third.reason == OtpFailure.NO_CHALLENGE

    def test_expired_code_is_rejected_and_kept(self, otp, account, memory_store, clock):
        code = otp.issue(account)
        clock.advance(minutes=10, seconds=1)

        result = otp.verify(memory_store.get_account(account.id), code)
        retry = otp.verify(memory_store.get_account(account.id), code)

        assert result.reason == OtpFailure.EXPIRED
        assert retry.reason == OtpFailure.EXPIRED
        stored = memory_store.get_account(account.id)
        assert stored.otp_hash is not None
        assert stored.login_attempts == 0

    def test_mismatch_counts_as_failed_attempt(self, otp, account, memory_store):
        code = otp.issue(account)
        wrong = "100000" if code != "100000" else "100001"

        result = otp.verify(memory_store.get_account(account.id), wrong)

        assert result.reason == OtpFailure.MISMATCH
        stored = memory_store.get_account(account.id)
        assert stored.login_attempts == 1
        assert stored.otp_hash is not None

    @pytest.mark.parametrize("garbage", ["", "12345", "1234567", "abcdef", " 12 34 "])
    def test_malformed_code_is_a_mismatch(self, otp, account, memory_store, garbage):
        otp.issue(account)

        result = otp.verify(memory_store.get_account(account.id), garbage)

        assert result.reason == OtpFailure.MISMATCH
        assert memory_store.get_account(account.id).login_attempts == 1

    def test_fifth_mismatch_locks_and_drops_challenge(self, otp, account, memory_store, clock):
        code = otp.issue(account)
        wrong = "100000" if code != "100000" else "100001"
        for _ in range(5):
            otp.verify(memory_store.get_account(account.id), wrong)

        stored = memory_store.get_account(account.id)
        assert stored.is_locked(clock()) is True
        assert stored.has_otp_challenge is False
        assert otp.verify(stored, code).reason == OtpFailure.NO_CHALLENGE
