"""Unit tests for failed-attempt counting and temporary locks."""

import threading
from datetime import timedelta

import pytest

from hotelbook.service.lockout import LockoutGuard
from hotelbook.storage.models import Account, AccountSecurityState


@pytest.fixture
def account(memory_store, clock):
    return memory_store.create_account(
        Account.new("guest@example.com", "Guest", "hash", now=clock())
    )


@pytest.fixture
def guard(memory_store, clock):
    return LockoutGuard(
        memory_store, max_attempts=5, lockout_duration=timedelta(minutes=15), clock=clock
    )


class TestRecordFailure:
    def test_increments_below_threshold(self, guard, account):
        for _ in range(3):
            updated = guard.record_failure(account.id)

        assert updated.login_attempts == 3
        assert updated.lock_until is None
        assert guard.is_locked(updated) is False

    def test_locks_at_threshold(self, guard, account, clock):
        for _ in range(5):
            updated = guard.record_failure(account.id)

        assert updated.login_attempts == 5
        assert updated.lock_until == clock() + timedelta(minutes=15)
        assert guard.is_locked(updated) is True
        assert updated.security_state(clock()) == AccountSecurityState.LOCKED

    def test_failure_while_locked_does_not_extend_lock(self, guard, account, clock):
        for _ in range(5):
            guard.record_failure(account.id)
        first_lock = guard.record_failure(account.id).lock_until
        clock.advance(minutes=5)

        updated = guard.record_failure(account.id)

        assert updated.lock_until == first_lock
        assert updated.login_attempts == 7

    def test_failure_after_expiry_resets_counter_to_one(self, guard, account, clock):
        for _ in range(5):
            guard.record_failure(account.id)
        clock.advance(minutes=15, seconds=1)

        updated = guard.record_failure(account.id)

        assert updated.login_attempts == 1
        assert updated.lock_until is None
        assert guard.is_locked(updated) is False

    def test_lock_clears_pending_challenge(self, guard, account, clock, memory_store):
        memory_store.update_account(
            account.id,
            lambda record: record.set_otp_challenge("otp-hash", clock() + timedelta(minutes=10), clock()),
        )
        for _ in range(5):
            updated = guard.record_failure(account.id)

        assert updated.otp_hash is None
        assert updated.otp_expiry is None

    def test_unknown_account_returns_none(self, guard):
        assert guard.record_failure("missing") is None


class TestRecordSuccess:
    def test_resets_counter_and_lock(self, guard, account):
        for _ in range(5):
            guard.record_failure(account.id)

        updated = guard.record_success(account.id)

        assert updated.login_attempts == 0
        assert updated.lock_until is None


class TestConcurrency:
    def test_parallel_failures_never_lose_increments(self, memory_store, account, clock):
        guard = LockoutGuard(memory_store, max_attempts=1000, clock=clock)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(25):
                guard.record_failure(account.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert memory_store.get_account(account.id).login_attempts == 200
