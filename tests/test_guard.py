"""
tests/test_guard.py -- LockoutGuard throttling in front of the orchestrator.

Identity lockouts run on the FakeClock. IP windows come from `limits` and use
the wall clock, so those tests only ever exhaust a window, never wait one out.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import AuthLocked, InvalidCredentials, RateLimited, SessionExpiredOrInvalid
from auth.guard import GuardPolicy, LockoutGuard


class TestIpWindows:
    def test_step1_window_exhausts(self, orchestrator, clock, seeded_user) -> None:
        guard = LockoutGuard(orchestrator, GuardPolicy(step1_rate_limit="3/minute"), clock=clock)
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.1", "admin", "wrong")
        with pytest.raises(RateLimited) as exc:
            guard.begin_password("10.0.0.1", "admin", "ChangeMe#12345")
        assert 1 <= exc.value.retry_after_seconds() <= 60

    def test_windows_are_per_ip(self, orchestrator, clock, seeded_user) -> None:
        guard = LockoutGuard(orchestrator, GuardPolicy(step1_rate_limit="1/minute"), clock=clock)
        guard.begin_password("10.0.0.1", "admin", "ChangeMe#12345")
        assert guard.begin_password("10.0.0.2", "admin", "ChangeMe#12345")

    def test_step2_verify_window(self, orchestrator, clock) -> None:
        guard = LockoutGuard(orchestrator, GuardPolicy(step2_verify_rate_limit="2/minute"), clock=clock)
        for i in range(2):
            with pytest.raises(SessionExpiredOrInvalid):
                guard.verify_email_code("10.0.0.1", f"s{i}", "123456")
        with pytest.raises(RateLimited):
            guard.verify_email_code("10.0.0.1", "s9", "123456")


class TestUsernameLockout:
    def test_five_failures_lock_the_username_from_any_ip(self, guard, clock, seeded_user) -> None:
        for i in range(5):
            with pytest.raises(InvalidCredentials):
                guard.begin_password(f"10.0.0.{i}", "admin", "wrong")
        with pytest.raises(AuthLocked) as exc:
            guard.begin_password("10.0.1.1", "admin", "ChangeMe#12345")
        assert exc.value.lock_until == clock() + timedelta(minutes=10)

        clock.advance(minutes=10)
        assert guard.begin_password("10.0.1.2", "admin", "ChangeMe#12345")

    def test_success_resets_the_count(self, guard, seeded_user) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.1", "admin", "wrong")
        guard.begin_password("10.0.0.1", "admin", "ChangeMe#12345")
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.1", "admin", "wrong")
        assert guard.begin_password("10.0.0.1", "admin", "ChangeMe#12345")

    def test_quiet_period_starts_the_count_over(self, guard, clock, seeded_user) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.1", "admin", "wrong")
        clock.advance(minutes=10)
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.2", "admin", "wrong")
        assert guard.begin_password("10.0.0.2", "admin", "ChangeMe#12345")

    def test_lockout_is_per_username(self, guard, seeded_user) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                guard.begin_password("10.0.0.1", "mallory", "x")
        assert guard.begin_password("10.0.0.1", "admin", "ChangeMe#12345")


class TestSessionLockout:
    def test_eight_failures_lock_the_session(self, guard, clock) -> None:
        for _ in range(8):
            with pytest.raises(SessionExpiredOrInvalid):
                guard.verify_email_code("10.0.0.1", "sess", "123456")
        with pytest.raises(AuthLocked) as exc:
            guard.verify_email_code("10.0.0.1", "sess", "123456")
        assert exc.value.lock_until == clock() + timedelta(minutes=10)

    def test_failures_outside_the_window_do_not_accumulate(self, guard, clock) -> None:
        for _ in range(7):
            with pytest.raises(SessionExpiredOrInvalid):
                guard.verify_email_code("10.0.0.1", "sess", "123456")
        clock.advance(minutes=10)
        for _ in range(7):
            with pytest.raises(SessionExpiredOrInvalid):
                guard.verify_email_code("10.0.0.1", "sess", "123456")


class TestPurge:
    def test_lapsed_counters_are_dropped(self, guard, clock, seeded_user) -> None:
        with pytest.raises(InvalidCredentials):
            guard.begin_password("10.0.0.1", "admin", "wrong")
        for _ in range(8):
            with pytest.raises(SessionExpiredOrInvalid):
                guard.verify_email_code("10.0.0.1", "sess", "123456")
        assert guard.purge_expired() == 0

        clock.advance(minutes=10)
        assert guard.purge_expired() == 2
        assert guard._username_failures == {}
        assert guard._session_failures == {}

    def test_failed_usernames_do_not_accumulate(self, guard, clock) -> None:
        for i in range(50):
            with pytest.raises(InvalidCredentials):
                guard.begin_password(f"10.1.0.{i}", f"ghost{i}", "wrong")
        assert len(guard._username_failures) == 50

        clock.advance(minutes=9)
        assert guard.purge_expired() == 0
        clock.advance(minutes=1)
        assert guard.purge_expired() == 50
        assert guard._username_failures == {}
