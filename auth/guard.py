"""
auth/guard.py -- LockoutGuard: throttling applied in front of the orchestrator.

Boundary-layer policy, kept apart from the CredentialStore's own code-lockout
fields. Both apply: a caller has to get past the guard and then past the
store's per-code counters.

  Per-IP moving windows    step 1 at 20/minute, step-2 verify at 30/minute.
                           Backed by `limits` (the engine under slowapi) so
                           the limits are plain strings such as "20/minute".
  Per-username lockout     5 consecutive step-1 failures lock the username for
                           10 minutes, from any IP. Success resets it, and a
                           username with no failure for 10 minutes starts over.
  Per-session lockout      8 failed step-2 verifications within 10 minutes
                           lock that session for 10 minutes.

Exhausted windows raise RateLimited(retry_after); identity lockouts raise
AuthLocked(lock_until). The counters take an injectable clock; the IP windows
use the wall clock inside `limits`.

Layer rule: no imports from api/. The caller supplies the client IP.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from auth.errors import AuthError, AuthLocked, InvalidCredentials, RateLimited
from auth.models import PasskeyAssertion, TokenPair, User
from auth.service import AuthOrchestrator

logger = logging.getLogger("stepgate.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GuardPolicy:
    step1_rate_limit: str = "20/minute"
    step2_verify_rate_limit: str = "30/minute"
    username_max_failures: int = 5
    username_lockout: timedelta = timedelta(minutes=10)
    session_max_failures: int = 8
    session_failure_window: timedelta = timedelta(minutes=10)
    session_lockout: timedelta = timedelta(minutes=10)


@dataclass
class _FailureCounter:
    count: int = 0
    window_ends: datetime | None = None
    lock_until: datetime | None = None


class LockoutGuard:
    """Wraps an AuthOrchestrator with IP windows and identity lockouts.

    Exposes the orchestrator's surface with an extra leading `client_ip`
    argument on the throttled steps. The other operations pass through.
    """

    def __init__(
        self,
        auth: AuthOrchestrator,
        policy: GuardPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._auth = auth
        self._policy = policy or GuardPolicy()
        self._now = clock
        self._windows = MovingWindowRateLimiter(MemoryStorage())
        self._step1_limit = parse(self._policy.step1_rate_limit)
        self._step2_limit = parse(self._policy.step2_verify_rate_limit)
        self._lock = threading.Lock()
        self._username_failures: dict[str, _FailureCounter] = {}
        self._session_failures: dict[str, _FailureCounter] = {}

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _hit_ip(self, limit, scope: str, client_ip: str) -> None:
        if self._windows.hit(limit, scope, client_ip):
            return
        reset_time, _remaining = self._windows.get_window_stats(limit, scope, client_ip)
        retry_after = max(1.0, reset_time - time.time())
        logger.warning("Rate limit %s exceeded for %s on %s", limit, client_ip, scope)
        raise RateLimited(retry_after)

    def _ensure_unlocked(self, counters: dict[str, _FailureCounter], key: str) -> None:
        with self._lock:
            record = counters.get(key)
            if record is not None and record.lock_until is not None:
                if record.lock_until > self._now():
                    raise AuthLocked(record.lock_until)
                del counters[key]

    def _record_username_failure(self, username: str) -> None:
        with self._lock:
            now = self._now()
            record = self._username_failures.get(username)
            if record is None or (record.window_ends is not None and record.window_ends <= now):
                record = _FailureCounter()
                self._username_failures[username] = record
            record.count += 1
            # Sliding: each failure restarts the quiet period.
            record.window_ends = now + self._policy.username_lockout
            if record.count >= self._policy.username_max_failures:
                record.lock_until = now + self._policy.username_lockout
                logger.warning("Username locked until %s after %d failures", record.lock_until, record.count)

    def _record_session_failure(self, session_id: str) -> None:
        with self._lock:
            now = self._now()
            record = self._session_failures.get(session_id)
            if record is None or record.window_ends is None or record.window_ends <= now:
                record = _FailureCounter(window_ends=now + self._policy.session_failure_window)
                self._session_failures[session_id] = record
            record.count += 1
            if record.count >= self._policy.session_max_failures:
                record.lock_until = now + self._policy.session_lockout
                logger.warning("Session locked until %s after %d failures", record.lock_until, record.count)

    def _clear(self, counters: dict[str, _FailureCounter], key: str) -> None:
        with self._lock:
            counters.pop(key, None)

    def purge_expired(self) -> int:
        """Drop counters whose lock and window have both lapsed."""
        removed = 0
        with self._lock:
            now = self._now()
            for counters in (self._username_failures, self._session_failures):
                for key, record in list(counters.items()):
                    if record.lock_until is not None:
                        lapsed = record.lock_until <= now
                    else:
                        lapsed = record.window_ends is not None and record.window_ends <= now
                    if lapsed:
                        del counters[key]
                        removed += 1
        return removed

    # ------------------------------------------------------------------
    # Guarded surface
    # ------------------------------------------------------------------

    def begin_password(self, client_ip: str, username: str, password: str) -> str:
        self._hit_ip(self._step1_limit, "step1", client_ip)
        self._ensure_unlocked(self._username_failures, username)
        try:
            session_id = self._auth.begin_password(username, password)
        except InvalidCredentials:
            self._record_username_failure(username)
            raise
        self._clear(self._username_failures, username)
        return session_id

    def request_email_code(self, session_id: str) -> None:
        self._auth.request_email_code(session_id)

    def verify_email_code(self, client_ip: str, session_id: str, code: str) -> str:
        self._hit_ip(self._step2_limit, "step2_verify", client_ip)
        self._ensure_unlocked(self._session_failures, session_id)
        try:
            step2_token = self._auth.verify_email_code(session_id, code)
        except AuthError:
            self._record_session_failure(session_id)
            raise
        self._clear(self._session_failures, session_id)
        return step2_token

    def begin_passkey(self, step2_token: str) -> dict:
        return self._auth.begin_passkey(step2_token)

    def complete_passkey(self, step2_token: str, assertion: PasskeyAssertion, expected_origin: str) -> TokenPair:
        return self._auth.complete_passkey(step2_token, assertion, expected_origin)

    def rotate_refresh_token(self, refresh_token: str) -> str:
        return self._auth.rotate_refresh_token(refresh_token)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self._auth.refresh(refresh_token)

    def authenticate(self, access_token: str) -> User:
        return self._auth.authenticate(access_token)

    def logout(self, refresh_token: str) -> None:
        self._auth.logout(refresh_token)
