"""
auth/credentials.py -- CredentialStore: users plus ephemeral step state.

Users and passkeys are durable and live in UserStore (SQL). Everything that
belongs to a single sign-in attempt lives here in process memory:

  temp sessions        session_id        -> TempSession      (step 1 -> 2)
  verification codes   user_id           -> [VerificationCode], newest first
  code lockouts        user_id           -> unlock time      (after 5 misses)
  step-2 tokens        HMAC(token)       -> Step2Token       (step 2 -> 3)
  auth challenges      user_id           -> [AuthChallenge], newest first
  opaque tokens        HMAC(token)       -> OpaqueToken      (access/refresh)

Concurrency:
  Every read-then-write sequence runs under a per-key lock from _KeyedLocks.
  Two threads completing the same challenge, or rotating the same refresh
  token, serialize on that key and only the first succeeds. purge_expired()
  takes the same lock before each conditional delete, so the sweep never
  evicts a record another thread is holding mid-operation.

Outcomes:
  No method raises for a domain failure. Lookups return None, consumes return
  bool, and verify_latest_code returns a CodeCheck. The orchestrator decides
  which caller-visible error each outcome becomes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from auth import tokens
from auth.models import (
    AuthChallenge,
    CodeCheck,
    CodeFailure,
    OpaqueToken,
    Passkey,
    Step2Token,
    TempSession,
    TokenClaims,
    TokenPair,
    TokenType,
    User,
    VerificationCode,
)
from auth.store import UserStore

logger = logging.getLogger("stepgate.auth")

MAX_CODES_PER_USER = 5
MAX_CHALLENGES_PER_USER = 5
CODE_SHORT_LOCK_AFTER = 3
CODE_MAX_ATTEMPTS = 5
CODE_LOCKOUT = timedelta(minutes=15)

TEMP_SESSION_TTL = timedelta(minutes=10)
CODE_TTL = timedelta(minutes=5)
STEP2_TOKEN_TTL = timedelta(minutes=10)
CHALLENGE_TTL = timedelta(minutes=5)
ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _KeyedLocks:
    """One mutex per key, created on demand and dropped when nobody holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [Lock, holders]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class CredentialStore:
    """The single store the orchestrator talks to.

    Constructed once at process start and injected; tests build their own
    with a controllable clock.
    """

    def __init__(
        self,
        users: UserStore,
        secret_key: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._users = users
        self._secret_key = secret_key
        self._now = clock
        self._locks = _KeyedLocks()
        self._temp_sessions: dict[str, TempSession] = {}
        self._codes: dict[int, list[VerificationCode]] = {}
        self._code_lockouts: dict[int, datetime] = {}
        self._step2_tokens: dict[str, Step2Token] = {}
        self._challenges: dict[int, list[AuthChallenge]] = {}
        self._opaque_tokens: dict[str, OpaqueToken] = {}

    def _digest(self, value: str) -> str:
        return tokens.keyed_digest(self._secret_key, value)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def find_user_by_username(self, username: str) -> User | None:
        return self._users.get_by_username(username)

    def find_user_by_id(self, user_id: int) -> User | None:
        return self._users.get_by_id(user_id)

    def verify_password(self, password_hash: str, plain: str) -> bool:
        return tokens.verify_password(plain, password_hash)

    # ------------------------------------------------------------------
    # Temp sessions (step 1 -> step 2)
    # ------------------------------------------------------------------

    def create_temp_session(self, user_id: int, ttl: timedelta = TEMP_SESSION_TTL) -> str:
        session_id = tokens.generate_session_id()
        with self._locks.hold(("session", session_id)):
            self._temp_sessions[session_id] = TempSession(
                id=session_id, user_id=user_id, expires_at=self._now() + ttl
            )
        return session_id

    def get_temp_session(self, session_id: str) -> TempSession | None:
        """Return the live session, or None if unknown or expired."""
        with self._locks.hold(("session", session_id)):
            session = self._temp_sessions.get(session_id)
            if session is None or session.expires_at <= self._now():
                return None
            return session

    # ------------------------------------------------------------------
    # Verification codes (step 2)
    # ------------------------------------------------------------------

    def save_verification_code(self, user_id: int, code: str, ttl: timedelta = CODE_TTL) -> None:
        """Store a keyed hash of the code; only the newest 5 per user are kept."""
        record = VerificationCode(
            user_id=user_id,
            code_hash=self._digest(code),
            expires_at=self._now() + ttl,
        )
        with self._locks.hold(("code", user_id)):
            current = self._codes.get(user_id, [])
            self._codes[user_id] = [record, *current][:MAX_CODES_PER_USER]

    def verify_latest_code(self, user_id: int, code: str) -> CodeCheck:
        """Check `code` against the newest unused, unexpired code for the user.

        Match: the code is marked used and its failure counter reset.
        Miss:  failed_attempts grows. From the 3rd miss on, the code is locked
               for failed_attempts seconds. The 5th miss burns the code and
               locks the user out of code verification for 15 minutes.
        """
        with self._locks.hold(("code", user_id)):
            now = self._now()
            lockout = self._code_lockouts.get(user_id)
            if lockout is not None and lockout > now:
                return CodeCheck(ok=False, reason=CodeFailure.locked, lock_until=lockout)

            latest = next(
                (r for r in self._codes.get(user_id, []) if r.used_at is None and r.expires_at > now),
                None,
            )
            if latest is None:
                return CodeCheck(ok=False, reason=CodeFailure.missing)
            if latest.lock_until is not None and latest.lock_until > now:
                return CodeCheck(ok=False, reason=CodeFailure.locked, lock_until=latest.lock_until)

            if tokens.digests_match(latest.code_hash, self._digest(code)):
                latest.used_at = now
                latest.failed_attempts = 0
                return CodeCheck(ok=True)

            latest.failed_attempts += 1
            latest.last_failed_at = now
            if latest.failed_attempts >= CODE_MAX_ATTEMPTS:
                latest.lock_until = now + CODE_LOCKOUT
                latest.used_at = now
                self._code_lockouts[user_id] = latest.lock_until
                return CodeCheck(ok=False, reason=CodeFailure.max_attempts, lock_until=latest.lock_until)
            if latest.failed_attempts >= CODE_SHORT_LOCK_AFTER:
                latest.lock_until = now + timedelta(seconds=latest.failed_attempts)
            return CodeCheck(ok=False, reason=CodeFailure.invalid, lock_until=latest.lock_until)

    # ------------------------------------------------------------------
    # Step-2 tokens (step 2 -> step 3)
    # ------------------------------------------------------------------

    def create_step2_token(self, user_id: int, ttl: timedelta = STEP2_TOKEN_TTL) -> str:
        token = tokens.generate_step2_token()
        key = self._digest(token)
        with self._locks.hold(("step2", key)):
            self._step2_tokens[key] = Step2Token(token_key=key, user_id=user_id, expires_at=self._now() + ttl)
        return token

    def resolve_step2_token(self, token: str) -> int | None:
        """Return the owning user_id, or None if unknown or expired.

        Non-consuming: the token stays usable until its own TTL runs out, so a
        dropped challenge round-trip can be retried without a new email code.
        """
        key = self._digest(token)
        with self._locks.hold(("step2", key)):
            record = self._step2_tokens.get(key)
            if record is None or record.expires_at <= self._now():
                return None
            return record.user_id

    # ------------------------------------------------------------------
    # Auth challenges (step 3)
    # ------------------------------------------------------------------

    def save_auth_challenge(self, user_id: int, challenge: str, ttl: timedelta = CHALLENGE_TTL) -> None:
        record = AuthChallenge(challenge=challenge, user_id=user_id, expires_at=self._now() + ttl)
        with self._locks.hold(("challenge", user_id)):
            current = self._challenges.get(user_id, [])
            self._challenges[user_id] = [record, *current][:MAX_CHALLENGES_PER_USER]

    def consume_auth_challenge(self, user_id: int, challenge: str) -> bool:
        """Mark the user's matching live challenge used. False if none or already used."""
        with self._locks.hold(("challenge", user_id)):
            now = self._now()
            for record in self._challenges.get(user_id, []):
                if record.used_at is None and record.expires_at > now and tokens.digests_match(
                    record.challenge, challenge
                ):
                    record.used_at = now
                    return True
            return False

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def find_passkey_by_credential_id(self, user_id: int, credential_id: str) -> Passkey | None:
        return self._users.get_passkey(user_id, credential_id)

    def update_passkey_sign_count(self, user_id: int, credential_id: str, new_count: int) -> bool:
        """Compare-and-swap the counter forward. False if it would not increase."""
        return self._users.update_sign_count(user_id, credential_id, new_count)

    # ------------------------------------------------------------------
    # Opaque access / refresh tokens
    # ------------------------------------------------------------------

    def _put_token(self, raw: str, user_id: int, token_type: TokenType, ttl: timedelta) -> str:
        key = self._digest(raw)
        now = self._now()
        with self._locks.hold(("token", key)):
            self._opaque_tokens[key] = OpaqueToken(
                token_key=key, user_id=user_id, type=token_type, expires_at=now + ttl, created_at=now
            )
        return key

    def issue_access_token(self, user_id: int, ttl: timedelta = ACCESS_TOKEN_TTL) -> str:
        access = tokens.generate_access_token()
        self._put_token(access, user_id, TokenType.access, ttl)
        return access

    def issue_opaque_token_pair(
        self,
        user_id: int,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
    ) -> TokenPair:
        access = self.issue_access_token(user_id, access_ttl)
        refresh = tokens.generate_refresh_token()
        self._put_token(refresh, user_id, TokenType.refresh, refresh_ttl)
        return TokenPair(access_token=access, refresh_token=refresh)

    def _live(self, record: OpaqueToken | None, expected_type: TokenType) -> bool:
        return (
            record is not None
            and record.type == expected_type
            and record.revoked_at is None
            and record.expires_at > self._now()
        )

    def verify_opaque_token(self, token: str, expected_type: TokenType) -> TokenClaims | None:
        """Return the claims for a live token of the expected type, else None."""
        key = self._digest(token)
        with self._locks.hold(("token", key)):
            record = self._opaque_tokens.get(key)
            if not self._live(record, expected_type):
                return None
            return TokenClaims(user_id=record.user_id, type=record.type)

    def rotate_refresh_token(self, token: str, ttl: timedelta = REFRESH_TOKEN_TTL) -> str | None:
        """Revoke a live refresh token and mint its linked successor.

        Returns the new raw token, or None if the old one was unknown, expired,
        revoked, or not a refresh token. Atomic per token: of two concurrent
        rotations of the same token exactly one gets a successor.
        """
        key = self._digest(token)
        with self._locks.hold(("token", key)):
            record = self._opaque_tokens.get(key)
            if not self._live(record, TokenType.refresh):
                return None
            successor = tokens.generate_refresh_token()
            record.revoked_at = self._now()
            record.replaced_by = self._put_token(successor, record.user_id, TokenType.refresh, ttl)
        return successor

    def revoke_opaque_token(self, token: str) -> bool:
        """Revoke a live token of either type. False if it was not live."""
        key = self._digest(token)
        with self._locks.hold(("token", key)):
            record = self._opaque_tokens.get(key)
            if record is None or not self._live(record, record.type):
                return False
            record.revoked_at = self._now()
            return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Remove expired records from every collection. Returns the count removed.

        Iterates over a snapshot of keys and re-checks each record under its
        own lock before deleting it.
        """
        removed = 0

        for session_id in list(self._temp_sessions):
            with self._locks.hold(("session", session_id)):
                session = self._temp_sessions.get(session_id)
                if session is not None and session.expires_at <= self._now():
                    del self._temp_sessions[session_id]
                    removed += 1

        for key in list(self._step2_tokens):
            with self._locks.hold(("step2", key)):
                record = self._step2_tokens.get(key)
                if record is not None and record.expires_at <= self._now():
                    del self._step2_tokens[key]
                    removed += 1

        for user_id in list(self._codes.keys() | self._code_lockouts.keys()):
            with self._locks.hold(("code", user_id)):
                now = self._now()
                lockout = self._code_lockouts.get(user_id)
                if lockout is not None and lockout <= now:
                    del self._code_lockouts[user_id]
                records = self._codes.get(user_id)
                if records is None:
                    continue
                kept = [r for r in records if r.expires_at > now]
                removed += len(records) - len(kept)
                if kept:
                    self._codes[user_id] = kept
                else:
                    del self._codes[user_id]

        for user_id in list(self._challenges):
            with self._locks.hold(("challenge", user_id)):
                records = self._challenges.get(user_id)
                if records is None:
                    continue
                now = self._now()
                kept = [r for r in records if r.expires_at > now]
                removed += len(records) - len(kept)
                if kept:
                    self._challenges[user_id] = kept
                else:
                    del self._challenges[user_id]

        for key in list(self._opaque_tokens):
            with self._locks.hold(("token", key)):
                record = self._opaque_tokens.get(key)
                if record is not None and (record.expires_at <= self._now() or record.revoked_at is not None):
                    del self._opaque_tokens[key]
                    removed += 1

        if removed:
            logger.info("Purged %d expired auth records", removed)
        return removed
