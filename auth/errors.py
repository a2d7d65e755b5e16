"""
auth/errors.py -- Caller-visible error taxonomy for the three-step protocol.

Only the orchestrator (and the lockout guard, for its own policy) raise these.
The store and the verifier return structured outcomes; the orchestrator maps
them here. Stage-internal detail never crosses that boundary: an unknown
username and a wrong password both become InvalidCredentials.

Every lockout-class error carries an absolute unlock time so the HTTP layer
can emit Retry-After.

Layer rule: no imports from api/ or core/. HTTP status codes live in api/.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone


class AuthError(Exception):
    """Base class. `code` is the stable machine-readable identifier."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class SessionExpiredOrInvalid(AuthError):
    code = "session_expired_or_invalid"
    message = "Invalid or expired session."


class InvalidOrExpiredCode(AuthError):
    code = "invalid_or_expired_code"
    message = "Invalid or expired code."


class InvalidStep2Token(AuthError):
    code = "invalid_step2_token"
    message = "Invalid or expired step 2 token."


class InvalidOrExpiredChallenge(AuthError):
    code = "invalid_or_expired_challenge"
    message = "Invalid or expired challenge."


class UnknownPasskey(AuthError):
    code = "unknown_passkey"
    message = "Passkey is not registered for this account."


class SignatureVerificationFailed(AuthError):
    code = "signature_verification_failed"
    message = "Passkey verification failed."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    message = "Invalid or expired refresh token."


class InvalidAccessToken(AuthError):
    code = "invalid_access_token"
    message = "Invalid or expired access token."


class AuthLocked(AuthError):
    """Too many failures; locked until `lock_until` (UTC)."""

    code = "auth_locked"
    message = "Too many failed attempts. Temporarily locked."

    def __init__(self, lock_until: datetime, message: str | None = None) -> None:
        super().__init__(message)
        self.lock_until = lock_until

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        return max(1, math.ceil((self.lock_until - now).total_seconds()))


class RateLimited(AuthError):
    """Request window exhausted; retry after `retry_after` seconds."""

    code = "rate_limited"
    message = "Too many requests. Please try again shortly."

    def __init__(self, retry_after: float, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def retry_after_seconds(self, now: datetime | None = None) -> int:
        return max(1, math.ceil(self.retry_after))


class EmailDeliveryError(Exception):
    """The email transport could not deliver a verification code."""
