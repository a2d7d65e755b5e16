"""
auth/models.py -- Domain dataclasses for authentication entities and outcomes.

Pattern: Data class (pure data container, zero logic). Stores, the verifier
and the orchestrator do the work; these types only carry shape.

Two groups live here:
  Records  -- User, Passkey and the ephemeral step records the CredentialStore
              keeps in memory (TempSession, VerificationCode, Step2Token,
              AuthChallenge, OpaqueToken).
  Outcomes -- the structured results the store and verifier return instead of
              raising (CodeCheck, TokenClaims, TokenPair, AssertionResult).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"


class CodeFailure(str, Enum):
    missing = "missing"
    locked = "locked"
    invalid = "invalid"
    max_attempts = "max_attempts"


# ---------------------------------------------------------------------------
# Durable records (UserStore)
# ---------------------------------------------------------------------------


@dataclass
class Passkey:
    """A registered WebAuthn credential owned by a User.

    public_key_pem is the credential public key as PEM SubjectPublicKeyInfo.
    sign_count only ever grows; the store refuses to move it backwards.
    """

    credential_id: str
    public_key_pem: str
    sign_count: int = 0
    user_id: int | None = None
    created_at: str | None = None


@dataclass
class User:
    """An identity that can sign in through all three steps.

    password_hash is "<hex-salt>:<hex-digest>" (see auth/tokens.py).
    passkeys is the owned child collection, loaded with the user.
    """

    username: str
    email: str
    password_hash: str
    id: int | None = None
    passkeys: list[Passkey] = field(default_factory=list)
    created_at: str | None = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# Ephemeral records (CredentialStore)
# ---------------------------------------------------------------------------


@dataclass
class TempSession:
    id: str
    user_id: int
    expires_at: datetime


@dataclass
class VerificationCode:
    """A hashed one-time email code. Only the newest live record counts."""

    user_id: int
    code_hash: str
    expires_at: datetime
    used_at: datetime | None = None
    failed_attempts: int = 0
    last_failed_at: datetime | None = None
    lock_until: datetime | None = None


@dataclass
class Step2Token:
    token_key: str  # HMAC digest of the bearer value
    user_id: int
    expires_at: datetime


@dataclass
class AuthChallenge:
    challenge: str
    user_id: int
    expires_at: datetime
    used_at: datetime | None = None


@dataclass
class OpaqueToken:
    """Server-side state for an access or refresh bearer token.

    token_key is HMAC(SECRET_KEY, raw token); the raw value is never stored.
    replaced_by is the token_key of the refresh token minted on rotation.
    """

    token_key: str
    user_id: int
    type: TokenType
    expires_at: datetime
    created_at: datetime
    revoked_at: datetime | None = None
    replaced_by: str | None = None


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodeCheck:
    ok: bool
    reason: CodeFailure | None = None
    lock_until: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    type: TokenType


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AssertionResult:
    """Result of ChallengeVerifier.verify_authentication.

    reason is a short machine string for server-side logs only; it never
    reaches the caller.
    """

    verified: bool
    new_sign_count: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PasskeyAssertion:
    """A WebAuthn assertion as posted by the browser (all fields base64url)."""

    id: str
    type: str
    client_data_json: str
    authenticator_data: str | None = None
    signature: str | None = None
    user_handle: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> PasskeyAssertion:
        """Build from the browser's PublicKeyCredential JSON shape."""
        response = data.get("response") or {}
        return cls(
            id=data.get("id", ""),
            type=data.get("type", ""),
            client_data_json=response.get("clientDataJSON", ""),
            authenticator_data=response.get("authenticatorData"),
            signature=response.get("signature"),
            user_handle=response.get("userHandle"),
        )
