"""
auth/tokens.py -- Password hashing, one-time codes, and opaque token utilities.

Security design decisions:
  Passwords: scrypt (hashlib) with a random 16-byte salt and a fixed cost
       (N=2^14, r=8, p=1, 64-byte digest). Encoded as "<hex-salt>:<hex-digest>".
       scrypt is memory-hard, which is what low-entropy passwords need.
       Verification recomputes the digest and compares with
       hmac.compare_digest, which never short-circuits on the first differing
       byte. The _DUMMY_HASH constant enables timing equalization for unknown
       usernames [C1].

  Email codes: secrets.randbelow over the exact range [100000, 999999], so
       every 6-digit code is equally likely and none has a leading zero.

  Opaque tokens: secrets.token_urlsafe / token_hex. 256 bits or more of
       entropy; brute force is computationally infeasible. The store keeps
       HMAC-SHA256(SECRET_KEY, token) instead of the raw value so lookup is
       O(1) and a memory dump yields nothing usable. scrypt's slowness is
       unnecessary for high-entropy secrets.

Layer rule: no imports from api/. Pure functions; callers pass the key.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

_SALT_BYTES = 16
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_DKLEN = 64

CODE_MIN = 100_000
CODE_MAX = 999_999

# ---------------------------------------------------------------------------
# Password hashing (scrypt)
# ---------------------------------------------------------------------------


def _scrypt(plain: str, salt: bytes) -> bytes:
    return hashlib.scrypt(
        plain.encode("utf-8"),
        salt=salt,
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        dklen=_SCRYPT_DKLEN,
    )


def hash_password(plain: str) -> str:
    """Return "<hex-salt>:<hex-digest>" for the given plaintext password."""
    salt = secrets.token_bytes(_SALT_BYTES)
    return f"{salt.hex()}:{_scrypt(plain, salt).hex()}"


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the encoded scrypt hash.

    A malformed hash is a mismatch, not an error.
    """
    salt_hex, sep, digest_hex = hashed.partition(":")
    if not sep or not salt_hex or not digest_hex:
        return False
    try:
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        return False
    if len(expected) != _SCRYPT_DKLEN:
        return False
    return hmac.compare_digest(_scrypt(plain, salt), expected)


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Always call verify_password() even when the
# username does not exist.
_DUMMY_HASH: str = hash_password("stepgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one scrypt evaluation against the dummy hash and discard it."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# One-time email codes
# ---------------------------------------------------------------------------


def generate_email_code() -> str:
    """Return a uniformly drawn 6-digit code in [100000, 999999]."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


# ---------------------------------------------------------------------------
# Opaque bearer values
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def generate_step2_token() -> str:
    """64 hex chars (32 random bytes)."""
    return secrets.token_hex(32)


def generate_access_token() -> str:
    return secrets.token_urlsafe(32)


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def keyed_digest(secret_key: str, value: str) -> str:
    """Return HMAC-SHA256(secret_key, value) as hex.

    Deterministic, so it doubles as the lookup key for stored tokens and as
    the stored form of email codes.
    """
    return hmac.new(secret_key.encode(), value.encode(), hashlib.sha256).hexdigest()


def digests_match(left: str, right: str) -> bool:
    """Constant-time equality. Compares UTF-8 bytes so non-ASCII input is a mismatch, not a TypeError."""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
