"""
auth/webauthn.py -- ChallengeVerifier: WebAuthn assertion checks done by hand.

Stateless. Generates challenges and authentication options, and verifies a
signed assertion against a stored public key. The authenticator-data layout
is parsed directly:

    offset  0..32   SHA-256(rpId)
    offset 32       flags   (bit 0 = user present, bit 2 = user verified)
    offset 33..37   signature counter, big-endian uint32
    offset 37..     attested credential data / extensions (ignored)

The signature covers authenticatorData || SHA-256(clientDataJSON). Only the
primitive verify call comes from `cryptography`; which algorithm applies is
decided by the type of the stored PEM key:

    EC (P-256)  ECDSA with SHA-256, DER-encoded signature   (COSE -7)
    RSA         PKCS#1 v1.5 with SHA-256                     (COSE -257)
    Ed25519     EdDSA                                        (COSE -8)

verify_authentication never raises. Every failure is an AssertionResult with
verified=False and a short reason for server logs.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import struct

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from auth.models import AssertionResult, PasskeyAssertion

logger = logging.getLogger("stepgate.auth")

AUTHENTICATION_TIMEOUT_MS = 60_000
_RP_ID_HASH_LEN = 32
_MIN_AUTH_DATA_LEN = 37
_FLAG_USER_PRESENT = 0x01
_FLAG_USER_VERIFIED = 0x04


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode base64url with or without padding. Raises ValueError on bad input."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64url") from exc


def parse_client_data(client_data_json: str) -> dict:
    """Decode and parse base64url clientDataJSON. Raises ValueError if unusable."""
    raw = b64url_decode(client_data_json)
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise ValueError("clientDataJSON is not JSON") from exc
    if not isinstance(data, dict):
        raise ValueError("clientDataJSON is not an object")
    return data


def _verify_signature(public_key_pem: str, signature: bytes, payload: bytes) -> bool:
    try:
        key = load_pem_public_key(public_key_pem.encode("ascii"))
    except (ValueError, UnsupportedAlgorithm, UnicodeEncodeError):
        logger.warning("Stored passkey public key could not be loaded")
        return False
    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, payload)
        else:
            logger.warning("Unsupported passkey key type: %s", type(key).__name__)
            return False
    except InvalidSignature:
        return False
    return True


class ChallengeVerifier:
    def generate_challenge(self) -> str:
        """32 random bytes, base64url without padding."""
        return b64url_encode(secrets.token_bytes(32))

    def generate_authentication_options(self, challenge: str, rp_id: str) -> dict:
        """PublicKeyCredentialRequestOptions for navigator.credentials.get().

        allowCredentials is empty: discoverable-credential flow, the browser
        picks the passkey.
        """
        return {
            "challenge": challenge,
            "timeout": AUTHENTICATION_TIMEOUT_MS,
            "rpId": rp_id,
            "userVerification": "required",
            "allowCredentials": [],
        }

    def verify_authentication(
        self,
        assertion: PasskeyAssertion,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        public_key_pem: str,
        previous_sign_count: int,
    ) -> AssertionResult:
        if assertion.type != "public-key":
            return AssertionResult(verified=False, reason="credential_type")
        if not assertion.authenticator_data or not assertion.signature:
            return AssertionResult(verified=False, reason="incomplete_assertion")

        try:
            client_data_raw = b64url_decode(assertion.client_data_json)
            client_data = parse_client_data(assertion.client_data_json)
            auth_data = b64url_decode(assertion.authenticator_data)
            signature = b64url_decode(assertion.signature)
        except ValueError:
            return AssertionResult(verified=False, reason="malformed_assertion")

        if client_data.get("type") != "webauthn.get":
            return AssertionResult(verified=False, reason="client_data_type")
        if client_data.get("challenge") != expected_challenge:
            return AssertionResult(verified=False, reason="challenge_mismatch")
        if client_data.get("origin") != expected_origin:
            return AssertionResult(verified=False, reason="origin_mismatch")

        if len(auth_data) < _MIN_AUTH_DATA_LEN:
            return AssertionResult(verified=False, reason="authenticator_data_short")

        expected_rp_hash = hashlib.sha256(expected_rp_id.encode("utf-8")).digest()
        if not hmac.compare_digest(auth_data[:_RP_ID_HASH_LEN], expected_rp_hash):
            return AssertionResult(verified=False, reason="rp_id_mismatch")

        flags = auth_data[32]
        if not flags & _FLAG_USER_PRESENT or not flags & _FLAG_USER_VERIFIED:
            return AssertionResult(verified=False, reason="user_not_verified")

        (new_sign_count,) = struct.unpack(">I", auth_data[33:37])
        if new_sign_count <= previous_sign_count:
            return AssertionResult(verified=False, reason="sign_count_not_increased")

        signed_payload = auth_data + hashlib.sha256(client_data_raw).digest()
        if not _verify_signature(public_key_pem, signature, signed_payload):
            return AssertionResult(verified=False, reason="bad_signature")

        return AssertionResult(verified=True, new_sign_count=new_sign_count)
