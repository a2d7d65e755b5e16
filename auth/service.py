"""
auth/service.py -- AuthOrchestrator: the three-step sign-in state machine.

    Anonymous
      -- begin_password ------> PendingEmailVerification(session_id)
      -- verify_email_code ---> PendingPasskey(step2_token)
      -- complete_passkey ----> Authenticated(access_token, refresh_token)

Each method is linear success-path code: call the store or verifier, check
the structured outcome, raise the matching AuthError and stop. Nothing is
written on a failure path except the store's own code-failure counters.

This is the only layer that turns store/verifier outcomes into the
caller-visible taxonomy in auth/errors.py. Per-IP and per-identity throttling
is not done here; see auth/guard.py.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth import tokens
from auth.credentials import (
    ACCESS_TOKEN_TTL,
    CHALLENGE_TTL,
    CODE_TTL,
    REFRESH_TOKEN_TTL,
    STEP2_TOKEN_TTL,
    TEMP_SESSION_TTL,
    CredentialStore,
)
from auth.errors import (
    AuthLocked,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidOrExpiredChallenge,
    InvalidOrExpiredCode,
    InvalidRefreshToken,
    InvalidStep2Token,
    SessionExpiredOrInvalid,
    SignatureVerificationFailed,
    UnknownPasskey,
)
from auth.mailer import EmailDispatcher
from auth.models import CodeFailure, PasskeyAssertion, TokenPair, TokenType, User
from auth.webauthn import ChallengeVerifier, parse_client_data

logger = logging.getLogger("stepgate.auth")


@dataclass(frozen=True)
class Lifetimes:
    """How long each step's artefact stays valid."""

    temp_session: timedelta = TEMP_SESSION_TTL
    verification_code: timedelta = CODE_TTL
    step2_token: timedelta = STEP2_TOKEN_TTL
    challenge: timedelta = CHALLENGE_TTL
    access_token: timedelta = ACCESS_TOKEN_TTL
    refresh_token: timedelta = REFRESH_TOKEN_TTL


class AuthOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        verifier: ChallengeVerifier,
        email: EmailDispatcher,
        rp_id: str,
        lifetimes: Lifetimes | None = None,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._email = email
        self._rp_id = rp_id
        self._ttl = lifetimes or Lifetimes()

    # ------------------------------------------------------------------
    # Step 1 -- password
    # ------------------------------------------------------------------

    def begin_password(self, username: str, password: str) -> str:
        """Check username/password and open a temp session. Returns its id.

        Unknown and inactive users still cost one scrypt evaluation, so the
        response time does not reveal whether the username exists [C1].
        """
        user = self._store.find_user_by_username(username)
        if user is None or not user.is_active:
            tokens.burn_password_check(password)
            logger.warning("Step 1 failed: bad credentials")
            raise InvalidCredentials()
        if not self._store.verify_password(user.password_hash, password):
            logger.warning("Step 1 failed: bad credentials")
            raise InvalidCredentials()
        return self._store.create_temp_session(user.id, self._ttl.temp_session)

    # ------------------------------------------------------------------
    # Step 2 -- email code
    # ------------------------------------------------------------------

    def _session_user(self, session_id: str) -> User:
        session = self._store.get_temp_session(session_id)
        if session is None:
            raise SessionExpiredOrInvalid()
        user = self._store.find_user_by_id(session.user_id)
        if user is None or not user.is_active:
            raise SessionExpiredOrInvalid()
        return user

    def request_email_code(self, session_id: str) -> None:
        """Generate a fresh code, store its hash, and send it.

        EmailDeliveryError from the dispatcher propagates unchanged.
        """
        user = self._session_user(session_id)
        code = tokens.generate_email_code()
        self._store.save_verification_code(user.id, code, self._ttl.verification_code)
        self._email.send(user.email, code)

    def verify_email_code(self, session_id: str, code: str) -> str:
        """Check the code for the session's user. Returns a step-2 token."""
        session = self._store.get_temp_session(session_id)
        if session is None:
            raise SessionExpiredOrInvalid()
        check = self._store.verify_latest_code(session.user_id, code)
        if not check.ok:
            if check.reason in (CodeFailure.locked, CodeFailure.max_attempts):
                logger.warning("Step 2 locked for user %s until %s", session.user_id, check.lock_until)
                raise AuthLocked(check.lock_until)
            logger.warning("Step 2 failed for user %s: %s", session.user_id, check.reason.value)
            raise InvalidOrExpiredCode()
        return self._store.create_step2_token(session.user_id, self._ttl.step2_token)

    # ------------------------------------------------------------------
    # Step 3 -- passkey
    # ------------------------------------------------------------------

    def _step2_user_id(self, step2_token: str) -> int:
        user_id = self._store.resolve_step2_token(step2_token)
        if user_id is None:
            raise InvalidStep2Token()
        return user_id

    def begin_passkey(self, step2_token: str) -> dict:
        """Issue a challenge for the token's user. Returns {challenge, options}."""
        user_id = self._step2_user_id(step2_token)
        challenge = self._verifier.generate_challenge()
        self._store.save_auth_challenge(user_id, challenge, self._ttl.challenge)
        return {
            "challenge": challenge,
            "options": self._verifier.generate_authentication_options(challenge, self._rp_id),
        }

    def complete_passkey(
        self, step2_token: str, assertion: PasskeyAssertion, expected_origin: str
    ) -> TokenPair:
        """Verify a passkey assertion and issue an opaque token pair.

        The challenge is consumed before the signature is checked, so a failed
        or replayed assertion still burns it.
        """
        user_id = self._step2_user_id(step2_token)

        try:
            presented = parse_client_data(assertion.client_data_json).get("challenge")
        except ValueError:
            raise InvalidOrExpiredChallenge() from None
        if not isinstance(presented, str) or not self._store.consume_auth_challenge(user_id, presented):
            logger.warning("Step 3 failed for user %s: challenge not issued or already used", user_id)
            raise InvalidOrExpiredChallenge()

        passkey = self._store.find_passkey_by_credential_id(user_id, assertion.id)
        if passkey is None:
            logger.warning("Step 3 failed for user %s: unknown credential", user_id)
            raise UnknownPasskey()

        result = self._verifier.verify_authentication(
            assertion,
            expected_challenge=presented,
            expected_origin=expected_origin,
            expected_rp_id=self._rp_id,
            public_key_pem=passkey.public_key_pem,
            previous_sign_count=passkey.sign_count,
        )
        if not result.verified:
            logger.warning("Step 3 failed for user %s: %s", user_id, result.reason)
            raise SignatureVerificationFailed()
        if not self._store.update_passkey_sign_count(user_id, passkey.credential_id, result.new_sign_count):
            logger.warning("Step 3 failed for user %s: sign count raced or regressed", user_id)
            raise SignatureVerificationFailed()

        logger.info("User %s authenticated", user_id)
        return self._store.issue_opaque_token_pair(user_id, self._ttl.access_token, self._ttl.refresh_token)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def rotate_refresh_token(self, refresh_token: str) -> str:
        """Spend a refresh token. Returns its single successor."""
        successor = self._store.rotate_refresh_token(refresh_token, self._ttl.refresh_token)
        if successor is None:
            raise InvalidRefreshToken()
        return successor

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate the refresh token and mint a fresh access token alongside it."""
        claims = self._store.verify_opaque_token(refresh_token, TokenType.refresh)
        if claims is None:
            raise InvalidRefreshToken()
        successor = self.rotate_refresh_token(refresh_token)
        access = self._store.issue_access_token(claims.user_id, self._ttl.access_token)
        return TokenPair(access_token=access, refresh_token=successor)

    def authenticate(self, access_token: str) -> User:
        """Resolve an access token to its active user."""
        claims = self._store.verify_opaque_token(access_token, TokenType.access)
        if claims is None:
            raise InvalidAccessToken()
        user = self._store.find_user_by_id(claims.user_id)
        if user is None or not user.is_active:
            raise InvalidAccessToken()
        return user

    def logout(self, refresh_token: str) -> None:
        if self._store.verify_opaque_token(refresh_token, TokenType.refresh) is None:
            raise InvalidRefreshToken()
        self._store.revoke_opaque_token(refresh_token)
