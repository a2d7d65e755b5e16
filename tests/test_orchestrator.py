"""
tests/test_orchestrator.py -- The three-step sign-in state machine.

Drives AuthOrchestrator directly against a real CredentialStore, a real
ChallengeVerifier and a SoftAuthenticator. Covers every step's failure taxonomy,
then the full admin / ChangeMe#12345 sign-in end to end.
"""

from __future__ import annotations

import pytest

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
from auth.models import PasskeyAssertion, User
from auth.service import AuthOrchestrator
from auth.tokens import hash_password
from auth.webauthn import b64url_encode

ORIGIN = "http://localhost:5173"


def _to_step2(orchestrator: AuthOrchestrator, mailer, username="admin", password="ChangeMe#12345") -> str:
    session_id = orchestrator.begin_password(username, password)
    orchestrator.request_email_code(session_id)
    return orchestrator.verify_email_code(session_id, mailer.last_code)


def _wrong(code: str) -> str:
    return "100000" if code != "100000" else "100001"


class TestStep1:
    def test_valid_credentials_bind_the_right_user(self, orchestrator, credentials, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        assert credentials.get_temp_session(session_id).user_id == seeded_user.id

    def test_unknown_user_and_wrong_password_fail_identically(self, orchestrator, seeded_user) -> None:
        with pytest.raises(InvalidCredentials) as unknown:
            orchestrator.begin_password("nobody", "ChangeMe#12345")
        with pytest.raises(InvalidCredentials) as wrong:
            orchestrator.begin_password("admin", "wrong")
        assert type(unknown.value) is type(wrong.value)
        assert str(unknown.value) == str(wrong.value)

    def test_inactive_user_is_rejected(self, orchestrator, user_store) -> None:
        user_store.create_user(
            User(username="gone", email="gone@example.com", password_hash=hash_password("pw"), is_active=False)
        )
        with pytest.raises(InvalidCredentials):
            orchestrator.begin_password("gone", "pw")


class TestStep2:
    def test_code_is_emailed_to_the_user(self, orchestrator, mailer, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        address, code = mailer.sent[-1]
        assert address == seeded_user.email
        assert len(code) == 6 and code.isdigit()

    def test_unknown_session(self, orchestrator) -> None:
        with pytest.raises(SessionExpiredOrInvalid):
            orchestrator.request_email_code("missing")
        with pytest.raises(SessionExpiredOrInvalid):
            orchestrator.verify_email_code("missing", "123456")

    def test_session_older_than_ten_minutes(self, orchestrator, mailer, clock, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        clock.advance(minutes=10, seconds=1)
        with pytest.raises(SessionExpiredOrInvalid):
            orchestrator.verify_email_code(session_id, mailer.last_code)

    def test_codes_are_single_use(self, orchestrator, mailer, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        code = mailer.last_code
        assert orchestrator.verify_email_code(session_id, code)
        with pytest.raises(InvalidOrExpiredCode):
            orchestrator.verify_email_code(session_id, code)

    def test_expired_code(self, orchestrator, mailer, clock, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        clock.advance(minutes=5)
        with pytest.raises(InvalidOrExpiredCode):
            orchestrator.verify_email_code(session_id, mailer.last_code)

    def test_five_wrong_codes_lock_even_the_correct_code(self, orchestrator, mailer, clock, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        code = mailer.last_code
        for _ in range(4):
            with pytest.raises(InvalidOrExpiredCode):
                orchestrator.verify_email_code(session_id, _wrong(code))
            clock.advance(seconds=5)  # past the short per-code lock
        with pytest.raises(AuthLocked) as fifth:
            orchestrator.verify_email_code(session_id, _wrong(code))
        lock_until = fifth.value.lock_until

        with pytest.raises(AuthLocked) as locked:
            orchestrator.verify_email_code(session_id, code)
        assert locked.value.lock_until == lock_until
        assert locked.value.retry_after_seconds(clock()) == 15 * 60

    def test_short_lock_surfaces_as_auth_locked(self, orchestrator, mailer, seeded_user) -> None:
        session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
        orchestrator.request_email_code(session_id)
        code = mailer.last_code
        for _ in range(3):
            with pytest.raises(InvalidOrExpiredCode):
                orchestrator.verify_email_code(session_id, _wrong(code))
        with pytest.raises(AuthLocked):
            orchestrator.verify_email_code(session_id, code)


class TestStep3:
    def test_invalid_step2_token(self, orchestrator, authenticator) -> None:
        with pytest.raises(InvalidStep2Token):
            orchestrator.begin_passkey("f" * 64)
        with pytest.raises(InvalidStep2Token):
            orchestrator.complete_passkey("f" * 64, authenticator.assertion("x"), ORIGIN)

    def test_options_carry_challenge_and_rp_id(self, orchestrator, mailer, seeded_user) -> None:
        issued = orchestrator.begin_passkey(_to_step2(orchestrator, mailer))
        assert issued["options"]["challenge"] == issued["challenge"]
        assert issued["options"]["rpId"] == "localhost"

    def test_unissued_challenge(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, authenticator.assertion("never-issued"), ORIGIN)

    def test_undecodable_client_data(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        assertion = PasskeyAssertion(id=authenticator.credential_id, type="public-key", client_data_json="a")
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, assertion, ORIGIN)

    def test_deeply_nested_client_data(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        orchestrator.begin_passkey(step2)
        nested = b64url_encode(b"[" * 3000 + b"]" * 3000)
        assertion = PasskeyAssertion(id=authenticator.credential_id, type="public-key", client_data_json=nested)
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, assertion, ORIGIN)

    def test_consumed_challenge_cannot_be_replayed(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        assertion = authenticator.assertion(challenge)
        orchestrator.complete_passkey(step2, assertion, ORIGIN)
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, assertion, ORIGIN)

    def test_failed_assertion_still_burns_challenge(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        forged = authenticator.assertion(challenge, origin="https://evil.example")
        with pytest.raises(SignatureVerificationFailed):
            orchestrator.complete_passkey(step2, forged, ORIGIN)
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, authenticator.assertion(challenge), ORIGIN)

    def test_unknown_passkey(self, orchestrator, mailer, make_authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        stranger = make_authenticator()
        with pytest.raises(UnknownPasskey):
            orchestrator.complete_passkey(step2, stranger.assertion(challenge), ORIGIN)

    def test_non_increasing_counter_rejected(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        orchestrator.complete_passkey(step2, authenticator.assertion(challenge, sign_count=10), ORIGIN)

        challenge = orchestrator.begin_passkey(step2)["challenge"]
        with pytest.raises(SignatureVerificationFailed):
            orchestrator.complete_passkey(step2, authenticator.assertion(challenge, sign_count=10), ORIGIN)

    def test_step2_token_cannot_complete_another_users_challenge(
        self, orchestrator, mailer, authenticator, make_authenticator, user_store, seeded_user
    ) -> None:
        other_auth = make_authenticator()
        other_id = user_store.create_user(
            User(username="bob", email="bob@example.com", password_hash=hash_password("bob-password"))
        )
        user_store.add_passkey(other_id, other_auth.passkey())

        admin_step2 = _to_step2(orchestrator, mailer)
        bob_step2 = _to_step2(orchestrator, mailer, "bob", "bob-password")
        bob_challenge = orchestrator.begin_passkey(bob_step2)["challenge"]

        # Admin's token with bob's challenge and bob's valid assertion.
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(admin_step2, other_auth.assertion(bob_challenge), ORIGIN)
        # Bob's challenge survived the attempt.
        pair = orchestrator.complete_passkey(bob_step2, other_auth.assertion(bob_challenge), ORIGIN)
        assert orchestrator.authenticate(pair.access_token).username == "bob"

    def test_step2_token_survives_a_dropped_round_trip(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        orchestrator.begin_passkey(step2)  # challenge lost by the client
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        assert orchestrator.complete_passkey(step2, authenticator.assertion(challenge), ORIGIN)

    def test_expired_challenge(self, orchestrator, mailer, authenticator, clock, seeded_user) -> None:
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        clock.advance(minutes=5)
        with pytest.raises(InvalidOrExpiredChallenge):
            orchestrator.complete_passkey(step2, authenticator.assertion(challenge), ORIGIN)


class TestTokens:
    def _sign_in(self, orchestrator, mailer, authenticator):
        step2 = _to_step2(orchestrator, mailer)
        challenge = orchestrator.begin_passkey(step2)["challenge"]
        return orchestrator.complete_passkey(step2, authenticator.assertion(challenge), ORIGIN)

    def test_rotated_refresh_token_is_dead(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        pair = self._sign_in(orchestrator, mailer, authenticator)
        successor = orchestrator.rotate_refresh_token(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            orchestrator.rotate_refresh_token(pair.refresh_token)
        assert orchestrator.rotate_refresh_token(successor)

    def test_refresh_issues_new_access_token(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        pair = self._sign_in(orchestrator, mailer, authenticator)
        refreshed = orchestrator.refresh(pair.refresh_token)
        assert refreshed.access_token != pair.access_token
        assert orchestrator.authenticate(refreshed.access_token).id == seeded_user.id
        with pytest.raises(InvalidRefreshToken):
            orchestrator.refresh(pair.refresh_token)

    def test_access_token_expires(self, orchestrator, mailer, authenticator, clock, seeded_user) -> None:
        pair = self._sign_in(orchestrator, mailer, authenticator)
        clock.advance(minutes=15)
        with pytest.raises(InvalidAccessToken):
            orchestrator.authenticate(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        pair = self._sign_in(orchestrator, mailer, authenticator)
        with pytest.raises(InvalidAccessToken):
            orchestrator.authenticate(pair.refresh_token)

    def test_logout_revokes_refresh_token(self, orchestrator, mailer, authenticator, seeded_user) -> None:
        pair = self._sign_in(orchestrator, mailer, authenticator)
        orchestrator.logout(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            orchestrator.refresh(pair.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            orchestrator.logout(pair.refresh_token)


def test_admin_end_to_end(orchestrator, mailer, authenticator, seeded_user) -> None:
    """admin / ChangeMe#12345 -> emailed code -> passkey -> tokens -> refresh."""
    session_id = orchestrator.begin_password("admin", "ChangeMe#12345")
    orchestrator.request_email_code(session_id)
    step2 = orchestrator.verify_email_code(session_id, mailer.last_code)

    issued = orchestrator.begin_passkey(step2)
    pair = orchestrator.complete_passkey(step2, authenticator.assertion(issued["challenge"]), ORIGIN)

    user = orchestrator.authenticate(pair.access_token)
    assert user.id == seeded_user.id
    assert user.username == "admin"

    refreshed = orchestrator.refresh(pair.refresh_token)
    assert orchestrator.authenticate(refreshed.access_token).id == seeded_user.id
