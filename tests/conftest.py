"""
tests/conftest.py -- Shared test fixtures for StepGate.

This module provides:
  - FakeClock: injectable clock for expiry and lockout tests
  - SoftAuthenticator: a software passkey (P-256) that signs real assertions
  - RecordingDispatcher: an EmailDispatcher that keeps codes instead of sending
  - store / orchestrator / guard fixtures wired to one FakeClock
  - api_client: TestClient with a patched lifespan and a seeded user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Each fixture gets its own uuid-suffixed name so tests never share users.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY and picks the logging email transport.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import struct
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_guard
from auth.credentials import CredentialStore
from auth.guard import LockoutGuard
from auth.models import Passkey, PasskeyAssertion, User
from auth.service import AuthOrchestrator
from auth.store import UserStore
from auth.tokens import hash_password
from auth.webauthn import ChallengeVerifier, b64url_encode
from core.config import get_settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789abcdef"
SEED_USERNAME = "admin"
SEED_EMAIL = "admin@example.com"
SEED_PASSWORD = "ChangeMe#12345"
RP_ID = "localhost"
ORIGIN = "http://localhost:5173"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. Starts at a fixed instant and moves only when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SoftAuthenticator:
    """Software passkey holding a P-256 key, producing WebAuthn assertions.

    Each call to assertion_json() bumps the signature counter unless an
    explicit sign_count is given. The knobs exist so tests can forge exactly
    one thing wrong at a time.
    """

    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN) -> None:
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = b64url_encode(os.urandom(16))
        self.rp_id = rp_id
        self.origin = origin
        self.sign_count = 0

    @property
    def public_key_pem(self) -> str:
        return (
            self.private_key.public_key()
            .public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
            .decode("ascii")
        )

    def passkey(self) -> Passkey:
        return Passkey(credential_id=self.credential_id, public_key_pem=self.public_key_pem, sign_count=0)

    def assertion_json(
        self,
        challenge: str,
        *,
        origin: str | None = None,
        rp_id: str | None = None,
        sign_count: int | None = None,
        flags: int = 0x05,
        client_data_type: str = "webauthn.get",
        credential_id: str | None = None,
    ) -> dict:
        if sign_count is None:
            self.sign_count += 1
            sign_count = self.sign_count
        client_data = json.dumps(
            {"type": client_data_type, "challenge": challenge, "origin": origin or self.origin}
        ).encode("utf-8")
        auth_data = (
            hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest()
            + bytes([flags])
            + struct.pack(">I", sign_count)
        )
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )
        return {
            "id": credential_id or self.credential_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url_encode(client_data),
                "authenticatorData": b64url_encode(auth_data),
                "signature": b64url_encode(signature),
                "userHandle": None,
            },
        }

    def assertion(self, challenge: str, **kwargs) -> PasskeyAssertion:
        return PasskeyAssertion.from_dict(self.assertion_json(challenge, **kwargs))


class RecordingDispatcher:
    """EmailDispatcher that remembers what it would have sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, address: str, code: str) -> None:
        self.sent.append((address, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _seed(user_store: UserStore, authenticator: SoftAuthenticator) -> User:
    uid = user_store.create_user(
        User(username=SEED_USERNAME, email=SEED_EMAIL, password_hash=hash_password(SEED_PASSWORD))
    )
    user_store.add_passkey(uid, authenticator.passkey())
    return user_store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_memory_db_url("test_auth"))
    yield store
    store.close()


@pytest.fixture
def credentials(user_store: UserStore, clock: FakeClock) -> CredentialStore:
    return CredentialStore(user_store, TEST_SECRET_KEY, clock=clock)


@pytest.fixture
def authenticator() -> SoftAuthenticator:
    return SoftAuthenticator()


@pytest.fixture
def make_authenticator():
    """Factory for extra authenticators (a second user, a cloned key, ...)."""
    return SoftAuthenticator


@pytest.fixture
def seeded_user(user_store: UserStore, authenticator: SoftAuthenticator) -> User:
    """admin / ChangeMe#12345 with the `authenticator` passkey registered."""
    return _seed(user_store, authenticator)


@pytest.fixture
def mailer() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def orchestrator(credentials: CredentialStore, mailer: RecordingDispatcher) -> AuthOrchestrator:
    return AuthOrchestrator(credentials, ChallengeVerifier(), mailer, rp_id=RP_ID)


@pytest.fixture
def guard(orchestrator: AuthOrchestrator, clock: FakeClock) -> LockoutGuard:
    return LockoutGuard(orchestrator, clock=clock)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, credentials: CredentialStore, guard: LockoutGuard):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test objects into app.state so routes see an isolated
    database and a recording mailer instead of the configured transport.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.user_store = user_store
        app.state.credentials = credentials
        app.state.guard = guard
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(
    authenticator: SoftAuthenticator,
) -> Generator[tuple[TestClient, RecordingDispatcher, SoftAuthenticator], None, None]:
    """Yield (client, mailer, authenticator) for API integration tests.

    The TestClient uses the real FastAPI app and real route handlers. The
    seeded user admin / ChangeMe#12345 owns `authenticator`'s passkey; codes
    sent through step 2 land in `mailer`.
    """
    user_store = UserStore(db_url=_memory_db_url("test_api"))
    _seed(user_store, authenticator)
    credentials = CredentialStore(user_store, get_settings().secret_key)
    mailer = RecordingDispatcher()
    guard = build_guard(get_settings(), credentials, mailer)

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(user_store, credentials, guard)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, mailer, authenticator

    user_store.close()
