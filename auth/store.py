"""
auth/store.py -- SQLAlchemy Core persistence layer for users and passkeys.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_passkey are the mappers. The CredentialStore and the
CLI go through UserStore and never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Passkey sign counts move forward only. update_sign_count() is a
  compare-and-swap (UPDATE ... WHERE sign_count < :new), so two concurrent
  assertions from a cloned authenticator cannot both persist.

DB path: auth/stepgate_auth.db by default. Override with DB_URL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Passkey, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'stepgate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False),
    Column("password_hash", Text, nullable=False),  # "<hex-salt>:<hex-digest>"
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_passkeys = Table(
    "passkeys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("credential_id", String(1024), nullable=False),  # base64url
    Column("public_key_pem", Text, nullable=False),
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "credential_id", name="uq_passkeys_user_credential"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Passkey records.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="admin", email="a@example.com",
                                     password_hash=hash_password("secret")))
        store.add_passkey(uid, Passkey(credential_id="...", public_key_pem="..."))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Passkeys on the passed User are not inserted; use add_passkey().
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive), passkeys included."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._passkeys_for(conn, row.id))

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, self._passkeys_for(conn, row.id))

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
            return [_row_to_user(r, self._passkeys_for(conn, r.id)) for r in rows]

    # ------------------------------------------------------------------
    # Passkey queries
    # ------------------------------------------------------------------

    def add_passkey(self, user_id: int, passkey: Passkey) -> int:
        """Attach an existing passkey public key to a user. Returns the row ID.

        Raises sqlalchemy.exc.IntegrityError if the user already has a passkey
        with the same credential_id.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.insert().values(
                    user_id=user_id,
                    credential_id=passkey.credential_id,
                    public_key_pem=passkey.public_key_pem,
                    sign_count=passkey.sign_count,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_passkey(self, user_id: int, credential_id: str) -> Passkey | None:
        """Look up one of the user's passkeys. Another user's credential is not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _passkeys.select().where(
                    (_passkeys.c.user_id == user_id) & (_passkeys.c.credential_id == credential_id)
                )
            ).fetchone()
        return _row_to_passkey(row) if row is not None else None

    def update_sign_count(self, user_id: int, credential_id: str, new_count: int) -> bool:
        """Advance a passkey's signature counter.

        Returns True if the row moved forward, False if the passkey is missing
        or its stored counter is already >= new_count (lost race or replay).
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.update()
                .where(
                    (_passkeys.c.user_id == user_id)
                    & (_passkeys.c.credential_id == credential_id)
                    & (_passkeys.c.sign_count < new_count)
                )
                .values(sign_count=new_count)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _passkeys_for(conn, user_id: int) -> list[Passkey]:
        rows = conn.execute(
            _passkeys.select().where(_passkeys.c.user_id == user_id).order_by(_passkeys.c.id)
        ).fetchall()
        return [_row_to_passkey(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, passkeys: list[Passkey]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        passkeys=passkeys,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )


def _row_to_passkey(row) -> Passkey:
    return Passkey(
        credential_id=row.credential_id,
        public_key_pem=row.public_key_pem,
        sign_count=row.sign_count,
        user_id=row.user_id,
        created_at=row.created_at,
    )
