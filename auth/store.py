"""
auth/store.py -- SQLAlchemy Core persistence for credential records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route code never touches SQL directly.

This is the boundary to the user-account system. The token subsystem needs
only user.id, user.user_uuid and user.channel from it; everything else about
accounts (profiles, verification, OAuth linking) lives outside this service.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or revocation/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import Channel, User
from core.config import DEFAULT_DB_URL

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("user_uuid", String(36), nullable=False, unique=True),
    Column("channel", String(16), nullable=False, server_default=Channel.EMAIL.value),
    Column("hashed_password", Text),  # NULL for provider-only accounts
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class UserStore:
    """Repository for credential records.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", user_uuid="...", hashed_password=hash_password("pw")))
        user = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        A user_uuid is generated when the caller leaves it empty. Raises
        sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    user_uuid=user.user_uuid or str(uuid.uuid4()),
                    channel=Channel(user.channel).value,
                    hashed_password=user.hashed_password,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Enable or disable an account. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(_users.select().limit(1)).fetchall()
        return True

    def close(self) -> None:
        self.engine.dispose()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        user_uuid=row.user_uuid,
        channel=Channel(row.channel),
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
