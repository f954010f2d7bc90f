"""
revocation/store.py -- Redis-backed revocation and session state.

The only mutable shared state in TokenGate. Tokens are stateless; this store
is what makes them revocable before their natural expiry.

Key layout:
  refresh:{user_id}:{token_id}    -> refresh token string        (PX = remaining life)
  session:{user_id}:{token_id}    -> hash of client metadata      (PX = same as refresh)
  blacklist:{token_id}            -> "1"                          (PX = remaining life)
  counter:{name}                  -> int, fixed window            (EX = window)

Every key carries a ttl no longer than the token it describes, so nothing
needs explicit cleanup. A write that sets a value and its ttl runs in one
MULTI/EXEC, so a key never outlives a failed second command. No locks. A
session row is only listed while its refresh entry exists, so a partial write
or a refresh entry deleted on its own never shows up as a live session.

Failure model:
  The client is built with a socket timeout, so no call blocks longer than
  REVOCATION_STORE_TIMEOUT_SECONDS. Any RedisError -- timeout, refused
  connection, protocol error -- is raised as StoreUnavailable. Callers decide
  whether that means fail closed (the gate) or best effort (logout).

Usage:
    store = RedisRevocationStore.from_url("redis://localhost:6379/0", timeout=0.5)
    store.put_refresh_token(42, jti, token, ttl=1209600)
    store.exists_refresh_token(42, jti)   # True
    store.blacklist_access_token(access_jti, remaining_ttl=900)
    store.is_blacklisted(access_jti)      # True

Layer rule: leaf module. May import from core/ only.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass
from typing import Protocol, TypeVar

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("tokengate.store")

T = TypeVar("T")

REFRESH_PREFIX = "refresh:"
SESSION_PREFIX = "session:"
BLACKLIST_PREFIX = "blacklist:"
COUNTER_PREFIX = "counter:"

DEFAULT_SCAN_BATCH = 500


class StoreUnavailable(RuntimeError):
    """The revocation store failed or timed out.

    The gate treats this as a rejection (fail closed). Nobody retries in a
    loop -- the next request simply asks the store again.
    """

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        super().__init__(f"revocation store unavailable during {operation}: {cause!r}")


@dataclass
class SessionInfo:
    """Client metadata recorded next to a refresh token entry."""

    channel: str = ""
    ip_address: str = ""
    user_agent: str = ""
    created_at: str = ""
    last_activity: str = ""
    session_id: str = ""


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------


def refresh_key(user_id: int, token_id: str) -> str:
    return f"{REFRESH_PREFIX}{user_id}:{token_id}"


def session_key(user_id: int, token_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}:{token_id}"


def blacklist_key(token_id: str) -> str:
    return f"{BLACKLIST_PREFIX}{token_id}"


def counter_key(name: str) -> str:
    return f"{COUNTER_PREFIX}{name}"


def ttl_millis(ttl_seconds: float) -> int:
    """Convert a ttl in seconds to whole milliseconds, rounded up, minimum 1."""
    return max(1, math.ceil(ttl_seconds * 1000))


def _session_fields(info: SessionInfo) -> dict[str, str]:
    fields = asdict(info)
    fields.pop("session_id")
    return {k: (v or "") for k, v in fields.items()}


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class RevocationStore(Protocol):
    """Operations the issuer, gate and throttle rely on.

    Implementations: RedisRevocationStore (production),
    MemoryRevocationStore (revocation/memory.py -- tests and single-process dev).
    """

    def put_refresh_token(self, user_id: int, token_id: str, value: str, ttl: float) -> None: ...

    def get_refresh_token(self, user_id: int, token_id: str) -> str | None: ...

    def exists_refresh_token(self, user_id: int, token_id: str) -> bool: ...

    def delete_refresh_token(self, user_id: int, token_id: str) -> bool: ...

    def delete_all_refresh_tokens(self, user_id: int) -> int: ...

    def blacklist_access_token(self, token_id: str, remaining_ttl: float) -> None: ...

    def is_blacklisted(self, token_id: str) -> bool: ...

    def put_session(self, user_id: int, token_id: str, info: SessionInfo, ttl: float) -> None: ...

    def get_session(self, user_id: int, token_id: str) -> SessionInfo | None: ...

    def list_sessions(self, user_id: int) -> list[SessionInfo]: ...

    def increment_counter(self, name: str, window_seconds: int) -> int: ...

    def get_counter(self, name: str) -> int: ...

    def counter_ttl(self, name: str) -> int: ...

    def reset_counter(self, name: str) -> None: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------


class RedisRevocationStore:
    """Revocation store on a synchronous redis-py client.

    Synchronous on purpose: the gate runs the lookup in Starlette's threadpool,
    and the issuer is called from sync route handlers. One client (and its
    connection pool) is shared by all threads; redis-py pools are thread-safe.
    """

    def __init__(self, client: Redis, *, scan_batch_size: int = DEFAULT_SCAN_BATCH) -> None:
        if scan_batch_size <= 0:
            raise ValueError("scan_batch_size must be positive")
        self.client = client
        self.scan_batch_size = scan_batch_size

    @classmethod
    def from_url(
        cls, redis_url: str, *, timeout: float, scan_batch_size: int = DEFAULT_SCAN_BATCH
    ) -> "RedisRevocationStore":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            retry_on_timeout=False,
        )
        return cls(client, scan_batch_size=scan_batch_size)

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except RedisError as exc:
            logger.warning("Revocation store %s failed: %s", operation, type(exc).__name__)
            raise StoreUnavailable(operation, exc) from exc

    def _scan(self, pattern: str) -> Iterator[str]:
        return self.client.scan_iter(match=pattern, count=self.scan_batch_size)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def put_refresh_token(self, user_id: int, token_id: str, value: str, ttl: float) -> None:
        self._call(
            "put_refresh_token",
            lambda: self.client.set(refresh_key(user_id, token_id), value, px=ttl_millis(ttl)),
        )
        logger.debug("Saved refresh token: user_id=%s token_id=%s", user_id, token_id)

    def get_refresh_token(self, user_id: int, token_id: str) -> str | None:
        return self._call("get_refresh_token", lambda: self.client.get(refresh_key(user_id, token_id)))

    def exists_refresh_token(self, user_id: int, token_id: str) -> bool:
        return bool(self._call("exists_refresh_token", lambda: self.client.exists(refresh_key(user_id, token_id))))

    def delete_refresh_token(self, user_id: int, token_id: str) -> bool:
        """Delete one refresh entry and its session row.

        Returns True only for the caller whose DEL actually removed the refresh
        entry, so two concurrent rotations of the same token cannot both win.
        """

        def run() -> bool:
            pipe = self.client.pipeline(transaction=False)
            pipe.delete(refresh_key(user_id, token_id))
            pipe.delete(session_key(user_id, token_id))
            removed, _ = pipe.execute()
            return bool(removed)

        removed = self._call("delete_refresh_token", run)
        logger.debug("Deleted refresh token: user_id=%s token_id=%s removed=%s", user_id, token_id, removed)
        return removed

    def delete_all_refresh_tokens(self, user_id: int) -> int:
        """Delete every refresh entry and session row of a user.

        SCAN-based so the server is never blocked by KEYS; deletes in batches
        of scan_batch_size. Returns the number of refresh entries removed.
        Entries written concurrently with the scan may survive -- the caller
        accepted that when it chose per-key atomicity over a global lock.
        """

        def run() -> int:
            removed = 0
            for prefix in (REFRESH_PREFIX, SESSION_PREFIX):
                batch: list[str] = []
                for key in self._scan(f"{prefix}{user_id}:*"):
                    batch.append(key)
                    if len(batch) >= self.scan_batch_size:
                        count = self.client.delete(*batch)
                        removed += count if prefix == REFRESH_PREFIX else 0
                        batch = []
                if batch:
                    count = self.client.delete(*batch)
                    removed += count if prefix == REFRESH_PREFIX else 0
            return removed

        removed = self._call("delete_all_refresh_tokens", run)
        logger.debug("Deleted all refresh tokens: user_id=%s count=%d", user_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def blacklist_access_token(self, token_id: str, remaining_ttl: float) -> None:
        """Mark a token id revoked until it would have expired anyway.

        No-op for ttl <= 0: the token is already unverifiable.
        """
        if remaining_ttl <= 0:
            return
        self._call(
            "blacklist_access_token",
            lambda: self.client.set(blacklist_key(token_id), "1", px=ttl_millis(remaining_ttl)),
        )
        logger.debug("Blacklisted token_id=%s", token_id)

    def is_blacklisted(self, token_id: str) -> bool:
        return bool(self._call("is_blacklisted", lambda: self.client.exists(blacklist_key(token_id))))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def put_session(self, user_id: int, token_id: str, info: SessionInfo, ttl: float) -> None:
        key = session_key(user_id, token_id)

        def run() -> None:
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(key, mapping=_session_fields(info))
            pipe.pexpire(key, ttl_millis(ttl))
            pipe.execute()

        self._call("put_session", run)

    def get_session(self, user_id: int, token_id: str) -> SessionInfo | None:
        data = self._call("get_session", lambda: self.client.hgetall(session_key(user_id, token_id)))
        if not data:
            return None
        return _session_from_hash(token_id, data)

    def list_sessions(self, user_id: int) -> list[SessionInfo]:
        """Return live sessions of a user, most recently active first."""

        def run() -> list[SessionInfo]:
            sessions = []
            for key in self._scan(f"{SESSION_PREFIX}{user_id}:*"):
                token_id = key.rsplit(":", 1)[1]
                if not self.client.exists(refresh_key(user_id, token_id)):
                    continue
                data = self.client.hgetall(key)
                if data:
                    sessions.append(_session_from_hash(token_id, data))
            return sessions

        sessions = self._call("list_sessions", run)
        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions

    # ------------------------------------------------------------------
    # Fixed-window counters (login throttle, lock state)
    # ------------------------------------------------------------------

    def increment_counter(self, name: str, window_seconds: int) -> int:
        key = counter_key(name)

        def run() -> int:
            # Window starts at the first hit and is never extended: SET NX only
            # creates the key, with its ttl, when it does not exist yet.
            pipe = self.client.pipeline(transaction=True)
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            _, count = pipe.execute()
            return int(count)

        return self._call("increment_counter", run)

    def get_counter(self, name: str) -> int:
        value = self._call("get_counter", lambda: self.client.get(counter_key(name)))
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    def counter_ttl(self, name: str) -> int:
        ttl = self._call("counter_ttl", lambda: self.client.ttl(counter_key(name)))
        return int(ttl) if ttl is not None and int(ttl) > 0 else 0

    def reset_counter(self, name: str) -> None:
        self._call("reset_counter", lambda: self.client.delete(counter_key(name)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        return bool(self._call("ping", self.client.ping))

    def close(self) -> None:
        self.client.close()


def _session_from_hash(token_id: str, data: dict) -> SessionInfo:
    return SessionInfo(
        channel=data.get("channel", ""),
        ip_address=data.get("ip_address", ""),
        user_agent=data.get("user_agent", ""),
        created_at=data.get("created_at", ""),
        last_activity=data.get("last_activity", ""),
        session_id=token_id,
    )
