"""
revocation/memory.py -- In-process revocation store.

Same contract and key layout as RedisRevocationStore, backed by dicts. Used by
the test suite and for single-process development (REDIS_URL=memory://).
State is lost on restart and is not shared between worker processes, so this
is never a production store.

Expiry is lazy: an entry past its deadline is treated as absent and dropped the
next time anything touches it. The clock is injectable so tests can move time
forward without sleeping.

Layer rule: leaf module. May import from revocation.store only.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from revocation.store import (
    BLACKLIST_PREFIX,
    REFRESH_PREFIX,
    SESSION_PREFIX,
    SessionInfo,
    blacklist_key,
    counter_key,
    refresh_key,
    session_key,
    ttl_millis,
)


class MemoryRevocationStore:
    """Dict-backed revocation store guarded by a single lock.

    One RLock around every operation gives the same per-key atomicity Redis
    provides; delete_all_refresh_tokens() is atomic here, which is stronger
    than Redis and harmless.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        # key -> (value, deadline)
        self._data: dict[str, tuple[Any, float]] = {}

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _deadline(self, ttl_seconds: float) -> float:
        return self._clock() + ttl_millis(ttl_seconds) / 1000

    def _get(self, key: str) -> Any | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if self._clock() >= deadline:
            del self._data[key]
            return None
        return value

    def _keys(self, prefix: str) -> list[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._get(key) is not None]

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def put_refresh_token(self, user_id: int, token_id: str, value: str, ttl: float) -> None:
        with self._lock:
            self._data[refresh_key(user_id, token_id)] = (value, self._deadline(ttl))

    def get_refresh_token(self, user_id: int, token_id: str) -> str | None:
        with self._lock:
            return self._get(refresh_key(user_id, token_id))

    def exists_refresh_token(self, user_id: int, token_id: str) -> bool:
        return self.get_refresh_token(user_id, token_id) is not None

    def delete_refresh_token(self, user_id: int, token_id: str) -> bool:
        with self._lock:
            removed = self._get(refresh_key(user_id, token_id)) is not None
            self._data.pop(refresh_key(user_id, token_id), None)
            self._data.pop(session_key(user_id, token_id), None)
            return removed

    def delete_all_refresh_tokens(self, user_id: int) -> int:
        with self._lock:
            refresh = self._keys(f"{REFRESH_PREFIX}{user_id}:")
            sessions = self._keys(f"{SESSION_PREFIX}{user_id}:")
            for key in refresh + sessions:
                del self._data[key]
            return len(refresh)

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def blacklist_access_token(self, token_id: str, remaining_ttl: float) -> None:
        if remaining_ttl <= 0:
            return
        with self._lock:
            self._data[blacklist_key(token_id)] = ("1", self._deadline(remaining_ttl))

    def is_blacklisted(self, token_id: str) -> bool:
        with self._lock:
            return self._get(blacklist_key(token_id)) is not None

    def blacklist_size(self) -> int:
        """Number of live blacklist entries. Test and debug helper."""
        with self._lock:
            return len(self._keys(BLACKLIST_PREFIX))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def put_session(self, user_id: int, token_id: str, info: SessionInfo, ttl: float) -> None:
        with self._lock:
            stored = replace(info, session_id=token_id)
            self._data[session_key(user_id, token_id)] = (stored, self._deadline(ttl))

    def get_session(self, user_id: int, token_id: str) -> SessionInfo | None:
        with self._lock:
            info = self._get(session_key(user_id, token_id))
        return replace(info) if info is not None else None

    def list_sessions(self, user_id: int) -> list[SessionInfo]:
        with self._lock:
            sessions = []
            for key in self._keys(f"{SESSION_PREFIX}{user_id}:"):
                token_id = key.rsplit(":", 1)[1]
                if self._get(refresh_key(user_id, token_id)) is None:
                    continue
                sessions.append(replace(self._get(key)))
        sessions.sort(key=lambda s: s.last_activity, reverse=True)
        return sessions

    # ------------------------------------------------------------------
    # Fixed-window counters
    # ------------------------------------------------------------------

    def increment_counter(self, name: str, window_seconds: int) -> int:
        key = counter_key(name)
        with self._lock:
            current = self._get(key)
            if current is None:
                self._data[key] = (1, self._deadline(window_seconds))
                return 1
            _, deadline = self._data[key]
            self._data[key] = (current + 1, deadline)
            return current + 1

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._get(counter_key(name)) or 0

    def counter_ttl(self, name: str) -> int:
        key = counter_key(name)
        with self._lock:
            if self._get(key) is None:
                return 0
            _, deadline = self._data[key]
            return max(0, math.ceil(deadline - self._clock()))

    def reset_counter(self, name: str) -> None:
        with self._lock:
            self._data.pop(counter_key(name), None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._data.clear()
