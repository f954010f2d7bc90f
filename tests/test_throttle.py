"""
tests/test_throttle.py -- Failed-login throttle.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from auth import metrics
from auth.errors import StoreUnavailable
from auth.throttle import ALLOWED, LoginThrottle


@pytest.fixture
def throttle(store) -> LoginThrottle:
    return LoginThrottle(store, max_per_user=3, max_per_ip=5, window_seconds=600)


def test_allows_until_user_limit(throttle):
    for _ in range(2):
        throttle.record_failure("alice", "10.0.0.1")
    assert throttle.check("alice", "10.0.0.1") is ALLOWED
    assert throttle.remaining_attempts("alice") == 1

    throttle.record_failure("alice", "10.0.0.1")
    decision = throttle.check("alice", "10.0.0.1")
    assert not decision.allowed
    assert decision.by == "user"
    assert decision.retry_after == 600
    assert throttle.remaining_attempts("alice") == 0


def test_username_counter_is_case_insensitive(throttle):
    for name in ("alice", "Alice", "ALICE"):
        throttle.record_failure(name, "10.0.0.1")
    assert throttle.check("aLiCe", "10.0.0.9").by == "user"


def test_ip_limit_across_usernames(throttle):
    for i in range(5):
        throttle.record_failure(f"user{i}", "10.0.0.1")
    decision = throttle.check("someone-new", "10.0.0.1")
    assert not decision.allowed
    assert decision.by == "ip"
    assert throttle.check("someone-new", "10.0.0.2") is ALLOWED


def test_window_expiry(throttle, clock):
    for _ in range(3):
        throttle.record_failure("alice", "10.0.0.1")
    clock.advance(200)
    assert throttle.check("alice", "10.0.0.1").retry_after == 400
    clock.advance(400)
    assert throttle.check("alice", "10.0.0.1") is ALLOWED


def test_clear_resets_user_counter_only(throttle, store):
    for i in range(4):
        throttle.record_failure("alice" if i < 2 else f"other{i}", "10.0.0.1")
    throttle.clear("alice")
    assert throttle.remaining_attempts("alice") == 3
    assert store.get_counter("login:ip:10.0.0.1") == 4


def test_refusal_is_counted(throttle):
    for _ in range(3):
        throttle.record_failure("alice", "10.0.0.1")
    before = metrics.sample("tokengate_rate_limited_logins_total", {"by": "user"})
    throttle.check("alice", "10.0.0.1")
    assert metrics.sample("tokengate_rate_limited_logins_total", {"by": "user"}) == before + 1


def _throttle_with_broken(store, operation: str) -> LoginThrottle:
    broken = MagicMock(wraps=store)
    getattr(broken, operation).side_effect = StoreUnavailable(operation)
    return LoginThrottle(broken, max_per_user=1)


def test_check_fails_open(store):
    store.increment_counter("login:user:alice", 600)
    store.increment_counter("login:user:alice", 600)
    throttle = _throttle_with_broken(store, "get_counter")
    assert throttle.check("alice", "10.0.0.1") is ALLOWED
    assert throttle.remaining_attempts("alice") == 1


def test_record_failure_swallows_store_errors(store):
    throttle = _throttle_with_broken(store, "increment_counter")
    throttle.record_failure("alice", "10.0.0.1")
    throttle.record_failure("alice", "10.0.0.1")
    assert throttle.check("alice", "10.0.0.1") is ALLOWED


def test_clear_swallows_store_errors(store):
    throttle = _throttle_with_broken(store, "reset_counter")
    throttle.record_failure("alice", "10.0.0.1")
    throttle.clear("alice")
    assert not throttle.check("alice", "10.0.0.1").allowed


def test_throttling_does_not_touch_tokens(throttle, issuer, gate, store, user):
    pair = issuer.login(user)
    for _ in range(3):
        throttle.record_failure(user.username, "10.0.0.1")
    assert not throttle.check(user.username, "10.0.0.1").allowed

    assert gate.authenticate(f"Bearer {pair.access_token}") is not None
    assert store.exists_refresh_token(user.id, pair.session_id)
    assert store.blacklist_size() == 0
