"""
auth/throttle.py -- Failed-login throttle (per username and per client IP).

Fixed-window counters in the revocation store:
  counter:login:user:{username}   window starts at the first failure
  counter:login:ip:{ip}

Login is refused once either counter reaches its limit, until the window
expires. A successful login clears the username counter only. The IP counter
is left alone so one attacker cannot reset it by logging into their own
account between guesses.

The throttle never reads or writes token state. A refused login issues
nothing and revokes nothing; tokens issued earlier keep working.

Store failures fail open (logged, counted): the throttle is an auxiliary
control, unlike the gate, which fails closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth import metrics
from auth.errors import StoreUnavailable
from revocation.store import RevocationStore

logger = logging.getLogger("tokengate.throttle")
security_logger = logging.getLogger("tokengate.security")


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    retry_after: int = 0
    by: str | None = None  # "user" or "ip" when refused


ALLOWED = ThrottleDecision(allowed=True)


def _user_counter(username: str) -> str:
    return f"login:user:{username.lower()}"


def _ip_counter(ip_address: str) -> str:
    return f"login:ip:{ip_address}"


class LoginThrottle:
    def __init__(
        self,
        store: RevocationStore,
        *,
        max_per_user: int = 5,
        max_per_ip: int = 20,
        window_seconds: int = 900,
    ) -> None:
        self.store = store
        self.max_per_user = max_per_user
        self.max_per_ip = max_per_ip
        self.window_seconds = window_seconds

    def check(self, username: str, ip_address: str) -> ThrottleDecision:
        """Decide whether a login attempt may proceed to the password check."""
        try:
            for by, name, limit in (
                ("user", _user_counter(username), self.max_per_user),
                ("ip", _ip_counter(ip_address), self.max_per_ip),
            ):
                attempts = self.store.get_counter(name)
                if attempts >= limit:
                    retry_after = self.store.counter_ttl(name) or self.window_seconds
                    metrics.rate_limited_logins_total.labels(by=by).inc()
                    security_logger.warning(
                        "Login throttled by %s: username=%s ip=%s attempts=%d", by, username, ip_address, attempts
                    )
                    return ThrottleDecision(allowed=False, retry_after=retry_after, by=by)
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            logger.warning("Login throttle unavailable, allowing attempt: username=%s", username)
        return ALLOWED

    def record_failure(self, username: str, ip_address: str) -> None:
        try:
            self.store.increment_counter(_user_counter(username), self.window_seconds)
            self.store.increment_counter(_ip_counter(ip_address), self.window_seconds)
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            logger.warning("Could not record failed login: username=%s", username)
            return
        logger.debug("Recorded failed login: username=%s ip=%s", username, ip_address)

    def clear(self, username: str) -> None:
        try:
            self.store.reset_counter(_user_counter(username))
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            logger.warning("Could not clear failed logins: username=%s", username)

    def remaining_attempts(self, username: str) -> int:
        try:
            return max(0, self.max_per_user - self.store.get_counter(_user_counter(username)))
        except StoreUnavailable:
            return self.max_per_user
