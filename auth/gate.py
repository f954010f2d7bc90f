"""
auth/gate.py -- Per-request authentication decision.

State machine, evaluated once per request:

  no header / wrong scheme / empty token     -> NO_TOKEN          (anonymous)
  decode() != Valid                          -> INVALID           (anonymous)
  Valid, token_type != ACCESS                -> WRONG_TYPE        (anonymous)
  Valid ACCESS, store lookup fails/times out -> STORE_UNAVAILABLE (anonymous, fail closed)
  Valid ACCESS, jti blacklisted              -> BLACKLISTED       (anonymous)
  Valid ACCESS, not blacklisted              -> AUTHENTICATED     (identity)

The outcome is internal. Callers get an AuthenticatedIdentity or None; every
anonymous outcome looks the same from outside, so a client cannot probe
whether its token expired, was forged, or was revoked.

The gate never rejects a request by itself. api/main.py attaches the result to
request.state and protected routes enforce presence through
auth.dependencies.get_current_identity.

Fail closed: the blacklist lookup is the only blocking call and is bounded by
the store's socket timeout. If the store cannot answer, the token is not
trusted. Availability of protected routes depends on the store; that is the
price of revocation being enforceable at all.

Layer rule: may import from auth/ and revocation/. Never from api/.
"""

from __future__ import annotations

import logging
from enum import Enum

from auth import metrics
from auth.errors import StoreUnavailable
from auth.metrics import instrumented
from auth.models import AuthenticatedIdentity, TokenType, Valid
from auth.tokens import TokenCodec
from revocation.store import RevocationStore

logger = logging.getLogger("tokengate.gate")

BEARER_SCHEME = "bearer"


class GateOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    NO_TOKEN = "no_token"
    INVALID = "invalid"
    WRONG_TYPE = "wrong_type"
    BLACKLISTED = "blacklisted"
    STORE_UNAVAILABLE = "store_unavailable"


def extract_bearer_token(header: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value.

    The scheme is case-insensitive and separated from the token by exactly one
    space. Anything else -- missing header, other scheme, extra whitespace,
    empty token -- is treated as no token at all.
    """
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != BEARER_SCHEME or not token:
        return None
    if any(ch.isspace() for ch in token):
        return None
    return token


class AuthenticationGate:
    """Turn an Authorization header into an identity, or None.

    Usage:
        gate = AuthenticationGate(codec, store)
        identity = gate.authenticate(request.headers.get("Authorization"))

    Synchronous: call it through run_in_threadpool from async code so the
    store lookup never blocks the event loop.
    """

    def __init__(self, codec: TokenCodec, store: RevocationStore) -> None:
        self.codec = codec
        self.store = store

    def evaluate(self, authorization: str | None) -> tuple[GateOutcome, AuthenticatedIdentity | None]:
        token = extract_bearer_token(authorization)
        if token is None:
            return GateOutcome.NO_TOKEN, None

        result = self.codec.decode(token)
        if not isinstance(result, Valid):
            logger.debug("Gate rejected token: %s", result.value)
            return GateOutcome.INVALID, None

        claims = result.claims
        if claims.token_type is not TokenType.ACCESS:
            logger.debug("Gate rejected %s token: user_id=%s", claims.token_type.value, claims.user_id)
            return GateOutcome.WRONG_TYPE, None

        try:
            with instrumented("gate", channel=claims.channel):
                revoked = self.store.is_blacklisted(claims.token_id)
        except StoreUnavailable:
            metrics.record_store_error("is_blacklisted")
            logger.warning("Gate failing closed, revocation store unavailable: token_id=%s", claims.token_id)
            return GateOutcome.STORE_UNAVAILABLE, None

        if revoked:
            logger.debug("Gate rejected blacklisted token: token_id=%s", claims.token_id)
            return GateOutcome.BLACKLISTED, None

        identity = AuthenticatedIdentity(
            user_id=claims.user_id,
            user_uuid=claims.user_uuid,
            channel=claims.channel,
            token_id=claims.token_id,
        )
        return GateOutcome.AUTHENTICATED, identity

    def authenticate(self, authorization: str | None) -> AuthenticatedIdentity | None:
        outcome, identity = self.evaluate(authorization)
        metrics.gate_decisions_total.labels(outcome=outcome.value).inc()
        return identity
