"""
auth/models.py -- Domain types for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the codec and
routes do the work; these types only own shape.

Tagged results: token verification returns either Valid(claims) or a
VerificationFailure member. Callers branch with isinstance() rather than
catching exceptions -- rejecting untrusted input is the normal path, not an
exceptional one.

Layer rule: no imports from api/ or revocation/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union


class Channel(str, Enum):
    """Login channel / identity provider a session was established through."""

    EMAIL = "EMAIL"
    GOOGLE = "GOOGLE"
    KAKAO = "KAKAO"
    NAVER = "NAVER"


class TokenType(str, Enum):
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class VerificationFailure(str, Enum):
    """Why a presented token was not accepted.

    Internal classification only. Everything outside auth/ collapses these
    into a single "unauthenticated" signal so clients cannot tell an expired
    token from a forged one.
    """

    EXPIRED = "expired"
    MALFORMED_OR_TAMPERED = "malformed_or_tampered"
    UNSUPPORTED_FORMAT = "unsupported_format"


@dataclass
class User:
    """A credential record from the user store.

    The token subsystem only ever reads id, user_uuid and channel.
    hashed_password is None for accounts that only sign in through a provider.
    """

    username: str
    user_uuid: str
    channel: Channel = Channel.EMAIL
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class TokenSubject:
    """Identity claims carried by every token."""

    user_id: int
    user_uuid: str
    channel: Channel


@dataclass(frozen=True)
class TokenClaims:
    """Verified content of a token. Timestamps are epoch seconds (ms precision)."""

    user_id: int
    user_uuid: str
    channel: Channel
    token_type: TokenType
    token_id: str
    issued_at: float
    expires_at: float
    issuer: str

    @property
    def subject(self) -> TokenSubject:
        return TokenSubject(self.user_id, self.user_uuid, self.channel)


@dataclass(frozen=True)
class Valid:
    claims: TokenClaims


DecodeResult = Union[Valid, VerificationFailure]


@dataclass(frozen=True)
class IssuedToken:
    """A freshly signed token together with the claims it was built from."""

    token: str
    claims: TokenClaims


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
    access_claims: TokenClaims = field(repr=False)
    refresh_claims: TokenClaims = field(repr=False)

    @property
    def session_id(self) -> str:
        """Sessions are identified by the refresh token id."""
        return self.refresh_claims.token_id


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Who made the current request. Lives on request.state for one request only."""

    user_id: int
    user_uuid: str
    channel: Channel
    token_id: str

