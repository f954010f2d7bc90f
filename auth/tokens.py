"""
auth/tokens.py -- Token codec: signed access/refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, user_uuid, channel, token_type, a unique jti, iat, exp and iss.
       The codec is pure: no I/O, no mutable state besides the secret it was
       constructed with.

  Verification never raises for untrusted input. decode() returns either
       Valid(claims) or a VerificationFailure member. Expiry is reported only
       after the signature has verified, so an attacker cannot learn anything
       about a forged token beyond "not accepted".

  Canonical encoding: every segment must re-encode to exactly the text that
       was presented. Base64url lets the last character of a segment carry
       ignored padding bits; without this check two distinct strings could
       carry the same valid signature, and flipping such a character would
       still verify.

  Timestamps are epoch seconds with millisecond precision. jose's own exp
       check works on whole seconds, so it is disabled and expiry is evaluated
       here against an injectable clock.

  SECRET_KEY: at least 32 bytes (256 bits). A shorter key is rejected when the
       codec is constructed -- at startup, never per request.

Layer rule: no imports from api/ or revocation/. Import from core/ is allowed.
"""

from __future__ import annotations

import binascii
import json
import logging
import math
import time
import uuid
from collections.abc import Callable

from jose import JWTError, jwt
from jose.exceptions import JWSError
from jose.utils import base64url_decode, base64url_encode

from auth.errors import ConfigurationError, EncodingError
from auth.models import (
    Channel,
    DecodeResult,
    IssuedToken,
    TokenClaims,
    TokenSubject,
    TokenType,
    Valid,
    VerificationFailure,
)
from core.config import MIN_SECRET_LENGTH, AuthConfig

logger = logging.getLogger("tokengate.auth")

_ALGORITHM = "HS256"

_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": True,
    "verify_exp": False,  # evaluated in decode() with millisecond precision
    "verify_nbf": False,
    "verify_iss": True,
    "verify_sub": True,
    "verify_jti": True,
    # require_exp would switch jose's own whole-second, wall-clock expiry check
    # back on. Presence and type of iat/exp are checked in _parse_claims().
    "require_iat": False,
    "require_exp": False,
    "require_iss": True,
    "require_sub": True,
    "require_jti": True,
}


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenCodec:
    """Encode and verify signed tokens.

    Usage:
        codec = TokenCodec.from_config(settings.to_auth_config())
        issued = codec.issue(TokenSubject(42, "u-42", Channel.EMAIL), TokenType.ACCESS, 1800)
        result = codec.decode(issued.token)
        if isinstance(result, Valid): ...
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        clock_skew_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not isinstance(secret_key, str) or len(secret_key.encode("utf-8")) < MIN_SECRET_LENGTH:
            raise ConfigurationError(f"Signing secret must be at least {MIN_SECRET_LENGTH} bytes (256 bits).")
        if not issuer:
            raise ConfigurationError("Token issuer must not be empty.")
        if clock_skew_seconds < 0:
            raise ConfigurationError("Clock skew tolerance must not be negative.")
        self._secret_key = secret_key
        self._issuer = issuer
        self._clock_skew = clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config: AuthConfig, clock: Callable[[], float] = time.time) -> "TokenCodec":
        return cls(config.secret_key, config.issuer, config.clock_skew_seconds, clock)

    @property
    def issuer(self) -> str:
        return self._issuer

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def issue(self, subject: TokenSubject, token_type: TokenType, ttl_seconds: float) -> IssuedToken:
        """Sign a new token for subject. Every call gets a fresh uuid4 jti."""
        now = self._clock()
        # Millisecond precision: iat rounds down, exp rounds up, so a token is
        # never already expired at the instant it is issued.
        issued_at = math.floor(now * 1000) / 1000
        claims = TokenClaims(
            user_id=subject.user_id,
            user_uuid=subject.user_uuid,
            channel=Channel(subject.channel),
            token_type=token_type,
            token_id=str(uuid.uuid4()),
            issued_at=issued_at,
            expires_at=math.ceil((now + ttl_seconds) * 1000) / 1000,
            issuer=self._issuer,
        )
        payload = {
            "sub": str(claims.user_id),
            "user_id": claims.user_id,
            "user_uuid": claims.user_uuid,
            "channel": claims.channel.value,
            "token_type": claims.token_type.value,
            "jti": claims.token_id,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "iss": claims.issuer,
        }
        try:
            token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        except (JWTError, JWSError, TypeError, ValueError) as exc:
            raise EncodingError(f"could not sign {token_type.value} token") from exc
        return IssuedToken(token=token, claims=claims)

    def encode(self, subject: TokenSubject, token_type: TokenType, ttl_seconds: float) -> str:
        return self.issue(subject, token_type, ttl_seconds).token

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(self, token: str) -> DecodeResult:
        """Verify token and classify the outcome. Never raises."""
        if not isinstance(token, str) or not token:
            return VerificationFailure.MALFORMED_OR_TAMPERED

        segments = token.split(".")
        if len(segments) == 5:
            logger.debug("Rejected encrypted (JWE) token")
            return VerificationFailure.UNSUPPORTED_FORMAT
        if len(segments) != 3:
            return VerificationFailure.MALFORMED_OR_TAMPERED
        if segments[2] == "":
            logger.debug("Rejected unsigned token")
            return VerificationFailure.UNSUPPORTED_FORMAT

        header = self._canonical_header(segments)
        if header is None:
            return VerificationFailure.MALFORMED_OR_TAMPERED
        alg = header.get("alg")
        if isinstance(alg, str) and alg.lower() == "none":
            logger.debug("Rejected unsecured token (alg=none)")
            return VerificationFailure.UNSUPPORTED_FORMAT

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options=_DECODE_OPTIONS,
            )
        except JWTError as exc:
            logger.debug("Token failed verification: %s", type(exc).__name__)
            return VerificationFailure.MALFORMED_OR_TAMPERED

        claims = self._parse_claims(payload)
        if claims is None:
            logger.debug("Token carried a valid signature but malformed claims")
            return VerificationFailure.MALFORMED_OR_TAMPERED

        if self._clock() > claims.expires_at + self._clock_skew:
            return VerificationFailure.EXPIRED
        return Valid(claims)

    def remaining_ttl(self, claims: TokenClaims) -> float:
        """Seconds until claims expire. Zero or negative once expired."""
        return claims.expires_at - self._clock()

    @staticmethod
    def _canonical_header(segments: list[str]) -> dict | None:
        """Decode the header, requiring canonical base64url for every segment."""
        decoded = []
        for segment in segments:
            try:
                raw = segment.encode("ascii")
                value = base64url_decode(raw)
            except (UnicodeEncodeError, binascii.Error, ValueError):
                return None
            if base64url_encode(value) != raw:
                return None
            decoded.append(value)
        try:
            header = json.loads(decoded[0])
        except (UnicodeDecodeError, ValueError):
            return None
        return header if isinstance(header, dict) else None

    @staticmethod
    def _parse_claims(payload: dict) -> TokenClaims | None:
        user_id = payload.get("user_id")
        user_uuid = payload.get("user_uuid")
        token_id = payload.get("jti")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not _is_int(user_id) or payload.get("sub") != str(user_id):
            return None
        if not isinstance(user_uuid, str) or not user_uuid:
            return None
        if not isinstance(token_id, str) or not token_id:
            return None
        if not _is_number(issued_at) or not _is_number(expires_at):
            return None
        try:
            channel = Channel(payload.get("channel"))
            token_type = TokenType(payload.get("token_type"))
        except ValueError:
            return None
        return TokenClaims(
            user_id=user_id,
            user_uuid=user_uuid,
            channel=channel,
            token_type=token_type,
            token_id=token_id,
            issued_at=float(issued_at),
            expires_at=float(expires_at),
            issuer=payload["iss"],
        )
