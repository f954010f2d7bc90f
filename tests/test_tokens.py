"""
tests/test_tokens.py -- Unit tests for the token codec.

Covers:
  - issue/decode round trip preserves every claim
  - any single-character substitution is MALFORMED_OR_TAMPERED, never Valid
  - expiry at ttl=0: Valid at the issuing instant, EXPIRED 1ms later
  - clock skew tolerance
  - JWE / unsigned / alg=none tokens are UNSUPPORTED_FORMAT
  - foreign secret, foreign algorithm, foreign issuer, bad claims are MALFORMED_OR_TAMPERED
  - startup validation of the secret
"""

from __future__ import annotations

import json
import time

import pytest
from jose import jwt
from jose.utils import base64url_encode

from auth.errors import ConfigurationError
from auth.models import Channel, TokenSubject, TokenType, Valid, VerificationFailure
from auth.tokens import TokenCodec

from conftest import TEST_SECRET, FakeClock

SUBJECT = TokenSubject(user_id=42, user_uuid="6f1c2a8e-0000-4000-8000-000000000042", channel=Channel.KAKAO)

_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def _segment(obj: dict) -> str:
    return base64url_encode(json.dumps(obj).encode()).decode()


def _payload(codec: TokenCodec, **overrides) -> dict:
    now = codec.now()
    payload = {
        "sub": "42",
        "user_id": 42,
        "user_uuid": SUBJECT.user_uuid,
        "channel": "KAKAO",
        "token_type": "ACCESS",
        "jti": "00000000-0000-4000-8000-000000000001",
        "iat": now,
        "exp": now + 60,
        "iss": codec.issuer,
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("token_type", [TokenType.ACCESS, TokenType.REFRESH])
def test_round_trip_preserves_claims(codec, token_type):
    issued = codec.issue(SUBJECT, token_type, 900)
    result = codec.decode(issued.token)
    assert isinstance(result, Valid)
    assert result.claims == issued.claims
    assert result.claims.subject == SUBJECT
    assert result.claims.token_type is token_type
    assert result.claims.expires_at - result.claims.issued_at == pytest.approx(900)


def test_every_issuance_gets_a_fresh_token_id(codec):
    ids = {codec.issue(SUBJECT, TokenType.ACCESS, 60).claims.token_id for _ in range(50)}
    assert len(ids) == 50


def test_encode_returns_compact_jws(codec):
    token = codec.encode(SUBJECT, TokenType.ACCESS, 60)
    assert token.count(".") == 2
    assert isinstance(codec.decode(token), Valid)


def test_millisecond_timestamps(clock):
    clock.now = 1_700_000_000.1234
    codec = TokenCodec(TEST_SECRET, "tokengate-test", clock=clock)
    claims = codec.issue(SUBJECT, TokenType.ACCESS, 0.5).claims
    assert claims.issued_at == 1_700_000_000.123
    assert claims.expires_at == 1_700_000_000.624


def test_zero_ttl_is_valid_at_issuance_with_sub_millisecond_clock():
    clock = FakeClock(start=1_700_000_000.1234)
    codec = TokenCodec(TEST_SECRET, "tokengate-test", clock=clock)
    token = codec.encode(SUBJECT, TokenType.ACCESS, 0)
    assert isinstance(codec.decode(token), Valid)
    clock.advance(0.001)
    assert codec.decode(token) is VerificationFailure.EXPIRED


# ---------------------------------------------------------------------------
# Tamper detection
# ---------------------------------------------------------------------------


def test_every_single_character_substitution_is_rejected(codec):
    token = codec.encode(SUBJECT, TokenType.ACCESS, 900)
    for i, original in enumerate(token):
        replacements = [c for c in ("A", "g", "_") if c != original]
        if original == ".":
            replacements = ["A"]
        for replacement in replacements:
            tampered = token[:i] + replacement + token[i + 1 :]
            result = codec.decode(tampered)
            assert result is VerificationFailure.MALFORMED_OR_TAMPERED, (i, original, replacement, result)


def test_non_canonical_last_signature_character_is_rejected(codec):
    """Flipping the ignored low bits of the last base64url character must not verify."""
    token = codec.encode(SUBJECT, TokenType.ACCESS, 900)
    last = token[-1]
    index = _ALPHABET.index(last)
    # HS256 signatures are 32 bytes -> 43 chars; the last char carries 2 padding bits.
    siblings = [_ALPHABET[(index & ~0b11) | bits] for bits in range(4)]
    for sibling in siblings:
        if sibling == last:
            continue
        assert codec.decode(token[:-1] + sibling) is VerificationFailure.MALFORMED_OR_TAMPERED


def test_wrong_secret_is_rejected(codec, clock):
    other = TokenCodec("another-secret-that-is-also-long-enough-42", codec.issuer, clock=clock)
    token = other.encode(SUBJECT, TokenType.ACCESS, 900)
    assert codec.decode(token) is VerificationFailure.MALFORMED_OR_TAMPERED


def test_wrong_issuer_is_rejected(codec, clock):
    other = TokenCodec(TEST_SECRET, "someone-else", clock=clock)
    token = other.encode(SUBJECT, TokenType.ACCESS, 900)
    assert codec.decode(token) is VerificationFailure.MALFORMED_OR_TAMPERED


def test_foreign_algorithm_is_rejected(codec):
    token = jwt.encode(_payload(codec), TEST_SECRET, algorithm="HS384")
    assert codec.decode(token) is VerificationFailure.MALFORMED_OR_TAMPERED


@pytest.mark.parametrize(
    "overrides",
    [
        {"user_uuid": None},
        {"user_id": "42"},
        {"user_id": True, "sub": "True"},
        {"sub": "43"},
        {"channel": "MYSPACE"},
        {"token_type": "ID"},
        {"jti": None},
        {"iat": None},
    ],
)
def test_signed_token_with_bad_claims_is_rejected(codec, overrides):
    token = jwt.encode(_payload(codec, **overrides), TEST_SECRET, algorithm="HS256")
    assert codec.decode(token) is VerificationFailure.MALFORMED_OR_TAMPERED


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c", "x" * 500, "é.é.é", None, 42])
def test_garbage_never_raises(codec, garbage):
    assert codec.decode(garbage) is VerificationFailure.MALFORMED_OR_TAMPERED


# ---------------------------------------------------------------------------
# Unsupported formats
# ---------------------------------------------------------------------------


def test_five_segment_jwe_is_unsupported(codec):
    assert codec.decode("eyJhbGciOiJSU0EtT0FFUCJ9.a.b.c.d") is VerificationFailure.UNSUPPORTED_FORMAT


def test_empty_signature_is_unsupported(codec):
    token = codec.encode(SUBJECT, TokenType.ACCESS, 900)
    header, payload, _ = token.split(".")
    assert codec.decode(f"{header}.{payload}.") is VerificationFailure.UNSUPPORTED_FORMAT


def test_alg_none_is_unsupported_even_with_a_signature(codec):
    header = _segment({"alg": "none", "typ": "JWT"})
    payload = _segment(_payload(codec))
    signature = base64url_encode(b"not-a-signature").decode()
    assert codec.decode(f"{header}.{payload}.{signature}") is VerificationFailure.UNSUPPORTED_FORMAT
    assert codec.decode(f"{header}.{payload}.") is VerificationFailure.UNSUPPORTED_FORMAT


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def test_zero_ttl_valid_at_issuance_then_expired(codec, clock):
    token = codec.encode(SUBJECT, TokenType.ACCESS, 0)
    assert isinstance(codec.decode(token), Valid)
    clock.advance(0.001)
    assert codec.decode(token) is VerificationFailure.EXPIRED


def test_clock_skew_extends_acceptance(clock):
    codec = TokenCodec(TEST_SECRET, "tokengate-test", clock_skew_seconds=5, clock=clock)
    token = codec.encode(SUBJECT, TokenType.ACCESS, 0)
    clock.advance(4.9)
    assert isinstance(codec.decode(token), Valid)
    clock.advance(0.2)
    assert codec.decode(token) is VerificationFailure.EXPIRED


def test_expiry_reported_only_for_valid_signatures(codec, clock):
    token = codec.encode(SUBJECT, TokenType.ACCESS, 1)
    clock.advance(10)
    header, payload, signature = token.split(".")
    forged = f"{header}.{payload}.{'A' if signature[0] != 'A' else 'B'}{signature[1:]}"
    assert codec.decode(token) is VerificationFailure.EXPIRED
    assert codec.decode(forged) is VerificationFailure.MALFORMED_OR_TAMPERED


@pytest.mark.parametrize("offset", [-10 * 365 * 86400, 10 * 365 * 86400])
def test_expiry_follows_the_injected_clock_not_wall_time(offset):
    """Clocks years away from wall time: only the codec's own clock decides expiry."""
    clock = FakeClock(start=time.time() + offset)
    codec = TokenCodec(TEST_SECRET, "tokengate-test", clock=clock)
    skewed = TokenCodec(TEST_SECRET, "tokengate-test", clock_skew_seconds=10, clock=clock)
    token = codec.encode(SUBJECT, TokenType.ACCESS, 60)

    assert isinstance(codec.decode(token), Valid)
    clock.advance(65)
    assert codec.decode(token) is VerificationFailure.EXPIRED
    assert isinstance(skewed.decode(token), Valid)
    clock.advance(10)
    assert skewed.decode(token) is VerificationFailure.EXPIRED


def test_wall_clock_expiry_is_reported_as_expired():
    codec = TokenCodec(TEST_SECRET, "tokengate-test")
    skewed = TokenCodec(TEST_SECRET, "tokengate-test", clock_skew_seconds=30)
    token = codec.encode(SUBJECT, TokenType.ACCESS, -5)
    assert codec.decode(token) is VerificationFailure.EXPIRED
    assert isinstance(skewed.decode(token), Valid)


def test_wall_clock_zero_ttl_is_valid_at_issuance():
    codec = TokenCodec(TEST_SECRET, "tokengate-test")
    for _ in range(20):
        assert isinstance(codec.decode(codec.encode(SUBJECT, TokenType.ACCESS, 0)), Valid)


def test_remaining_ttl(codec, clock):
    claims = codec.issue(SUBJECT, TokenType.ACCESS, 900).claims
    clock.advance(100)
    assert codec.remaining_ttl(claims) == pytest.approx(800)
    clock.advance(1000)
    assert codec.remaining_ttl(claims) < 0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("secret", ["", "short", "x" * 31])
def test_short_secret_rejected_at_construction(secret):
    with pytest.raises(ConfigurationError):
        TokenCodec(secret, "tokengate")


def test_empty_issuer_rejected():
    with pytest.raises(ConfigurationError):
        TokenCodec(TEST_SECRET, "")


def test_negative_skew_rejected():
    with pytest.raises(ConfigurationError):
        TokenCodec(TEST_SECRET, "tokengate", clock_skew_seconds=-1)


def test_injected_clock_is_used():
    clock = FakeClock(start=2_000_000_000.0)
    codec = TokenCodec(TEST_SECRET, "tokengate", clock=clock)
    assert codec.issue(SUBJECT, TokenType.ACCESS, 60).claims.issued_at == 2_000_000_000.0
