"""
auth/issuer.py -- Token pair issuance, rotation and revocation.

The issuer is the only writer of revocation state:

  login          mint access + refresh, register the refresh entry and session
  refresh        consume the presented refresh entry, mint a new pair (rotation)
  logout         blacklist the access jti, delete the refresh entry (best effort)
  logout_all     delete every refresh entry of a user
  revoke_session delete one refresh entry of a user (remote logout)

Rotation: a refresh token is single use. The old entry is deleted before the
new pair is minted, and its jti is blacklisted for the rest of its life. A
signed, unexpired refresh token whose entry is already gone is a replay --
either a stolen token or a stale client. It is logged on tokengate.security,
counted, and (REVOKE_ALL_ON_REPLAY, default on) every session of the user is
revoked, because the issuer cannot tell the thief from the victim.

Failure signalling: refresh() returns TokenPair | AuthFailure. The caller
never learns which check failed. Store outages during refresh are AuthFailure
as well; during login they propagate as StoreUnavailable so the API can answer
503 instead of handing out a pair the store does not know about.

Accepted exposure window: logout_all() does not blacklist access tokens that
are already out there (the store does not track them). They stay usable until
their own exp, which ACCESS_TOKEN_EXPIRE_SECONDS keeps short.

Layer rule: may import from core/, auth/ and revocation/. Never from api/.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum

from auth import metrics
from auth.errors import ReplayDetected, StoreUnavailable
from auth.metrics import instrumented, timed
from auth.models import TokenClaims, TokenPair, TokenSubject, TokenType, User, Valid
from auth.tokens import TokenCodec
from core.config import AuthConfig
from revocation.store import RevocationStore, SessionInfo

logger = logging.getLogger("tokengate.issuer")
security_logger = logging.getLogger("tokengate.security")


class AuthFailure(str, Enum):
    """The single, opaque refresh failure. Carries no reason on purpose."""

    UNAUTHENTICATED = "unauthenticated"


AUTH_FAILURE = AuthFailure.UNAUTHENTICATED


class TokenIssuer:
    """Mint, rotate and revoke token pairs.

    Usage:
        issuer = TokenIssuer(codec, store, settings.to_auth_config())
        pair = issuer.login(user, SessionInfo(ip_address="10.0.0.1"))
        result = issuer.refresh(pair.refresh_token)
        if isinstance(result, TokenPair): ...
    """

    def __init__(self, codec: TokenCodec, store: RevocationStore, config: AuthConfig) -> None:
        self.codec = codec
        self.store = store
        self.config = config

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self.codec.now(), tz=timezone.utc).isoformat(timespec="milliseconds")

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def login(self, user: User, session_info: SessionInfo | None = None) -> TokenPair:
        """Issue a fresh pair for an already authenticated user.

        Raises StoreUnavailable if the refresh entry cannot be written.
        """
        if user.id is None:
            raise ValueError("cannot issue tokens for a user without an id")
        subject = TokenSubject(user.id, user.user_uuid, user.channel)
        now = self._timestamp()
        info = replace(
            session_info or SessionInfo(),
            channel=subject.channel.value,
            created_at=now,
            last_activity=now,
        )
        with instrumented("login", channel=subject.channel):
            pair = self._mint_pair(subject, info)
        metrics.active_sessions.inc()
        logger.info(
            "Login: user_id=%s channel=%s session_id=%s", subject.user_id, subject.channel.value, pair.session_id
        )
        return pair

    def _mint_pair(self, subject: TokenSubject, info: SessionInfo) -> TokenPair:
        access = self.codec.issue(subject, TokenType.ACCESS, self.config.access_ttl_seconds)
        refresh = self.codec.issue(subject, TokenType.REFRESH, self.config.refresh_ttl_seconds)
        refresh_id = refresh.claims.token_id

        try:
            self.store.put_refresh_token(subject.user_id, refresh_id, refresh.token, self.config.refresh_ttl_seconds)
        except StoreUnavailable:
            metrics.record_store_error("put_refresh_token")
            raise

        try:
            self.store.put_session(subject.user_id, refresh_id, info, self.config.refresh_ttl_seconds)
        except StoreUnavailable:
            # The pair is registered; only the session listing misses this row.
            metrics.record_store_error("put_session")

        metrics.record_issued(TokenType.ACCESS, subject.channel)
        metrics.record_issued(TokenType.REFRESH, subject.channel)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=self.config.access_ttl_seconds,
            access_claims=access.claims,
            refresh_claims=refresh.claims,
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def refresh(self, presented: str, session_info: SessionInfo | None = None) -> TokenPair | AuthFailure:
        """Exchange a live refresh token for a new pair.

        Every failure -- bad token, wrong type, unknown entry, lost race, store
        outage -- returns the same AUTH_FAILURE.
        """
        result = self.codec.decode(presented)
        if not isinstance(result, Valid):
            metrics.token_refresh_total.labels(result="invalid").inc()
            logger.debug("Refresh rejected: %s", result.value)
            return AUTH_FAILURE
        claims = result.claims
        if claims.token_type is not TokenType.REFRESH:
            metrics.token_refresh_total.labels(result="wrong_type").inc()
            logger.debug("Refresh rejected: %s token presented", claims.token_type.value)
            return AUTH_FAILURE

        with instrumented("refresh", channel=claims.channel):
            try:
                return self._rotate(claims, session_info)
            except StoreUnavailable as exc:
                metrics.record_store_error(exc.operation)
                metrics.token_refresh_total.labels(result="store_unavailable").inc()
                logger.warning("Refresh failed, revocation store unavailable: user_id=%s", claims.user_id)
                return AUTH_FAILURE

    def _rotate(self, claims: TokenClaims, session_info: SessionInfo | None) -> TokenPair | AuthFailure:
        user_id, old_id = claims.user_id, claims.token_id

        if not self.store.exists_refresh_token(user_id, old_id):
            self._handle_replay(claims)
            metrics.token_refresh_total.labels(result="replay").inc()
            return AUTH_FAILURE

        previous = self.store.get_session(user_id, old_id)
        if not self.store.delete_refresh_token(user_id, old_id):
            # A concurrent refresh consumed the entry between our two calls.
            metrics.token_refresh_total.labels(result="race").inc()
            logger.info("Refresh lost rotation race: user_id=%s token_id=%s", user_id, old_id)
            return AUTH_FAILURE
        self.store.blacklist_access_token(old_id, self.codec.remaining_ttl(claims))

        now = self._timestamp()
        info = previous or SessionInfo(channel=claims.channel.value, created_at=now)
        if session_info is not None:
            info = replace(info, ip_address=session_info.ip_address, user_agent=session_info.user_agent)
        info = replace(info, last_activity=now)

        pair = self._mint_pair(claims.subject, info)
        metrics.token_refresh_total.labels(result="success").inc()
        logger.info("Refresh: user_id=%s rotated %s -> %s", user_id, old_id, pair.session_id)
        return pair

    def _handle_replay(self, claims: TokenClaims) -> None:
        event = ReplayDetected(claims.user_id, claims.token_id)
        metrics.token_reuse_detected_total.inc()
        security_logger.warning("%s channel=%s", event, claims.channel.value)
        if not self.config.revoke_all_on_replay:
            return
        removed = self.store.delete_all_refresh_tokens(claims.user_id)
        metrics.active_sessions.dec(removed)
        security_logger.warning("Revoked all sessions after replay: user_id=%s count=%d", claims.user_id, removed)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    @timed("logout")
    def logout(self, access_token: str | None, refresh_token: str | None) -> None:
        """Best-effort logout. Never raises; either token may be absent or invalid."""
        if access_token:
            result = self.codec.decode(access_token)
            if isinstance(result, Valid) and result.claims.token_type is TokenType.ACCESS:
                claims = result.claims
                try:
                    self.store.blacklist_access_token(claims.token_id, self.codec.remaining_ttl(claims))
                except StoreUnavailable:
                    metrics.record_store_error("blacklist_access_token")
                    logger.warning("Logout could not blacklist access token: token_id=%s", claims.token_id)

        if refresh_token:
            result = self.codec.decode(refresh_token)
            if isinstance(result, Valid) and result.claims.token_type is TokenType.REFRESH:
                claims = result.claims
                try:
                    if self.store.delete_refresh_token(claims.user_id, claims.token_id):
                        metrics.active_sessions.dec()
                except StoreUnavailable:
                    metrics.record_store_error("delete_refresh_token")
                    logger.warning("Logout could not delete refresh entry: token_id=%s", claims.token_id)

        metrics.logout_total.labels(type="single").inc()

    @timed("logout_all")
    def logout_all(self, user_id: int, current_access_token: str | None = None) -> int:
        """Delete every refresh entry of user_id and return how many there were.

        Only current_access_token is blacklisted; see the module docstring for
        why other outstanding access tokens are left to expire. Raises
        StoreUnavailable -- the caller asked explicitly and must know it failed.
        """
        try:
            removed = self.store.delete_all_refresh_tokens(user_id)
            if current_access_token:
                result = self.codec.decode(current_access_token)
                if isinstance(result, Valid) and result.claims.user_id == user_id:
                    claims = result.claims
                    self.store.blacklist_access_token(claims.token_id, self.codec.remaining_ttl(claims))
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            raise
        metrics.active_sessions.dec(removed)
        metrics.logout_total.labels(type="all").inc()
        logger.info("Logout all: user_id=%s sessions=%d", user_id, removed)
        return removed

    @timed("revoke_session")
    def revoke_session(self, user_id: int, session_id: str) -> bool:
        """Remote logout of one session. False if it did not exist (or belongs to someone else)."""
        try:
            removed = self.store.delete_refresh_token(user_id, session_id)
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            raise
        if removed:
            metrics.active_sessions.dec()
            metrics.logout_total.labels(type="session").inc()
            logger.info("Revoked session: user_id=%s session_id=%s", user_id, session_id)
        return removed

    def list_sessions(self, user_id: int) -> list[SessionInfo]:
        try:
            return self.store.list_sessions(user_id)
        except StoreUnavailable as exc:
            metrics.record_store_error(exc.operation)
            raise
