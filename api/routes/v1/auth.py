"""
api/routes/v1/auth.py -- Token lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/login                  -- password login; returns a token pair
  POST   /api/v1/auth/refresh                -- rotate a refresh token
  POST   /api/v1/auth/logout                 -- blacklist access token, drop refresh entry
  POST   /api/v1/auth/logout-all             -- revoke every session of the caller
  GET    /api/v1/auth/me                     -- current identity (requires auth)
  GET    /api/v1/auth/sessions               -- live sessions of the caller (requires auth)
  DELETE /api/v1/auth/sessions/{session_id}  -- remote logout of one session (requires auth)

Security:
  POST /login and /refresh are rate-limited per IP (slowapi) on top of the
    failed-login throttle (auth/throttle.py).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries tokens.
  Every refresh failure is the same 401 the gate produces: no oracle for
    expired vs forged vs replayed.
  IDOR guard: session revocation is keyed by the caller's user_id, so a
    session id belonging to someone else is simply "not found".
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, refresh_limit
from api.models import (
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
)
from auth.dependencies import extract_request_token, get_current_identity, unauthenticated
from auth.issuer import TokenIssuer
from auth.models import AuthenticatedIdentity, TokenPair
from auth.passwords import authenticate_user
from auth.store import UserStore
from auth.throttle import LoginThrottle
from revocation.store import SessionInfo

# Auth policy:
# - POST   /api/v1/auth/login:             public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/refresh:           public -- possession of the refresh token is the credential
# - POST   /api/v1/auth/logout:            public -- best effort, works with expired access tokens
# - POST   /api/v1/auth/logout-all:        requires auth (get_current_identity)
# - GET    /api/v1/auth/me:                requires auth (get_current_identity)
# - GET    /api/v1/auth/sessions:          requires auth (get_current_identity)
# - DELETE /api/v1/auth/sessions/{id}:     requires auth + scoped to caller's user_id
router = APIRouter()


def _session_info(request: Request) -> SessionInfo:
    return SessionInfo(
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("User-Agent", "")[:512],
    )


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=pair.expires_in,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return an access/refresh pair.

    Order matters:
      1. Throttle check first -- a locked username never reaches bcrypt.
      2. authenticate_user() with timing equalization. Do NOT inline
         get_by_username() + verify_password().
      3. Failure increments both throttle counters; success clears the
         username counter only.

    Returns the same "bad_credentials" error for unknown user, wrong password
    and disabled account. A store outage while registering the refresh token
    surfaces as 503 via the StoreUnavailable handler; no pair is returned.
    """
    user_store: UserStore = request.app.state.user_store
    throttle: LoginThrottle = request.app.state.throttle
    issuer: TokenIssuer = request.app.state.issuer
    ip_address = request.client.host if request.client else "unknown"

    decision = throttle.check(body.username, ip_address)
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "code": "too_many_failed_logins",
                "message": "Too many failed login attempts. Try again later.",
            },
            headers={"Retry-After": str(decision.retry_after)},
        )

    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        throttle.record_failure(body.username, ip_address)
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    throttle.clear(body.username)
    pair = issuer.login(user, _session_info(request))
    return _token_response(pair)


@limiter.limit(refresh_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    issuer: TokenIssuer = request.app.state.issuer
    result = issuer.refresh(body.refresh_token, _session_info(request))
    if not isinstance(result, TokenPair):
        raise unauthenticated()
    return _token_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> MessageResponse:
    """Revoke the presented tokens. Always 200: logout must not fail the caller.

    The access token is taken from the body if given, otherwise from the
    Authorization header. An already expired or invalid token is ignored.
    """
    issuer: TokenIssuer = request.app.state.issuer
    access_token = (body.access_token if body else None) or extract_request_token(request)
    refresh_token = body.refresh_token if body else None
    issuer.logout(access_token, refresh_token)
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> LogoutAllResponse:
    """Delete every refresh entry of the caller and blacklist the calling access token.

    Other access tokens the caller holds elsewhere stay valid until they
    expire; ACCESS_TOKEN_EXPIRE_SECONDS bounds that window.
    """
    issuer: TokenIssuer = request.app.state.issuer
    removed = issuer.logout_all(identity.user_id, extract_request_token(request))
    return LogoutAllResponse(revoked_sessions=removed)


@router.get("/auth/me", response_model=MeResponse)
async def me(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> MeResponse:
    """Return the identity the gate established for this request."""
    return MeResponse(
        user_id=identity.user_id,
        user_uuid=identity.user_uuid,
        channel=identity.channel,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> list[SessionResponse]:
    """List live sessions of the caller, most recently active first."""
    issuer: TokenIssuer = request.app.state.issuer
    return [
        SessionResponse(
            session_id=s.session_id,
            channel=s.channel,
            ip_address=s.ip_address or None,
            user_agent=s.user_agent or None,
            created_at=s.created_at or None,
            last_activity=s.last_activity or None,
        )
        for s in issuer.list_sessions(identity.user_id)
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
) -> Response:
    """Remote logout of one session. 404 if the caller has no such session."""
    issuer: TokenIssuer = request.app.state.issuer
    if not issuer.revoke_session(identity.user_id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)
