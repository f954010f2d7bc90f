"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The gate runs once per request in middleware (api/main.py) and leaves its
verdict on request.state.identity. These helpers only read that verdict:

try_get_current_identity() is the soft variant (returns None when anonymous).
get_current_identity() wraps it and raises HTTP 401 if unauthenticated.

Every 401 carries the same body. Expired, forged, revoked, wrong type and
store outage are indistinguishable from outside.

Layer rule: auth/dependencies.py may import from fastapi (for
HTTPException/Request) because this module is part of the FastAPI dependency
injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.gate import extract_bearer_token
from auth.models import AuthenticatedIdentity

UNAUTHENTICATED_DETAIL = {"code": "unauthenticated", "message": "Authentication required."}


def unauthenticated() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=UNAUTHENTICATED_DETAIL,
        headers={"WWW-Authenticate": "Bearer"},
    )


def try_get_current_identity(request: Request) -> AuthenticatedIdentity | None:
    """Return the identity the gate attached to this request, or None.

    Never raises -- callers that need a hard 401 should use get_current_identity().
    """
    return getattr(request.state, "identity", None)


def get_current_identity(request: Request) -> AuthenticatedIdentity:
    """Require authentication. Raises HTTP 401 if the request is anonymous.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: AuthenticatedIdentity = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise unauthenticated()
    return identity


def extract_request_token(request: Request) -> str | None:
    """Bearer token from the Authorization header, using the gate's parsing rules."""
    return extract_bearer_token(request.headers.get("Authorization"))
