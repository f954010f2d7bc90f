"""
API request and response models for TokenGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Channel

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password cap stays below bcrypt's 72-byte input limit.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=64)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout.

    Both fields are optional: logout is best effort and succeeds even when the
    client lost one of its tokens. The access token may also arrive in the
    Authorization header instead.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)
    access_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login and refresh. Clients treat both tokens as opaque."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    user_id: int
    user_uuid: str
    channel: Channel


class SessionResponse(BaseModel):
    """One live session (refresh token) of the current user."""

    session_id: str
    channel: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None
    last_activity: Optional[str] = None


class LogoutAllResponse(BaseModel):
    revoked_sessions: int


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Inner error object. code is machine-readable; message is for humans."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for every 4xx/5xx response: {"error": {...}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Liveness plus the state of both stores.

    status is "degraded" while either store is unreachable. Without the
    revocation store every protected request is rejected (fail closed); without
    the credential store no one can log in.
    """

    status: str = "ok"
    version: str
    revocation_store: str = "ok"
    credential_store: str = "ok"
