"""
auth/errors.py -- Error taxonomy for the token subsystem.

Only two kinds of failure are exceptions:
  ConfigurationError -- startup misconfiguration (re-exported from core.config).
  StoreUnavailable   -- the revocation store could not answer in time
                        (re-exported from revocation.store).

Per-request verification outcomes are values, not exceptions: see
VerificationFailure in auth/models.py and AuthFailure in auth/issuer.py.
"""

from __future__ import annotations

from core.config import ConfigurationError
from revocation.store import StoreUnavailable

__all__ = ["ConfigurationError", "EncodingError", "ReplayDetected", "StoreUnavailable"]


class EncodingError(RuntimeError):
    """The signer could not produce a token. Indicates misconfiguration."""


class ReplayDetected(Exception):
    """A signed, unexpired refresh token was presented after its entry was gone.

    Never raised out of the issuer. Instances are built only to be logged on
    the security logger, then the caller gets the same AuthFailure as for any
    other refresh failure.
    """

    def __init__(self, user_id: int, token_id: str) -> None:
        self.user_id = user_id
        self.token_id = token_id
        super().__init__(f"refresh token reuse: user_id={user_id} token_id={token_id}")
