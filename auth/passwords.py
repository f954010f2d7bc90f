"""
auth/passwords.py -- Password hashing and constant-time credential checks.

Passwords: bcrypt used directly (no passlib wrapper). passlib's internal
wrap-bug detection builds a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Timing equalization: authenticate_user() always runs bcrypt, against a dummy
hash when the username is unknown, so response time does not reveal whether
an account exists.

Layer rule: no imports from api/ or revocation/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt silently truncates input beyond 72 bytes. The API layer caps
    password length (Pydantic field) well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store.
        return False


# Computed once at import so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("tokengate_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        # Do NOT return before running bcrypt.
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
