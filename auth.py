"""Authentication helpers.

Passwords go through werkzeug's one-way hash. Access tokens are JWTs
signed with ``settings.jwt_secret_key``; clients send them as
``Authorization: Bearer <token>``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import jwt
from werkzeug.security import check_password_hash, generate_password_hash

from config import settings
from exceptions import UnauthorizedError
from utils.dates import utcnow

if TYPE_CHECKING:
    from library import Library
    from user import User


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    return check_password_hash(password_hash, password)


def create_access_token(user: User, expires_minutes: int | None = None) -> str:
    """Issue a signed token carrying the user id and role."""
    issued_at = utcnow()
    lifetime = timedelta(minutes=expires_minutes or settings.jwt_expiration_minutes)
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> int:
    """Return the user id a token was issued for."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise UnauthorizedError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        raise UnauthorizedError("Token is not valid") from e
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError) as e:
        raise UnauthorizedError("Token is not valid") from e


def resolve_user(library: Library, token: str | None) -> User:
    """Verify a bearer token and load the user it identifies."""
    if not token:
        raise UnauthorizedError("No token, authorization denied")
    user = library.find_user(decode_access_token(token))
    if not user:
        raise UnauthorizedError("User not found")
    return user
