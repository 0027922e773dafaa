"""
Authentication dependencies for FastAPI.

This module provides dependencies for protecting routes with JWT authentication.
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from backend.app.core.exceptions import AuthenticationError
from backend.app.core.jwt import decode_access_token

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    FastAPI dependency for JWT authentication.

    Account state is owned by the auth service, so validation stops at the
    token: signature, expiry, and the presence of the claims this service
    relies on.

    Returns:
        Decoded token payload containing user information

    Raises:
        AuthenticationError: 401 if the token is invalid or missing required claims
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError("Could not validate credentials")

    if not payload.get("user_id") or not payload.get("role"):
        raise AuthenticationError("Invalid token payload")

    return payload
