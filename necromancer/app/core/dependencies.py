"""
Authentication dependencies for FastAPI.

This module provides dependencies for protecting routes with JWT authentication
and for reaching the dispatch services wired at application startup.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from necromancer.app.core.jwt import decode_access_token
from necromancer.app.models.enums import UserRole

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    FastAPI dependency for JWT authentication.

    1. Validates JWT token signature and expiry
    2. Requires a user_id claim
    3. Normalizes the role claim (USER / CUSTOMER are REQUESTER)

    Returns:
        Decoded token payload containing user information

    Raises:
        HTTPException: 401 if authentication fails for any reason
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    role = UserRole.parse(payload.get("role"))
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid role in token",
        )

    return {**payload, "role": role.value}


def get_dispatch(request: Request):
    """Dispatch services container attached to the application at startup."""
    return request.app.state.dispatch
