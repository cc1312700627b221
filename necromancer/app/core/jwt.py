"""
Bearer token handling.

Accounts and login live in a separate service. This module verifies the
tokens it issues and can mint equivalent ones for local tooling and tests.
Claims used here: ``user_id`` (int) and ``role`` (see ``UserRole``).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from necromancer.app.core.config import settings


def issue_token(user_id: int, role: str, expires_in: Optional[timedelta] = None) -> str:
    """Sign a token for ``user_id`` acting as ``role``."""
    lifetime = expires_in or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {
        "sub": str(user_id),
        "user_id": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims, or None when the signature or expiry check fails."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
