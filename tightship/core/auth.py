"""
Caller identity for the API.

Resolves the acting user from a Bearer JWT (HS256 signed with JWT_SECRET,
user id in the `sub` claim), falling back to the X-User-Id header used by
tests and internal callers.

Identity is only resolved here. Mapping the user to an organization belongs
to the enforcement layer, which treats a missing identity as an
Unauthenticated denial.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, Request

from tightship.core.config import settings
from tightship.core.errors import UnauthorizedError

logger = logging.getLogger("tightship.auth")


def decode_token(token: str) -> Optional[str]:
    """
    Verify a JWT and return its `sub` claim.

    Returns None when no secret is configured or the token is invalid.
    """
    if not settings.JWT_SECRET:
        logger.debug("No JWT_SECRET configured, skipping JWT validation")
        return None
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        logger.info("[auth] token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.info("[auth] invalid token", extra={"error": str(exc)})
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


def issue_token(user_id: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Sign a short-lived token; used by tests and internal tooling."""
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured")
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": user_id, "iat": now, "exp": now + expires_in},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def resolve_user_id(authorization: Optional[str], x_user_id: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        user_id = decode_token(authorization[7:].strip())
        if user_id:
            return user_id
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return None


def get_optional_user_id(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> Optional[str]:
    """FastAPI dependency: the caller's user id, or None."""
    user_id = resolve_user_id(authorization, x_user_id)
    request.state.user_id = user_id
    return user_id


def get_current_user_id(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """FastAPI dependency: the caller's user id; 401 when absent."""
    user_id = get_optional_user_id(request, authorization, x_user_id)
    if not user_id:
        raise UnauthorizedError("Authentication required")
    return user_id
