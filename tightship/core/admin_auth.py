"""
Admin authentication for operator endpoints.

Admin routes (expiry sweep, access restore, plan seeding) accept a shared
secret in the X-Admin-Key header, compared against ADMIN_KEY. The actor
identity recorded in audit events is a hash of the key, never the key.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from tightship.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """Return the admin actor for a valid X-Admin-Key, else None."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    503 when no ADMIN_KEY is configured, 401 on a missing or wrong key.
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not settings.ADMIN_KEY:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )
    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
            "hint": "Use the X-Admin-Key header.",
        },
    )
