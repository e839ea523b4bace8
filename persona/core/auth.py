"""
Identity seam for the Persona API.

Tokens are minted by the upstream auth service; this module only verifies
them and loads the caller's row.

Supports:
- Bearer JWT (HS256, claims: sub, role, name)
- X-User-Id header fallback (tests/dev only, never honoured in prod)

Every mutating route depends on get_current_actor(); admin routes add
require_role("superadmin") or similar.
"""
from typing import Optional

import jwt
from fastapi import Request
from sqlalchemy import select

from persona.core.config import settings
from persona.core.database import get_db_session, users
from persona.core.errors import PermissionError, UnauthorizedError
from persona.models.actor import Actor


def decode_token(token: str) -> dict:
    """
    Verify a Bearer token and return its claims.

    Raises UnauthorizedError when the secret is missing or the token is
    invalid/expired.
    """
    if not settings.JWT_SECRET:
        raise UnauthorizedError("Token verification is not configured")
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid token")


def issue_token(user_id: str, role: str = "user", name: Optional[str] = None) -> str:
    """Mint a token with the shared secret. Used by tests and local tooling."""
    payload = {"sub": user_id, "role": role}
    if name:
        payload["name"] = name
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _header_identity_allowed() -> bool:
    return settings.AUTH_ALLOW_USER_HEADER and settings.ENVIRONMENT.lower() != "prod"


def _resolve_user_id(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            claims = decode_token(token)
            return claims.get("sub")

    if _header_identity_allowed():
        header_user = request.headers.get("X-User-Id", "").strip()
        if header_user:
            return header_user
    return None


def load_actor(user_id: str) -> Actor:
    """Build an Actor from the users table; unknown users get the default role."""
    with get_db_session() as session:
        row = session.execute(
            select(users.c.name, users.c.avatar, users.c.role, users.c.status)
            .where(users.c.user_id == user_id)
        ).first()

    if row is None:
        return Actor(user_id=user_id)
    if row.status == "banned":
        raise PermissionError("Account is banned")
    return Actor(user_id=user_id, role=row.role, name=row.name or "User", avatar=row.avatar)


def get_optional_actor(request: Request) -> Optional[Actor]:
    """FastAPI dependency: Actor when credentials are present, else None."""
    user_id = _resolve_user_id(request)
    if not user_id:
        return None
    return load_actor(user_id)


def get_current_actor(request: Request) -> Actor:
    """
    FastAPI dependency: require an authenticated caller.

    Usage:
        @router.post("/v1/...")
        def handler(actor: Actor = Depends(get_current_actor)):
            ...
    """
    actor = get_optional_actor(request)
    if actor is None:
        raise UnauthorizedError("Authentication required")
    return actor


def require_role(*roles: str):
    """Dependency factory guarding a route to the given roles."""

    def _dependency(request: Request) -> Actor:
        actor = get_current_actor(request)
        if actor.role not in roles:
            raise PermissionError("Insufficient role for this action")
        return actor

    return _dependency


def can_moderate(actor: Actor, owner_id: Optional[str]) -> bool:
    """Single capability check for edit/delete on user-owned content."""
    return actor.is_moderator or (owner_id is not None and actor.user_id == owner_id)
