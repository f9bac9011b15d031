"""
Shared utilities for API routes.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request, WebSocket

from smartscribe.config import get_config
from smartscribe.core.errors import AuthError, ForbiddenError
from smartscribe.core.security import get_security_guard
from smartscribe.core.token_store import TokenClaims, get_token_store
from smartscribe.database import database as db


@dataclass
class AuthContext:
    """The authenticated caller of a request."""

    user: Dict[str, Any]
    claims: TokenClaims

    @property
    def user_id(self) -> int:
        return self.user["id"]

    @property
    def is_admin(self) -> bool:
        return bool(self.user["is_admin"])


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Extract bearer token from an Authorization header."""
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_client_ip(request: Request) -> Optional[str]:
    """
    Client address as seen by the server.

    X-Forwarded-For is only honoured with ``server.trust_proxy`` enabled,
    i.e. when the server sits behind a reverse proxy that overwrites it.
    """
    if get_config().get("server", "trust_proxy", default=False):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def authenticate_token(token: Optional[str]) -> AuthContext:
    """
    Resolve a bearer token to its user.

    Admin-flagged tokens must also be bound to the admin's live session row.

    Raises:
        AuthError: Missing, invalid or superseded token, or unknown user
        ForbiddenError: Disabled account
    """
    store = get_token_store()
    claims = store.decode_token(token)
    user = await asyncio.to_thread(db.get_user, claims.user_id)
    if user is None:
        raise AuthError("User not found")
    if not user["is_active"]:
        raise ForbiddenError("Your account has been disabled. Please contact support.")
    if claims.is_admin:
        if not user["is_admin"]:
            raise AuthError("Not authorized, token failed")
        await store.validate_admin_session(claims)
    return AuthContext(user=user, claims=claims)


async def get_current_user(request: Request) -> AuthContext:
    """Dependency: any authenticated user."""
    return await authenticate_token(extract_bearer_token(request.headers.get("Authorization")))


async def require_admin(auth: AuthContext = Depends(get_current_user)) -> AuthContext:
    """Dependency: an admin holding an admin-session token."""
    if not auth.is_admin or not auth.claims.is_admin:
        raise ForbiddenError("Admin access only")
    return auth


async def limit_api(request: Request) -> None:
    """Dependency: general per-IP request quota."""
    get_security_guard().limit_api(get_client_ip(request))


def websocket_client_ip(websocket: WebSocket) -> Optional[str]:
    return websocket.client.host if websocket.client else None


def sanitize_for_log(value: Optional[str], max_length: int = 200) -> Optional[str]:
    """
    Sanitize user input before logging to prevent log injection attacks.

    Escapes newlines and removes control characters that could interfere
    with log parsing or monitoring systems.

    Args:
        value: The string to sanitize
        max_length: Maximum length before truncation (default: 200)

    Returns:
        Sanitized string safe for logging
    """
    if not value:
        return value

    sanitized = value.replace("\n", "\\n").replace("\r", "\\r")
    sanitized = "".join(c for c in sanitized if c.isprintable() or c in " \t")

    if len(sanitized) > max_length:
        return sanitized[:max_length] + "..."

    return sanitized


def format_role(role: Optional[str]) -> str:
    """``student`` -> ``Student``."""
    return (role or "other").capitalize()


def serialize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "role": format_role(user["role"]),
        "image": user.get("image"),
        "isAdmin": bool(user["is_admin"]),
        "isActive": bool(user["is_active"]),
        "transcriptions": user["transcription_count"],
        "joinDate": user["created_at"],
    }
