"""
Signed bearer tokens and the admin session lifecycle.

- Regular users get a 7-day JWT; nothing else is stored server side.
- Admins get a 2-hour JWT bound to exactly one active session row. A new
  admin login deactivates every earlier session of that admin, so an older
  token stops working even though its signature is still valid.
- Session rows store the SHA-256 hash of the token, never the token itself.
"""

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwt

from smartscribe.core.errors import AuthError
from smartscribe.database import database as db

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_USER_TOKEN_DAYS = 7
DEFAULT_ADMIN_TOKEN_HOURS = 2

SESSION_INVALID_MESSAGE = "Session expired or invalid. Please login again."


def hash_token(token: str) -> str:
    """Hash a token using SHA-256 for storage."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class TokenClaims:
    """Verified contents of a bearer token."""

    user_id: int
    is_admin: bool
    expires_at: datetime
    token: str


class TokenStore:
    """Issues and verifies tokens; owns admin session rows."""

    def __init__(
        self,
        secret: Optional[str] = None,
        user_token_days: int = DEFAULT_USER_TOKEN_DAYS,
        admin_token_hours: int = DEFAULT_ADMIN_TOKEN_HOURS,
    ):
        if not secret:
            logger.warning(
                "JWT_SECRET is not set; using a random per-process secret. "
                "All tokens become invalid when the server restarts."
            )
            secret = secrets.token_urlsafe(48)
        self._secret = secret
        self.user_token_ttl = timedelta(days=user_token_days)
        self.admin_token_ttl = timedelta(hours=admin_token_hours)

    # ------------------------------------------------------------------
    # Signed tokens
    # ------------------------------------------------------------------

    def issue_token(self, user_id: int, is_admin: bool = False) -> Tuple[str, datetime]:
        """
        Sign a token for a user.

        Returns:
            (token, expiry)
        """
        now = datetime.now(timezone.utc)
        expires_at = now + (self.admin_token_ttl if is_admin else self.user_token_ttl)
        claims: Dict[str, Any] = {
            "sub": str(user_id),
            "adm": bool(is_admin),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # unique even when two tokens are issued within the same second
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM), expires_at

    def decode_token(self, token: Optional[str]) -> TokenClaims:
        """
        Verify signature and expiry.

        Raises:
            AuthError: If the token is missing, malformed, forged or expired
        """
        if not token:
            raise AuthError("Not authorized, no token")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
            user_id = int(payload["sub"])
        except (JWTError, KeyError, TypeError, ValueError):
            raise AuthError("Not authorized, token failed")

        return TokenClaims(
            user_id=user_id,
            is_admin=bool(payload.get("adm", False)),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token=token,
        )

    # ------------------------------------------------------------------
    # Admin sessions
    # ------------------------------------------------------------------

    async def create_admin_session(
        self,
        admin_id: int,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Tuple[str, datetime]:
        """Issue an admin token and make its session the only active one."""
        token, expires_at = self.issue_token(admin_id, is_admin=True)
        await asyncio.to_thread(
            db.replace_admin_session,
            admin_id,
            hash_token(token),
            ip_address,
            user_agent,
            db.to_iso(expires_at),
        )
        logger.info(f"Admin session created for admin_id={admin_id}")
        return token, expires_at

    async def validate_admin_session(self, claims: TokenClaims) -> Dict[str, Any]:
        """
        Require an active, unexpired session row bound to this exact token.

        Raises:
            AuthError: If the session was superseded, revoked or has expired
        """
        now = db.now_iso()
        session = await asyncio.to_thread(
            db.get_active_admin_session, hash_token(claims.token), now
        )
        if session is None or session["admin_id"] != claims.user_id:
            raise AuthError(SESSION_INVALID_MESSAGE)
        await asyncio.to_thread(db.touch_admin_session, session["id"], now)
        return session

    async def refresh_admin_session(self, old_token: str, admin_id: int) -> Tuple[str, datetime]:
        """Swap the session's token and expiry in place."""
        new_token, expires_at = self.issue_token(admin_id, is_admin=True)
        rotated = await asyncio.to_thread(
            db.rotate_admin_session_token,
            hash_token(old_token),
            admin_id,
            hash_token(new_token),
            db.to_iso(expires_at),
            db.now_iso(),
        )
        if not rotated:
            raise AuthError("Invalid session")
        return new_token, expires_at

    async def revoke_admin_session(self, token: str, admin_id: int) -> bool:
        revoked = await asyncio.to_thread(
            db.deactivate_admin_session, hash_token(token), admin_id
        )
        if revoked:
            logger.info(f"Admin session revoked for admin_id={admin_id}")
        return revoked

    async def get_session_expiry(self, token: str) -> Optional[str]:
        session = await asyncio.to_thread(
            db.get_active_admin_session, hash_token(token), db.now_iso()
        )
        return session["expires_at"] if session else None


_token_store: Optional[TokenStore] = None


def get_token_store() -> TokenStore:
    """Get or create the global token store."""
    global _token_store
    if _token_store is None:
        from smartscribe.config import get_config

        cfg = get_config()
        _token_store = TokenStore(
            secret=cfg.get("auth", "jwt_secret"),
            user_token_days=int(
                cfg.get("auth", "user_token_days", default=DEFAULT_USER_TOKEN_DAYS)
            ),
            admin_token_hours=int(
                cfg.get("auth", "admin_token_hours", default=DEFAULT_ADMIN_TOKEN_HOURS)
            ),
        )
    return _token_store


def set_token_store(store: Optional[TokenStore]) -> None:
    global _token_store
    _token_store = store
