"""
Rate limiting, account lockout, login-attempt audit and password policy.

The rate limiter and the lockout check are independent:

- the limiter caps raw request volume per key (client IP, optionally combined
  with the submitted email) in fixed windows, in memory;
- the lockout counts failed admin logins per email recorded in the
  ``login_attempts`` table over a trailing window.
"""

import asyncio
import re
import threading
import time
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import bcrypt

from smartscribe.core.errors import LockedError, RateLimitedError, ValidationError
from smartscribe.database import database as db
from smartscribe.logging import get_logger

logger = get_logger("security")

LOCKOUT_MESSAGE = (
    "Account temporarily locked due to multiple failed login attempts. "
    "Please try again after 30 minutes."
)

PASSWORD_MIN_LENGTH = 8
_SPECIAL_CHARS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')

PASSWORD_RULES: List[Tuple[str, "re.Pattern[str]"]] = [
    ("Password must contain at least one uppercase letter", re.compile(r"[A-Z]")),
    ("Password must contain at least one lowercase letter", re.compile(r"[a-z]")),
    ("Password must contain at least one number", re.compile(r"[0-9]")),
    ("Password must contain at least one special character", _SPECIAL_CHARS),
]


# bcrypt only reads the first 72 bytes; newer releases refuse longer input
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: Optional[str], password_hash: Optional[str]) -> bool:
    """Constant-time check of a plaintext password against a stored bcrypt hash."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


def password_violations(password: Optional[str]) -> List[str]:
    """Every policy rule the password breaks, in a stable order."""
    if not password:
        return ["Password is required"]

    violations: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        violations.append(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
        )
    for message, pattern in PASSWORD_RULES:
        if not pattern.search(password):
            violations.append(message)
    return violations


def enforce_password_policy(password: Optional[str]) -> None:
    """Raise ValidationError naming every violated rule."""
    violations = password_violations(password)
    if violations:
        raise ValidationError("; ".join(violations), errors=violations)


class RateLimiter:
    """
    Fixed-window request counter.

    Thread-safe; state is process-local and lost on restart.
    """

    def __init__(self, max_requests: int, window_seconds: float, message: str):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.message = message
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """
        Count one request for ``key``.

        Raises:
            RateLimitedError: If the key exceeded its quota in the current window
        """
        now = time.monotonic()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            if len(self._windows) > 10_000:
                self._evict(now)

        if count > self.max_requests:
            retry_after = max(1, int(started + self.window_seconds - now))
            logger.warning(f"Rate limit exceeded for key {key!r}")
            raise RateLimitedError(self.message, retry_after=retry_after)

    def _evict(self, now: float) -> None:
        expired = [
            key
            for key, (started, _) in self._windows.items()
            if now - started >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class SecurityGuard:
    """Per-request checks for the authentication endpoints."""

    def __init__(
        self,
        admin_login_max: int = 5,
        admin_login_window_minutes: int = 15,
        api_max: int = 100,
        api_window_minutes: int = 15,
        lockout_threshold: int = 5,
        lockout_window_minutes: int = 30,
    ):
        self.admin_login_limiter = RateLimiter(
            admin_login_max,
            admin_login_window_minutes * 60,
            "Too many login attempts from this IP, please try again after 15 minutes",
        )
        self.api_limiter = RateLimiter(
            api_max,
            api_window_minutes * 60,
            "Too many requests from this IP, please try again later",
        )
        self.lockout_threshold = lockout_threshold
        self.lockout_window = timedelta(minutes=lockout_window_minutes)

    def limit_admin_login(self, ip_address: Optional[str], email: Optional[str]) -> None:
        self.admin_login_limiter.hit(f"{ip_address or 'unknown'}-{(email or '').lower()}")

    def limit_api(self, ip_address: Optional[str]) -> None:
        self.api_limiter.hit(ip_address or "unknown")

    async def check_account_lockout(self, email: Optional[str], attempt_type: str = "admin") -> None:
        """
        Reject when the email has reached the failure threshold inside the
        window with no successful login after those failures.

        Raises:
            LockedError: With ``locked_until`` set to when the oldest counted
                failure leaves the window
        """
        if not email:
            return
        now = db.utc_now()
        since = db.to_iso(now - self.lockout_window)
        failures = await asyncio.to_thread(
            db.failures_since_last_success, email.strip().lower(), attempt_type, since
        )
        if len(failures) < self.lockout_threshold:
            return

        # The lock lifts once fewer than `threshold` failures remain in the window
        pivot = db.parse_iso(failures[-self.lockout_threshold])
        locked_until = db.to_iso(pivot + self.lockout_window)  # type: ignore[operator]
        logger.warning(f"Login blocked for locked account {email!r}")
        raise LockedError(LOCKOUT_MESSAGE, locked_until=locked_until)

    async def record_login_attempt(
        self,
        email: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        success: bool,
        attempt_type: str = "admin",
    ) -> None:
        """Audit a login attempt. Storage failures are logged, never raised."""
        try:
            await asyncio.to_thread(
                db.insert_login_attempt,
                email.strip().lower() if email else "unknown",
                ip_address,
                user_agent,
                success,
                attempt_type,
            )
        except Exception as e:
            logger.error(f"Error logging login attempt: {e}")

    def reset(self) -> None:
        self.admin_login_limiter.reset()
        self.api_limiter.reset()


_guard: Optional[SecurityGuard] = None


def get_security_guard() -> SecurityGuard:
    """Get or create the process-wide guard, sized from the ``security`` config section."""
    global _guard
    if _guard is None:
        from smartscribe.config import get_config

        section = get_config().security
        _guard = SecurityGuard(
            admin_login_max=int(section.get("admin_login_max_attempts", 5)),
            admin_login_window_minutes=int(section.get("admin_login_window_minutes", 15)),
            api_max=int(section.get("api_max_requests", 100)),
            api_window_minutes=int(section.get("api_window_minutes", 15)),
            lockout_threshold=int(section.get("lockout_threshold", 5)),
            lockout_window_minutes=int(section.get("lockout_window_minutes", 30)),
        )
    return _guard


def set_security_guard(guard: Optional[SecurityGuard]) -> None:
    global _guard
    _guard = guard
