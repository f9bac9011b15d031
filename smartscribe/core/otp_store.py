"""
Process-local store for one-time codes, verified-email marks and reset tokens.

Entries expire by wall-clock comparison when they are read; there is no
background sweep. Everything here is lost on restart, which only means a user
has to request a fresh code. A multi-instance deployment would need a shared
store instead.
"""

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from smartscribe.core.errors import ValidationError

OTP_TTL_SECONDS = 10 * 60
VERIFIED_TTL_SECONDS = 15 * 60
RESET_TOKEN_TTL_SECONDS = 15 * 60


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def generate_otp() -> str:
    """Six random digits."""
    return f"{secrets.randbelow(1_000_000):06d}"


@dataclass
class _Entry:
    value: str
    expires_at: float


class _TTLMap:
    def __init__(self):
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            self._data[key] = _Entry(value, time.time() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expires_at <= time.time():
                del self._data[key]
                return None
            return entry.value

    def pop(self, key: str) -> Optional[str]:
        value = self.get(key)
        with self._lock:
            self._data.pop(key, None)
        return value

    def find_key(self, value: str) -> Optional[str]:
        with self._lock:
            now = time.time()
            for key, entry in list(self._data.items()):
                if entry.expires_at <= now:
                    del self._data[key]
                elif secrets.compare_digest(entry.value, value):
                    return key
        return None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class OTPStore:
    """OTP codes and follow-up state keyed by normalized email."""

    def __init__(
        self,
        otp_ttl: float = OTP_TTL_SECONDS,
        verified_ttl: float = VERIFIED_TTL_SECONDS,
        reset_ttl: float = RESET_TOKEN_TTL_SECONDS,
    ):
        self.otp_ttl = otp_ttl
        self.verified_ttl = verified_ttl
        self.reset_ttl = reset_ttl
        self._codes = _TTLMap()
        self._verified = _TTLMap()
        self._reset_codes = _TTLMap()
        self._reset_tokens = _TTLMap()

    # Signup verification

    def issue_code(self, email: str) -> str:
        code = generate_otp()
        self._codes.put(normalize_email(email), code, self.otp_ttl)
        return code

    def verify_code(self, email: str, code: Optional[str]) -> None:
        """
        Check a signup code and mark the email verified.

        Raises:
            ValidationError: If there is no live code or it does not match
        """
        key = normalize_email(email)
        expected = self._codes.get(key)
        if expected is None:
            raise ValidationError("OTP expired or not found. Please request a new one.")
        if not code or not secrets.compare_digest(expected, str(code).strip()):
            raise ValidationError("Invalid OTP")
        self._codes.pop(key)
        self._verified.put(key, "1", self.verified_ttl)

    def is_verified(self, email: str) -> bool:
        return self._verified.get(normalize_email(email)) is not None

    def consume_verified(self, email: str) -> None:
        self._verified.pop(normalize_email(email))

    # Password reset

    def issue_reset(self, email: str) -> tuple[str, str]:
        """Issue a reset code and an opaque reset token for the same email."""
        key = normalize_email(email)
        code = generate_otp()
        token = secrets.token_urlsafe(32)
        self._reset_codes.put(key, code, self.otp_ttl)
        self._reset_tokens.put(key, token, self.reset_ttl)
        return code, token

    def verify_reset_code(self, email: str, code: Optional[str]) -> str:
        """Exchange a valid reset code for the reset token."""
        key = normalize_email(email)
        expected = self._reset_codes.get(key)
        if expected is None:
            raise ValidationError("OTP expired or not found. Please request a new one.")
        if not code or not secrets.compare_digest(expected, str(code).strip()):
            raise ValidationError("Invalid OTP")
        token = self._reset_tokens.get(key)
        if token is None:
            raise ValidationError("Reset session expired. Please request a new one.")
        self._reset_codes.pop(key)
        return token

    def resolve_reset_token(self, token: Optional[str]) -> str:
        """
        Email a live reset token belongs to, without redeeming it.

        Raises:
            ValidationError: If the token is unknown or expired
        """
        email = self._reset_tokens.find_key(token) if token else None
        if email is None:
            raise ValidationError("Invalid or expired reset token")
        return email

    def consume_reset_token(self, token: Optional[str]) -> str:
        """Redeem a reset token so it cannot be used again, returning its email."""
        email = self.resolve_reset_token(token)
        self._reset_tokens.pop(email)
        self._reset_codes.pop(email)
        return email

    def clear(self) -> None:
        for store in (self._codes, self._verified, self._reset_codes, self._reset_tokens):
            store.clear()


_otp_store: Optional[OTPStore] = None


def get_otp_store() -> OTPStore:
    global _otp_store
    if _otp_store is None:
        _otp_store = OTPStore()
    return _otp_store


def set_otp_store(store: Optional[OTPStore]) -> None:
    global _otp_store
    _otp_store = store
