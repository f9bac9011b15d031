"""
Tests for password policy, rate limiting and admin account lockout.
"""

from datetime import timedelta

import pytest
from starlette.requests import Request

import smartscribe.database.database as db
from smartscribe.api.routes.utils import get_client_ip
from smartscribe.core.errors import LockedError, RateLimitedError, ValidationError
from smartscribe.core.security import (
    RateLimiter,
    SecurityGuard,
    enforce_password_policy,
    hash_password,
    password_violations,
    verify_password,
)


class TestPasswordPolicy:
    def test_strong_password_accepted(self):
        assert password_violations("Str0ng!pw") == []
        enforce_password_policy("Str0ng!pw")

    def test_seven_characters_rejected(self):
        violations = password_violations("Sh0rt!x")
        assert violations == ["Password must be at least 8 characters long"]

    @pytest.mark.parametrize(
        "password, missing",
        [
            ("lowercase1!", "uppercase"),
            ("UPPERCASE1!", "lowercase"),
            ("NoDigits!!", "number"),
            ("NoSymbol123", "special character"),
        ],
    )
    def test_missing_class_is_named(self, password, missing):
        with pytest.raises(ValidationError) as excinfo:
            enforce_password_policy(password)
        assert len(excinfo.value.errors) == 1
        assert missing in excinfo.value.errors[0]
        assert missing in excinfo.value.message

    def test_every_violation_reported(self):
        violations = password_violations("abc")
        assert len(violations) == 4
        assert any("8 characters" in v for v in violations)

    def test_empty_password(self):
        assert password_violations("") == ["Password is required"]


def test_hash_and_verify_roundtrip():
    hashed = hash_password("Str0ng!pw")
    assert hashed != "Str0ng!pw"
    assert verify_password("Str0ng!pw", hashed)
    assert not verify_password("str0ng!pw", hashed)
    assert not verify_password("Str0ng!pw", "not-a-bcrypt-hash")
    assert not verify_password(None, hashed)


def test_rate_limiter_blocks_after_quota():
    limiter = RateLimiter(max_requests=3, window_seconds=60, message="slow down")
    for _ in range(3):
        limiter.hit("1.2.3.4")

    with pytest.raises(RateLimitedError) as excinfo:
        limiter.hit("1.2.3.4")
    assert excinfo.value.message == "slow down"
    assert 1 <= excinfo.value.retry_after <= 60

    # Other keys have their own window
    limiter.hit("5.6.7.8")


def test_rate_limiter_window_resets(monkeypatch):
    clock = {"now": 1000.0}
    monkeypatch.setattr("smartscribe.core.security.time.monotonic", lambda: clock["now"])
    limiter = RateLimiter(max_requests=1, window_seconds=10, message="later")
    limiter.hit("ip")
    with pytest.raises(RateLimitedError):
        limiter.hit("ip")

    clock["now"] += 10
    limiter.hit("ip")


def test_admin_login_limit_keyed_by_ip_and_email():
    guard = SecurityGuard(admin_login_max=2)
    guard.limit_admin_login("10.0.0.1", "Admin@Example.com")
    guard.limit_admin_login("10.0.0.1", "admin@example.com")
    with pytest.raises(RateLimitedError):
        guard.limit_admin_login("10.0.0.1", "admin@example.com")
    guard.limit_admin_login("10.0.0.1", "other@example.com")
    guard.limit_admin_login("10.0.0.2", "admin@example.com")


class TestAccountLockout:
    EMAIL = "admin@example.com"

    def _fail(self, count: int, minutes_ago: float = 1.0) -> None:
        for i in range(count):
            at = db.utc_now() - timedelta(minutes=minutes_ago, seconds=count - i)
            db.insert_login_attempt(self.EMAIL, "1.1.1.1", "pytest", False, "admin", db.to_iso(at))

    async def test_four_failures_do_not_lock(self, database):
        self._fail(4)
        await SecurityGuard().check_account_lockout(self.EMAIL)

    async def test_five_failures_lock(self, database):
        self._fail(5)
        with pytest.raises(LockedError) as excinfo:
            await SecurityGuard().check_account_lockout(self.EMAIL)
        locked_until = db.parse_iso(excinfo.value.locked_until)
        assert locked_until > db.utc_now()
        assert locked_until <= db.utc_now() + timedelta(minutes=30)

    async def test_lock_is_case_insensitive(self, database):
        self._fail(5)
        with pytest.raises(LockedError):
            await SecurityGuard().check_account_lockout("ADMIN@example.com")

    async def test_success_clears_lock(self, database):
        guard = SecurityGuard()
        self._fail(5)
        await guard.record_login_attempt(self.EMAIL, "1.1.1.1", "pytest", True)
        await guard.check_account_lockout(self.EMAIL)

    async def test_failures_outside_window_ignored(self, database):
        self._fail(5, minutes_ago=31)
        await SecurityGuard().check_account_lockout(self.EMAIL)

    async def test_user_attempts_do_not_count(self, database):
        for _ in range(6):
            db.insert_login_attempt(self.EMAIL, None, None, False, "user")
        await SecurityGuard().check_account_lockout(self.EMAIL)


class TestAdminLoginLockoutRoute:
    def _login(self, client, credentials, password=None):
        return client.post(
            "/api/auth/admin/login",
            json={"email": credentials["email"], "password": password or credentials["password"]},
        )

    def test_fifth_attempt_with_correct_password_succeeds(
        self, client, admin_user, admin_credentials, relaxed_guard
    ):
        for _ in range(4):
            assert self._login(client, admin_credentials, "Wrong#Pass1").status_code == 401
        assert self._login(client, admin_credentials).status_code == 200

    def test_sixth_attempt_is_locked_even_with_correct_password(
        self, client, admin_user, admin_credentials, relaxed_guard
    ):
        for _ in range(5):
            response = self._login(client, admin_credentials, "Wrong#Pass1")
            assert response.status_code == 401
            assert response.json()["detail"] == "Admin credentials invalid"

        response = self._login(client, admin_credentials)
        assert response.status_code == 423
        body = response.json()
        assert body["code"] == "account_locked"
        assert "lockedUntil" in body

    def test_admin_login_rate_limited(self, client, admin_user, admin_credentials):
        for _ in range(5):
            self._login(client, admin_credentials, "Wrong#Pass1")
        response = self._login(client, admin_credentials, "Wrong#Pass1")
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_forwarded_header_cannot_dodge_rate_limit(self, client, admin_user, admin_credentials):
        statuses = [
            client.post(
                "/api/auth/admin/login",
                json={"email": admin_credentials["email"], "password": "Wrong#Pass1"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(6)
        ]
        assert statuses == [401] * 5 + [429]


def _request(headers=None, client_host="203.0.113.9"):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (client_host, 50000),
    }
    return Request(scope)


class TestClientIp:
    def test_ignores_forwarded_header_by_default(self, test_config):
        request = _request({"X-Forwarded-For": "10.0.0.1"})
        assert get_client_ip(request) == "203.0.113.9"

    def test_trusted_proxy_uses_first_hop(self, test_config):
        test_config.set("server", "trust_proxy", value=True)
        request = _request({"X-Forwarded-For": "10.0.0.1, 172.16.0.1"})
        assert get_client_ip(request) == "10.0.0.1"

    def test_trusted_proxy_without_header(self, test_config):
        test_config.set("server", "trust_proxy", value=True)
        assert get_client_ip(_request()) == "203.0.113.9"
