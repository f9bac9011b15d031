"""
Tests for email verification, signup, login and password reset.
"""

import re

import pytest

from smartscribe.core import mailer
from smartscribe.core.errors import ProviderError, ValidationError
from smartscribe.core.otp_store import OTPStore, get_otp_store


class RecordingMailer(mailer.Mailer):
    """Keeps messages instead of talking to an SMTP server."""

    def __init__(self):
        super().__init__({})
        self.sent = []

    async def send(self, recipient, subject, html):
        self.sent.append({"to": recipient, "subject": subject, "html": html})

    def last_code(self):
        return re.search(r"<h1[^>]*>(\d{6})</h1>", self.sent[-1]["html"]).group(1)


@pytest.fixture
def outbox(database):
    fake = RecordingMailer()
    mailer.set_mailer(fake)
    return fake


def _signup(client, outbox, email="new@example.com", password="Fresh#Pass1", role="student"):
    assert client.post("/api/auth/send-otp", json={"email": email}).status_code == 200
    code = outbox.last_code()
    assert client.post("/api/auth/verify-otp", json={"email": email, "otp": code}).status_code == 200
    return client.post(
        "/api/auth/signup",
        json={"name": "New Person", "email": email, "password": password, "role": role},
    )


class TestSignup:
    def test_full_flow(self, client, outbox):
        response = _signup(client, outbox)
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["role"] == "Student"
        assert body["token"]
        assert outbox.sent[0]["to"] == "new@example.com"

        profile = client.get("/api/users/profile", headers={"Authorization": f"Bearer {body['token']}"})
        assert profile.status_code == 200

    def test_signup_requires_verification(self, client, outbox):
        response = client.post(
            "/api/auth/signup",
            json={"name": "x", "email": "unverified@example.com", "password": "Fresh#Pass1"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Please verify your email before signing up"

    def test_verification_is_single_use(self, client, outbox):
        assert _signup(client, outbox).status_code == 201
        assert not get_otp_store().is_verified("new@example.com")

    def test_existing_email_rejected(self, client, outbox, make_user):
        make_user(email="taken@example.com")
        response = client.post("/api/auth/send-otp", json={"email": "Taken@Example.com"})
        assert response.status_code == 409
        assert outbox.sent == []

    def test_wrong_code(self, client, outbox):
        client.post("/api/auth/send-otp", json={"email": "new@example.com"})
        wrong = "000000" if outbox.last_code() != "000000" else "111111"
        response = client.post("/api/auth/verify-otp", json={"email": "new@example.com", "otp": wrong})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid OTP"

    def test_weak_password_names_missing_class(self, client, outbox):
        response = _signup(client, outbox, password="alllowercase1!")
        assert response.status_code == 400
        assert "uppercase" in response.json()["detail"]

    def test_invalid_email_rejected(self, client, outbox):
        response = client.post("/api/auth/send-otp", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_unconfigured_mailer_fails_explicitly(self, client, database):
        mailer.set_mailer(mailer.Mailer({}))
        response = client.post("/api/auth/send-otp", json={"email": "new@example.com"})
        assert response.status_code == 502
        assert response.json()["detail"] == "Email service is not configured"


class TestLogin:
    def test_login(self, client, make_user):
        user, _ = make_user(email="login@example.com")
        response = client.post(
            "/api/auth/login", json={"email": "LOGIN@example.com", "password": "User#Pass1"}
        )
        assert response.status_code == 200
        assert response.json()["_id"] == user["id"]
        assert response.json()["isAdmin"] is False

    def test_bad_password(self, client, make_user):
        make_user(email="login@example.com")
        response = client.post(
            "/api/auth/login", json={"email": "login@example.com", "password": "Wrong#Pass1"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    def test_disabled_account(self, client, admin_token, make_user):
        user, token = make_user(email="login@example.com")
        response = client.put(
            f"/api/users/{user['id']}/disable", headers={"Authorization": f"Bearer {admin_token}"}
        )
        assert response.status_code == 200

        response = client.post(
            "/api/auth/login", json={"email": "login@example.com", "password": "User#Pass1"}
        )
        assert response.status_code == 403
        # Existing tokens stop working too
        assert client.get("/api/users/profile", headers={"Authorization": f"Bearer {token}"}).status_code == 403


class TestPasswordReset:
    def test_reset_by_code(self, client, outbox, make_user):
        make_user(email="forgot@example.com")
        assert client.post("/api/auth/forgot-password", json={"email": "forgot@example.com"}).status_code == 200
        assert "/reset-password?token=" in outbox.sent[-1]["html"]

        response = client.post(
            "/api/auth/verify-reset-otp",
            json={"email": "forgot@example.com", "otp": outbox.last_code()},
        )
        assert response.status_code == 200
        token = response.json()["resetToken"]

        response = client.post(
            "/api/auth/reset-password",
            json={"token": token, "password": "Brand#New2", "confirmPassword": "Brand#New2"},
        )
        assert response.status_code == 200

        login = client.post(
            "/api/auth/login", json={"email": "forgot@example.com", "password": "Brand#New2"}
        )
        assert login.status_code == 200

        # The token is spent
        response = client.post("/api/auth/reset-password", json={"token": token, "password": "Other#New3"})
        assert response.status_code == 400

    def test_unknown_email(self, client, outbox):
        response = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 404

    def test_same_password_rejected(self, client, outbox, make_user):
        make_user(email="forgot@example.com")
        client.post("/api/auth/forgot-password", json={"email": "forgot@example.com"})
        token = client.post(
            "/api/auth/verify-reset-otp",
            json={"email": "forgot@example.com", "otp": outbox.last_code()},
        ).json()["resetToken"]

        response = client.post("/api/auth/reset-password", json={"token": token, "password": "User#Pass1"})
        assert response.status_code == 400
        assert "different" in response.json()["detail"]

    def test_mismatched_confirmation(self, client, outbox):
        response = client.post(
            "/api/auth/reset-password",
            json={"token": "whatever", "password": "Brand#New2", "confirmPassword": "Brand#New3"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Passwords do not match"


class TestOTPStore:
    def test_expired_code(self, monkeypatch):
        clock = {"now": 1000.0}
        monkeypatch.setattr("smartscribe.core.otp_store.time.time", lambda: clock["now"])
        store = OTPStore(otp_ttl=60)
        code = store.issue_code("a@example.com")
        clock["now"] += 61
        with pytest.raises(ValidationError, match="expired"):
            store.verify_code("a@example.com", code)

    def test_codes_are_case_insensitive_by_email(self):
        store = OTPStore()
        code = store.issue_code("Mixed@Example.com")
        store.verify_code("mixed@example.com", code)
        assert store.is_verified("MIXED@example.com")


async def test_unconfigured_mailer_raises():
    with pytest.raises(ProviderError):
        await mailer.Mailer({"username": "u"}).send_signup_otp("a@example.com", "123456")
