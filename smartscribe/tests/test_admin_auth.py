"""
Tests for admin sessions and endpoint authorization.

Admin endpoints must require an admin session token and reject regular users.
"""

from datetime import timedelta

import pytest

import smartscribe.database.database as db
from smartscribe.core.errors import AuthError
from smartscribe.core.token_store import TokenStore, hash_token


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _admin_login(client, credentials):
    response = client.post("/api/auth/admin/login", json=credentials)
    assert response.status_code == 200, response.text
    return response.json()["token"]


def test_only_latest_admin_session_validates(client, admin_user, admin_credentials, relaxed_guard):
    tokens = [_admin_login(client, admin_credentials) for _ in range(3)]
    assert len(set(tokens)) == 3

    response = client.get("/api/auth/admin/verify", headers=_bearer(tokens[-1]))
    assert response.status_code == 200
    assert response.json()["valid"] is True

    for old in tokens[:-1]:
        response = client.get("/api/auth/admin/verify", headers=_bearer(old))
        assert response.status_code == 401
        assert "Session expired or invalid" in response.json()["detail"]

    with db.get_connection() as conn:
        active = conn.execute(
            "SELECT COUNT(*) FROM admin_sessions WHERE admin_id = ? AND is_active = 1",
            (admin_user["id"],),
        ).fetchone()[0]
    assert active == 1


def test_admin_logout_revokes_session(client, admin_token):
    assert client.post("/api/auth/admin/logout", headers=_bearer(admin_token)).status_code == 200
    assert client.get("/api/auth/admin/verify", headers=_bearer(admin_token)).status_code == 401


def test_admin_refresh_rotates_token(client, admin_token):
    response = client.post("/api/auth/admin/refresh", headers=_bearer(admin_token))
    assert response.status_code == 200
    new_token = response.json()["token"]
    assert new_token != admin_token

    assert client.get("/api/auth/admin/verify", headers=_bearer(admin_token)).status_code == 401
    assert client.get("/api/auth/admin/verify", headers=_bearer(new_token)).status_code == 200


def test_session_stores_token_hash_only(client, admin_user, admin_token):
    with db.get_connection() as conn:
        stored = conn.execute(
            "SELECT token FROM admin_sessions WHERE admin_id = ? AND is_active = 1",
            (admin_user["id"],),
        ).fetchone()[0]
    assert stored == hash_token(admin_token)
    assert stored != admin_token


def test_admin_endpoints_reject_regular_users(client, make_user):
    _, user_token = make_user()
    for method, path in [
        ("get", "/api/users/"),
        ("get", "/api/notifications/"),
        ("get", "/api/maintenance/system-info"),
        ("get", "/api/activity/logs"),
    ]:
        response = getattr(client, method)(path, headers=_bearer(user_token))
        assert response.status_code == 403, path
        assert "admin" in response.json()["detail"].lower()


def test_admin_endpoints_without_auth(client):
    response = client.get("/api/users/")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"


def test_admin_user_token_without_session_rejected(client, admin_user):
    """A plain (non-session) token for an admin account cannot reach admin routes."""
    token, _ = TokenStore(secret="test-secret").issue_token(admin_user["id"], is_admin=False)
    response = client.get("/api/users/", headers=_bearer(token))
    assert response.status_code == 403


def test_wrong_credentials(client, admin_user, admin_credentials):
    response = client.post(
        "/api/auth/admin/login",
        json={"email": admin_credentials["email"], "password": "Nope#1234"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Admin credentials invalid"


def test_regular_user_cannot_use_admin_login(client, make_user):
    make_user(email="student@example.com")
    response = client.post(
        "/api/auth/admin/login",
        json={"email": "student@example.com", "password": "User#Pass1"},
    )
    assert response.status_code == 401


class TestTokenStore:
    def test_expired_token_rejected(self):
        store = TokenStore(secret="s", user_token_days=-1)
        token, _ = store.issue_token(1)
        with pytest.raises(AuthError):
            store.decode_token(token)

    def test_forged_token_rejected(self):
        token, _ = TokenStore(secret="one").issue_token(1)
        with pytest.raises(AuthError):
            TokenStore(secret="two").decode_token(token)

    def test_missing_token(self):
        with pytest.raises(AuthError, match="no token"):
            TokenStore(secret="s").decode_token(None)

    def test_claims(self):
        store = TokenStore(secret="s")
        token, expires_at = store.issue_token(42, is_admin=True)
        claims = store.decode_token(token)
        assert claims.user_id == 42
        assert claims.is_admin is True
        assert abs(claims.expires_at - expires_at) < timedelta(seconds=1)

    async def test_expired_session_rejected(self, database, admin_user):
        store = TokenStore(secret="s")
        token, _ = await store.create_admin_session(admin_user["id"], None, None)
        with db.get_connection() as conn:
            conn.execute(
                "UPDATE admin_sessions SET expires_at = ?",
                (db.to_iso(db.utc_now() - timedelta(minutes=1)),),
            )
            conn.commit()
        with pytest.raises(AuthError):
            await store.validate_admin_session(store.decode_token(token))
