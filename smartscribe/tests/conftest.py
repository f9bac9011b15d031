"""
Shared fixtures: an isolated data directory and config per test, a migrated
database, fresh service singletons and a TestClient wired to fake providers.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

import smartscribe.config as config_module
import smartscribe.database.database as db
import smartscribe.logging.setup as logging_setup
from smartscribe.core import mailer, otp_store, realtime, recording_manager, security
from smartscribe.core import speaker_labeling, token_store, transcription_client
from smartscribe.core.accounts import ensure_admin
from smartscribe.core.security import SecurityGuard, hash_password
from smartscribe.core.speaker_labeling import SpeakerLabeler
from smartscribe.core.transcription_client import TranscriptionClient
from smartscribe.database import backup

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "Admin#Pass1"
USER_PASSWORD = "User#Pass1"


def _reset_singletons() -> None:
    token_store.set_token_store(None)
    otp_store.set_otp_store(None)
    security.set_security_guard(None)
    mailer.set_mailer(None)
    transcription_client.set_transcription_client(None)
    speaker_labeling.set_speaker_labeler(None)
    recording_manager.set_recording_manager(None)
    backup.set_backup_service(None)
    realtime.reset_event_hub()


@pytest.fixture
def test_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> config_module.ServerConfig:
    """A config file pointing every path at the test's tmp directory."""
    data_dir = tmp_path / "data"
    settings: Dict[str, Any] = {
        "server": {"allowed_origins": [], "public_base_url": "http://testserver"},
        "logging": {"directory": str(tmp_path / "logs"), "console_output": False},
        "storage": {"data_dir": str(data_dir)},
        "auth": {"jwt_secret": "test-secret", "user_token_days": 7, "admin_token_hours": 2},
        "providers": {"api_key": None},
        "backup": {"max_backups": 3},
        "scheduler": {"enabled": False},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(settings), encoding="utf-8")

    cfg = config_module.ServerConfig(path, use_env=False)
    monkeypatch.setattr(config_module, "_config", cfg)
    # Logging to files is irrelevant here
    monkeypatch.setattr(logging_setup, "_logging_configured", True)
    return cfg


@pytest.fixture
def database(test_config, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A freshly migrated database in the test's data directory."""
    monkeypatch.delenv("DATA_DIR", raising=False)
    monkeypatch.setattr(db, "_data_dir", None)
    monkeypatch.setattr(db, "_db_path", None)
    db.set_data_directory(Path(test_config.get("storage", "data_dir")))
    db.init_db()

    _reset_singletons()
    yield db.get_db_path()
    _reset_singletons()


@pytest.fixture
def fake_providers(database) -> Dict[str, Any]:
    """
    Speech-to-text and labeling clients backed by httpx.MockTransport.

    ``calls`` counts requests per endpoint; ``labels`` controls the labeler reply.
    """
    state: Dict[str, Any] = {
        "calls": {"transcriptions": 0, "completions": 0},
        "transcript": "hello there general kenobi",
        "labels": "Speaker 1: hello there\nSpeaker 2: general kenobi",
        "fail_labeling": False,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/audio/transcriptions"):
            state["calls"]["transcriptions"] += 1
            return httpx.Response(200, json={"text": state["transcript"]})
        if request.url.path.endswith("/chat/completions"):
            state["calls"]["completions"] += 1
            if state["fail_labeling"]:
                raise httpx.ConnectError("labeling provider unreachable")
            return httpx.Response(
                200, json={"choices": [{"message": {"content": state["labels"]}}]}
            )
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    transcription_client.set_transcription_client(
        TranscriptionClient(
            api_key="test-key",
            base_url="https://stt.test/v1",
            min_audio_bytes=16,
            transcode=False,
            transport=transport,
        )
    )
    speaker_labeling.set_speaker_labeler(
        SpeakerLabeler(api_key="test-key", base_url="https://stt.test/v1", transport=transport)
    )
    return state


@pytest.fixture
def client(database, test_config) -> TestClient:
    from smartscribe.api.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def make_user(database) -> Callable[..., Tuple[Dict[str, Any], str]]:
    """Create a regular user and return ``(user, bearer token)``."""
    counter = {"n": 0}

    def _make(
        role: str = "student",
        email: Optional[str] = None,
        name: Optional[str] = None,
        password: str = USER_PASSWORD,
    ) -> Tuple[Dict[str, Any], str]:
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user = db.create_user(name or f"User {counter['n']}", email, hash_password(password), role)
        token, _ = token_store.get_token_store().issue_token(user["id"])
        return user, token

    return _make


@pytest.fixture
def admin_user(database) -> Dict[str, Any]:
    return ensure_admin(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def admin_token(client, admin_user) -> str:
    response = client.post(
        "/api/auth/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


@pytest.fixture
def relaxed_guard(database) -> SecurityGuard:
    """A guard whose per-IP quotas never get in the way of lockout tests."""
    guard = SecurityGuard(admin_login_max=1000, api_max=1000)
    security.set_security_guard(guard)
    return guard


@pytest.fixture
def admin_credentials() -> Dict[str, str]:
    return {"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
