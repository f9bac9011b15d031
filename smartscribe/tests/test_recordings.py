"""
Tests for recording upload, ownership checks and idempotent transcription.
"""

import asyncio

import pytest

import smartscribe.database.database as db
from smartscribe.core import recording_manager, transcription_client
from smartscribe.core.errors import ValidationError
from smartscribe.core.recording_manager import (
    RecordingManager,
    format_duration,
    generate_recording_filename,
)
from smartscribe.core.transcription_client import TranscriptionClient

AUDIO = b"RIFF" + b"\x00" * 256


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _upload(client, token, name="meeting"):
    response = client.post(
        "/api/recordings/upload",
        headers=_bearer(token),
        files={"audio": ("meeting.m4a", AUDIO, "audio/mp4")},
        data={"name": name, "duration": "00:42"},
    )
    assert response.status_code == 201, response.text
    return response.json()["recording"]


def test_generated_filename_keeps_extension():
    name = generate_recording_filename("Voice Memo.WAV")
    assert name.startswith("recording-")
    assert name.endswith(".wav")
    assert generate_recording_filename(None).endswith(".m4a")
    assert generate_recording_filename("weird.???").endswith(".m4a")


def test_format_duration():
    assert format_duration(42.4) == "00:42"
    assert format_duration(605) == "10:05"
    assert format_duration(3725) == "1:02:05"


def test_upload_and_list(client, make_user):
    _, token = make_user()
    recording = _upload(client, token)
    assert recording["name"] == "meeting"
    assert recording["duration"] == "00:42"
    assert recording["hasTranscription"] is False
    assert (db.get_uploads_dir("recording") / recording["filename"]).read_bytes() == AUDIO

    response = client.get("/api/recordings/user", headers=_bearer(token))
    assert response.status_code == 200
    assert [r["_id"] for r in response.json()["recordings"]] == [recording["_id"]]


def test_upload_without_file(client, make_user):
    _, token = make_user()
    response = client.post("/api/recordings/upload", headers=_bearer(token), data={"name": "x"})
    assert response.status_code == 400
    assert response.json()["detail"] == "No file uploaded"


async def test_oversized_stream_stops_at_cap(database, make_user):
    user, _ = make_user()
    manager = RecordingManager(max_upload_bytes=4 * 1024)
    reads = {"count": 0}

    async def endless(size):
        reads["count"] += 1
        return b"\x01" * 1024

    with pytest.raises(ValidationError, match="too large"):
        await manager.upload_stream(user, endless, "huge.m4a")
    assert reads["count"] == 5
    assert list(db.get_uploads_dir("recording").iterdir()) == []


def test_oversized_upload_rejected(client, make_user):
    _, token = make_user()
    recording_manager.set_recording_manager(RecordingManager(max_upload_bytes=100))
    response = client.post(
        "/api/recordings/upload",
        headers=_bearer(token),
        files={"audio": ("clip.m4a", b"\x00" * 500, "audio/mp4")},
    )
    assert response.status_code == 400
    assert list(db.get_uploads_dir("recording").iterdir()) == []


def test_other_users_cannot_touch_recording(client, make_user):
    _, owner_token = make_user()
    _, other_token = make_user()
    recording = _upload(client, owner_token)

    response = client.get(f"/api/recordings/{recording['_id']}", headers=_bearer(other_token))
    assert response.status_code == 403
    response = client.delete(f"/api/recordings/{recording['_id']}", headers=_bearer(other_token))
    assert response.status_code == 403
    assert client.get("/api/recordings/user", headers=_bearer(other_token)).json()["recordings"] == []


def test_missing_recording(client, make_user):
    _, token = make_user()
    response = client.get("/api/recordings/9999", headers=_bearer(token))
    assert response.status_code == 404
    assert response.json()["detail"] == "Recording not found"


def test_delete_removes_file_and_rows(client, make_user, fake_providers):
    _, token = make_user()
    recording = _upload(client, token)
    client.post(f"/api/recordings/{recording['_id']}/transcribe", headers=_bearer(token))
    path = db.get_uploads_dir("recording") / recording["filename"]

    response = client.delete(f"/api/recordings/{recording['_id']}", headers=_bearer(token))
    assert response.status_code == 200
    assert not path.exists()
    assert db.get_recording(recording["_id"]) is None
    assert db.get_transcription_for_recording(recording["_id"]) is None


def test_delete_tolerates_missing_file(client, make_user):
    _, token = make_user()
    recording = _upload(client, token)
    (db.get_uploads_dir("recording") / recording["filename"]).unlink()

    response = client.delete(f"/api/recordings/{recording['_id']}", headers=_bearer(token))
    assert response.status_code == 200
    assert db.get_recording(recording["_id"]) is None


class TestIdempotentTranscription:
    def test_second_call_returns_existing(self, client, make_user, fake_providers):
        user, token = make_user()
        recording = _upload(client, token)
        url = f"/api/recordings/{recording['_id']}/transcribe"

        first = client.post(url, headers=_bearer(token))
        assert first.status_code == 200
        assert first.json()["created"] is True
        text = first.json()["transcription"]["text"]
        assert text.startswith("Speaker 1:")

        second = client.post(url, headers=_bearer(token))
        assert second.status_code == 200
        body = second.json()
        assert body["created"] is False
        assert body["message"] == "Transcription already exists"
        assert body["transcription"]["_id"] == first.json()["transcription"]["_id"]
        assert body["transcription"]["text"] == text

        assert fake_providers["calls"] == {"transcriptions": 1, "completions": 1}
        with db.get_connection() as conn:
            rows = conn.execute(
                "SELECT COUNT(*) FROM transcriptions WHERE recording_id = ?", (recording["_id"],)
            ).fetchone()[0]
        assert rows == 1
        assert db.get_user(user["id"])["transcription_count"] == 1

    def test_get_includes_transcription(self, client, make_user, fake_providers):
        _, token = make_user()
        recording = _upload(client, token)
        client.post(f"/api/recordings/{recording['_id']}/transcribe", headers=_bearer(token))

        body = client.get(f"/api/recordings/{recording['_id']}", headers=_bearer(token)).json()
        assert body["recording"]["hasTranscription"] is True
        assert body["transcription"]["recording"] == recording["_id"]

    async def test_concurrent_requests_store_one_row(self, database, make_user, fake_providers):
        user, _ = make_user()
        manager = RecordingManager()
        recording = await manager.upload(user, AUDIO, "clip.m4a")

        results = await asyncio.gather(
            manager.transcribe(user, recording["id"]),
            manager.transcribe(user, recording["id"]),
        )
        assert sorted(flag for _, flag in results) == [False, True]
        assert results[0][0]["id"] == results[1][0]["id"]
        assert db.get_user(user["id"])["transcription_count"] == 1

    def test_labeling_failure_keeps_raw_text(self, client, make_user, fake_providers):
        fake_providers["fail_labeling"] = True
        _, token = make_user()
        recording = _upload(client, token)

        response = client.post(f"/api/recordings/{recording['_id']}/transcribe", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["transcription"]["text"] == fake_providers["transcript"]

    def test_provider_unconfigured(self, client, make_user):
        transcription_client.set_transcription_client(
            TranscriptionClient(api_key=None, min_audio_bytes=16, transcode=False)
        )
        _, token = make_user()
        recording = _upload(client, token)
        response = client.post(f"/api/recordings/{recording['_id']}/transcribe", headers=_bearer(token))
        assert response.status_code == 502
        assert response.json()["code"] == "provider_error"
        assert db.get_transcription_for_recording(recording["_id"]) is None
