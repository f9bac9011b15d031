"""
Tests for maintenance mode, APK distribution and system information.
"""

import json

import smartscribe.database.database as db

APK_BYTES = b"PK\x03\x04" + b"\x00" * 128


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _upload_apk(client, token, version="1.1.0", **notes):
    data = {"version": version}
    for key, values in notes.items():
        data[key] = json.dumps(values)
    return client.post(
        "/api/maintenance/upload-apk",
        headers=_bearer(token),
        files={"apk": ("smartscribe.apk", APK_BYTES, "application/vnd.android.package-archive")},
        data=data,
    )


def test_toggle_and_check(client, admin_token):
    assert client.get("/api/maintenance/check-maintenance").json()["maintenanceMode"] is False

    response = client.post(
        "/api/maintenance/toggle-mode",
        headers=_bearer(admin_token),
        json={"maintenanceMode": True, "maintenanceMessage": "Back at noon"},
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Maintenance mode activated"

    state = client.get("/api/maintenance/check-maintenance").json()
    assert state == {"maintenanceMode": True, "maintenanceMessage": "Back at noon"}

    client.post(
        "/api/maintenance/toggle-mode", headers=_bearer(admin_token), json={"maintenanceMode": False}
    )
    state = client.get("/api/maintenance/check-maintenance").json()
    assert state["maintenanceMode"] is False
    assert state["maintenanceMessage"] == "Back at noon"


def test_toggle_requires_admin(client, make_user):
    _, token = make_user()
    response = client.post(
        "/api/maintenance/toggle-mode", headers=_bearer(token), json={"maintenanceMode": True}
    )
    assert response.status_code == 403


class TestApkVersions:
    def test_upload_and_list(self, client, admin_token):
        response = _upload_apk(
            client, admin_token, "2.0.0", features=["Offline mode"], bugFixes=["Crash on start"]
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        apk = data["apk"]
        assert apk["version"] == "2.0.0"
        assert apk["features"] == ["Offline mode"]
        assert apk["bugFixes"] == ["Crash on start"]
        assert apk["fileSize"] == len(APK_BYTES)
        assert apk["filePath"].startswith("/uploads/apk/app-")
        assert data["systemVersion"] == "2.0.0"

        stored = db.get_uploads_dir("apk") / apk["filePath"].rsplit("/", 1)[1]
        assert stored.read_bytes() == APK_BYTES

        listed = client.get("/api/maintenance/apk-versions", headers=_bearer(admin_token)).json()
        assert listed["totalVersions"] == 1

        public = client.get("/api/maintenance/latest-apk-public").json()
        assert public["data"]["version"] == "2.0.0"
        history = client.get("/api/maintenance/public-apk-history").json()
        assert [v["version"] for v in history["data"]] == ["2.0.0"]

    def test_latest_when_empty(self, client):
        body = client.get("/api/maintenance/latest-apk-public").json()
        assert body["data"] is None
        assert body["message"] == "No APK versions available"

    def test_rejects_other_files(self, client, admin_token):
        response = client.post(
            "/api/maintenance/upload-apk",
            headers=_bearer(admin_token),
            files={"apk": ("notes.txt", b"hello", "text/plain")},
            data={"version": "1.0.1"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Only APK or IPA files are allowed"

    def test_missing_version_removes_file(self, client, admin_token):
        response = _upload_apk(client, admin_token, version="  ")
        assert response.status_code == 400
        assert response.json()["detail"] == "Version is required"
        assert list(db.get_uploads_dir("apk").iterdir()) == []

    def test_malformed_notes(self, client, admin_token):
        response = client.post(
            "/api/maintenance/upload-apk",
            headers=_bearer(admin_token),
            files={"apk": ("smartscribe.apk", APK_BYTES, "application/octet-stream")},
            data={"version": "1.0.2", "features": "not json"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "features must be a JSON array"

    def test_delete(self, client, admin_token):
        apk = _upload_apk(client, admin_token).json()["data"]["apk"]
        stored = db.get_uploads_dir("apk") / apk["filePath"].rsplit("/", 1)[1]

        response = client.delete(f"/api/maintenance/delete-apk/{apk['_id']}", headers=_bearer(admin_token))
        assert response.status_code == 200
        assert not stored.exists()

        response = client.delete(f"/api/maintenance/delete-apk/{apk['_id']}", headers=_bearer(admin_token))
        assert response.status_code == 404
        assert response.json()["detail"] == "APK version not found"

    def test_update_history_types(self, client, admin_token):
        _upload_apk(client, admin_token, "1.0.0")
        _upload_apk(client, admin_token, "1.0.1", bugFixes=["Typo"])
        _upload_apk(client, admin_token, "1.1.0", improvements=["Faster upload"])

        body = client.get("/api/maintenance/update-history", headers=_bearer(admin_token)).json()
        assert body["totalUpdates"] == 3
        types = {entry["version"]: entry["type"] for entry in body["data"]}
        assert types == {"1.1.0": "Minor", "1.0.1": "Patch", "1.0.0": "No changes"}


def test_system_info(client, admin_token):
    _upload_apk(client, admin_token, "3.1.4")
    body = client.get("/api/maintenance/system-info", headers=_bearer(admin_token)).json()
    data = body["data"]
    assert data["version"] == "3.1.4"
    assert data["maintenanceMode"] is False
    assert data["lastBackupDate"] is None
    assert "backupConfig" in data
