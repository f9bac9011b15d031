"""
Tests for backup scheduling and the backup service.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import smartscribe.database.database as db
from smartscribe.core.backup_schedule import (
    due_backup_mode,
    next_backup_date,
    next_from_config,
    parse_backup_time,
)
from smartscribe.core.errors import ValidationError
from smartscribe.database.backup import BackupService, DatabaseBackupManager, format_size

UTC = timezone.utc


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestNextBackupDate:
    def test_daily_after_slot_rolls_to_tomorrow(self):
        now = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)
        assert next_backup_date(now, "daily", "02:00") == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)

    def test_daily_before_slot_is_today(self):
        now = datetime(2026, 3, 10, 1, 0, tzinfo=UTC)
        assert next_backup_date(now, "daily", "02:00") == datetime(2026, 3, 10, 2, 0, tzinfo=UTC)

    def test_daily_exactly_at_slot_rolls(self):
        now = datetime(2026, 3, 10, 2, 0, tzinfo=UTC)
        assert next_backup_date(now, "daily", "02:00") == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)

    def test_weekly(self):
        # 2026-03-10 is a Tuesday
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        assert next_backup_date(now, "weekly", "02:00", "Sunday") == datetime(
            2026, 3, 15, 2, 0, tzinfo=UTC
        )
        assert next_backup_date(now, "weekly", "13:00", "Tuesday") == datetime(
            2026, 3, 10, 13, 0, tzinfo=UTC
        )
        assert next_backup_date(now, "weekly", "02:00", "Tuesday") == datetime(
            2026, 3, 17, 2, 0, tzinfo=UTC
        )

    def test_monthly_is_first_of_next_month(self):
        now = datetime(2026, 3, 1, 1, 0, tzinfo=UTC)
        assert next_backup_date(now, "monthly", "02:00") == datetime(2026, 4, 1, 2, 0, tzinfo=UTC)
        december = datetime(2026, 12, 20, 9, 0, tzinfo=UTC)
        assert next_backup_date(december, "monthly", "04:30") == datetime(
            2027, 1, 1, 4, 30, tzinfo=UTC
        )

    def test_invalid_input(self):
        now = datetime(2026, 3, 10, tzinfo=UTC)
        with pytest.raises(ValueError):
            next_backup_date(now, "hourly", "02:00")
        with pytest.raises(ValueError):
            next_backup_date(now, "weekly", "02:00", "Funday")
        with pytest.raises(ValueError):
            parse_backup_time("25:00")
        assert parse_backup_time("7:05") == (7, 5)


class TestScheduleSelection:
    NOW = datetime(2026, 3, 10, 3, 0, tzinfo=UTC)

    def test_recurring_wins_over_one_time(self):
        config = {
            "auto_backup_enabled": 1,
            "backup_frequency": "daily",
            "backup_time": "02:00",
            "one_time_backup_enabled": 1,
            "one_time_scheduled_backup": "2026-03-10T05:00:00+00:00",
        }
        assert next_from_config(config, self.NOW) == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)

    def test_one_time_when_recurring_disabled(self):
        config = {
            "auto_backup_enabled": 0,
            "one_time_backup_enabled": 1,
            "one_time_scheduled_backup": "2026-03-10T05:00:00Z",
        }
        assert next_from_config(config, self.NOW) == datetime(2026, 3, 10, 5, 0, tzinfo=UTC)
        assert due_backup_mode(config, self.NOW) is None
        assert due_backup_mode(config, self.NOW + timedelta(hours=2)) == "one_time"

    def test_nothing_scheduled(self):
        assert next_from_config({}, self.NOW) is None
        assert due_backup_mode({}, self.NOW) is None


def test_format_size():
    assert format_size(512) == "512 B"
    assert "MB" in format_size(5 * 1024 * 1024)


def test_manager_rotates_old_snapshots(database, tmp_path):
    manager = DatabaseBackupManager(database, tmp_path / "snapshots", max_backups=2)
    for i in range(4):
        manager.create_backup(f"backup-{i}")
    remaining = manager.get_all_backups()
    assert len(remaining) == 2
    assert manager.verify_backup(remaining[0])

    with sqlite3.connect(remaining[0]) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert "users" in tables


class TestBackupService:
    async def test_manual_backup_recorded(self, database, tmp_path):
        service = BackupService(backup_dir=tmp_path / "b")
        entry = await service.perform_backup(triggered_by=None)
        assert entry["status"] == "completed"
        assert entry["backup_type"] == "manual"
        assert entry["size_bytes"] > 0
        config = await service.get_config()
        assert config["last_backup_date"] == entry["backup_date"]
        assert len(await service.history()) == 1

    async def test_update_config_computes_next(self, database, tmp_path):
        service = BackupService(backup_dir=tmp_path / "b")
        config = await service.update_config(
            {"auto_backup_enabled": True, "backup_frequency": "weekly", "backup_day": "Friday"}
        )
        next_due = db.parse_iso(config["next_scheduled_backup"])
        assert next_due > db.utc_now()
        assert next_due.astimezone(service.now().tzinfo).weekday() == 4

        config = await service.update_config({"auto_backup_enabled": False})
        assert config["next_scheduled_backup"] is None

    @pytest.mark.parametrize(
        "changes, message",
        [
            ({"backup_frequency": "hourly"}, "daily, weekly, or monthly"),
            ({"backup_time": "2am"}, "HH:MM"),
            ({"backup_day": "Caturday"}, "day of the week"),
            ({"one_time_scheduled_backup": "not a date"}, "Invalid one-time backup date"),
        ],
    )
    async def test_update_config_validation(self, database, changes, message):
        with pytest.raises(ValidationError, match=message):
            await BackupService().update_config(changes)

    async def test_due_recurring_backup_runs_once(self, database, tmp_path):
        service = BackupService(backup_dir=tmp_path / "b")
        await service.update_config({"auto_backup_enabled": True, "backup_frequency": "daily"})
        db.update_backup_config(
            next_scheduled_backup=db.to_iso(db.utc_now() - timedelta(minutes=1))
        )

        entry = await service.check_and_run()
        assert entry is not None
        assert entry["backup_type"] == "automatic"
        config = await service.get_config()
        assert db.parse_iso(config["next_scheduled_backup"]) > db.utc_now()

        assert await service.check_and_run() is None
        assert len(await service.history()) == 1

    async def test_one_time_backup_clears_itself(self, database, tmp_path):
        service = BackupService(backup_dir=tmp_path / "b")
        await service.update_config(
            {
                "auto_backup_enabled": False,
                "one_time_backup_enabled": True,
                "one_time_scheduled_backup": db.to_iso(db.utc_now() - timedelta(minutes=5)),
            }
        )
        assert await service.check_and_run() is not None

        config = await service.get_config()
        assert not config["one_time_backup_enabled"]
        assert config["one_time_scheduled_backup"] is None
        assert await service.check_and_run() is None


class TestBackupRoutes:
    def test_config_trigger_and_history(self, client, admin_token):
        response = client.post(
            "/api/maintenance/update-backup-config",
            headers=_bearer(admin_token),
            json={"autoBackupEnabled": True, "backupFrequency": "daily", "backupTime": "02:00"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["backupConfig"]["autoBackupEnabled"] is True
        assert data["nextScheduledBackup"] is not None

        response = client.post("/api/maintenance/trigger-backup", headers=_bearer(admin_token))
        assert response.status_code == 200
        backup = response.json()["data"]["backup"]
        assert backup["status"] == "completed"
        assert backup["triggeredBy"] is not None

        history = client.get("/api/maintenance/backup-history", headers=_bearer(admin_token)).json()
        assert history["totalBackups"] == 1
        assert history["data"][0]["triggeredBy"]["email"] == "admin@example.com"

        config = client.get("/api/maintenance/backup-config", headers=_bearer(admin_token)).json()
        assert config["data"]["lastBackupDate"] == backup["backupDate"]

    def test_invalid_frequency_rejected(self, client, admin_token):
        response = client.post(
            "/api/maintenance/update-backup-config",
            headers=_bearer(admin_token),
            json={"backupFrequency": "yearly"},
        )
        assert response.status_code == 400
