"""
Scheduled SQLite backups for SmartScribe.

Provides:
- Snapshot of the live database with SQLite's backup() API
- Rotation of old snapshots (configurable max count)
- Backup configuration bookkeeping (recurring or one-time schedule)
- The due-check run by the periodic maintenance task

The backup() API is safe to use with WAL mode and concurrent connections.
"""

import asyncio
import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from smartscribe.core import backup_schedule
from smartscribe.core.errors import ValidationError
from smartscribe.database import database as db

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKUPS = 10


class DatabaseBackupManager:
    """Writes and rotates SQLite snapshot files."""

    def __init__(
        self,
        db_path: Path,
        backup_dir: Path,
        max_backups: int = DEFAULT_MAX_BACKUPS,
    ):
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups

    def _ensure_backup_dir(self) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        return self.backup_dir

    def get_all_backups(self) -> list[Path]:
        """Get all snapshot files sorted by modification time (newest first)."""
        return sorted(
            self._ensure_backup_dir().glob("backup-*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )

    def _rotate_backups(self) -> None:
        """Remove old snapshots, keeping only max_backups most recent."""
        for old_backup in self.get_all_backups()[self.max_backups :]:
            logger.info(f"Removing old backup: {old_backup.name}")
            try:
                old_backup.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {old_backup}: {e}")

    def create_backup(self, backup_id: str) -> Path:
        """
        Snapshot the database to ``<backup_dir>/<backup_id>.db``.

        Blocking; run it in an executor from async code.

        Raises:
            RuntimeError: If the database is missing or the copy failed
        """
        if not self.db_path.exists():
            raise RuntimeError(f"Database does not exist at {self.db_path}")

        backup_path = self._ensure_backup_dir() / f"{backup_id}.db"
        source_conn = None
        dest_conn = None

        try:
            logger.info(f"Starting backup of {self.db_path} to {backup_path}")
            source_conn = sqlite3.connect(
                f"file:{self.db_path}?mode=ro",
                uri=True,
                timeout=30.0,
            )
            dest_conn = sqlite3.connect(backup_path, timeout=30.0)
            source_conn.backup(dest_conn, pages=-1)
        except sqlite3.Error as e:
            if dest_conn:
                dest_conn.close()
                dest_conn = None
            backup_path.unlink(missing_ok=True)
            raise RuntimeError(f"Backup failed: {e}") from e
        finally:
            if source_conn:
                source_conn.close()
            if dest_conn:
                dest_conn.close()

        logger.info(f"Backup completed successfully: {backup_path}")
        self._rotate_backups()
        return backup_path

    def verify_backup(self, backup_path: Path) -> bool:
        """Run PRAGMA integrity_check on a snapshot."""
        if not backup_path.exists():
            return False

        try:
            conn = sqlite3.connect(backup_path, timeout=10.0)
            try:
                result = conn.execute("PRAGMA integrity_check").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to verify backup {backup_path}: {e}")
            return False

        is_valid = bool(result) and result[0] == "ok"
        if not is_valid:
            logger.warning(f"Backup integrity check failed: {result}")
        return is_valid


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``"1.5 MB"``."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class BackupService:
    """
    Backup configuration, execution and scheduling discipline.

    A single configuration row decides between a recurring schedule
    (auto backup enabled) and a one-time schedule. Every run appends a history
    entry; scheduled runs then move the schedule forward so a due window
    triggers exactly one backup.
    """

    def __init__(
        self,
        backup_dir: Optional[Path] = None,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        timezone_name: Optional[str] = None,
        verify: bool = True,
    ):
        self._backup_dir = backup_dir
        self._max_backups = max_backups
        self._tz = ZoneInfo(timezone_name) if timezone_name else None
        self._verify = verify
        self._lock = asyncio.Lock()
        self._last_id_ms = 0

    def now(self) -> datetime:
        """Current wall-clock time in the schedule's timezone."""
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()

    def _manager(self) -> DatabaseBackupManager:
        return DatabaseBackupManager(
            db_path=db.get_db_path(),
            backup_dir=self._backup_dir or db.get_backup_dir(),
            max_backups=self._max_backups,
        )

    def _new_backup_id(self) -> str:
        ms = max(int(time.time() * 1000), self._last_id_ms + 1)
        self._last_id_ms = ms
        return f"backup-{ms}"

    async def initialize(self) -> Dict[str, Any]:
        """Make sure an enabled recurring schedule has a next-due timestamp."""
        config = await asyncio.to_thread(db.get_backup_config)
        if config["auto_backup_enabled"] and not config["next_scheduled_backup"]:
            next_due = backup_schedule.next_from_config(config, self.now())
            config = await asyncio.to_thread(
                db.update_backup_config, next_scheduled_backup=db.to_iso(next_due)
            )
            logger.info(f"Next scheduled backup: {config['next_scheduled_backup']}")
        return config

    async def get_config(self) -> Dict[str, Any]:
        return await asyncio.to_thread(db.get_backup_config)

    async def update_config(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial configuration change and recompute the next-due time.

        Keys (all optional): auto_backup_enabled, backup_frequency, backup_time,
        backup_day, one_time_backup_enabled, one_time_scheduled_backup.
        """
        updates: Dict[str, Any] = {}

        if changes.get("auto_backup_enabled") is not None:
            updates["auto_backup_enabled"] = int(bool(changes["auto_backup_enabled"]))
        if changes.get("backup_frequency"):
            if changes["backup_frequency"] not in backup_schedule.FREQUENCIES:
                raise ValidationError("Backup frequency must be daily, weekly, or monthly")
            updates["backup_frequency"] = changes["backup_frequency"]
        if changes.get("backup_time"):
            try:
                backup_schedule.parse_backup_time(changes["backup_time"])
            except ValueError:
                raise ValidationError("Backup time must be in HH:MM format")
            updates["backup_time"] = changes["backup_time"]
        if changes.get("backup_day"):
            if changes["backup_day"] not in backup_schedule.WEEKDAYS:
                raise ValidationError("Backup day must be a day of the week")
            updates["backup_day"] = changes["backup_day"]
        if changes.get("one_time_backup_enabled") is not None:
            updates["one_time_backup_enabled"] = int(bool(changes["one_time_backup_enabled"]))
        if changes.get("one_time_scheduled_backup"):
            try:
                scheduled = db.parse_iso(str(changes["one_time_scheduled_backup"]))
            except ValueError:
                raise ValidationError("Invalid one-time backup date")
            updates["one_time_scheduled_backup"] = db.to_iso(scheduled)

        async with self._lock:
            current = await asyncio.to_thread(db.get_backup_config)
            merged = {**current, **updates}
            next_due = backup_schedule.next_from_config(merged, self.now())
            updates["next_scheduled_backup"] = db.to_iso(next_due)
            config = await asyncio.to_thread(db.update_backup_config, **updates)

        logger.info(
            f"Backup configuration updated (auto={bool(config['auto_backup_enabled'])}, "
            f"frequency={config['backup_frequency']}, next={config['next_scheduled_backup']})"
        )
        return config

    async def perform_backup(
        self,
        triggered_by: Optional[int] = None,
        backup_type: str = "manual",
        schedule_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run one backup and record it.

        Args:
            triggered_by: Admin user id for manual runs, None for scheduled ones
            backup_type: "manual" or "automatic"
            schedule_mode: "recurring" or "one_time" when the scheduler fired,
                None for an out-of-band manual run

        Returns:
            The history entry
        """
        async with self._lock:
            return await self._perform_backup_locked(triggered_by, backup_type, schedule_mode)

    async def _perform_backup_locked(
        self,
        triggered_by: Optional[int],
        backup_type: str,
        schedule_mode: Optional[str],
    ) -> Dict[str, Any]:
        backup_id = self._new_backup_id()
        started = self.now()
        manager = self._manager()

        entry: Dict[str, Any] = {
            "backup_id": backup_id,
            "backup_date": db.to_iso(started),
            "triggered_by": triggered_by,
            "backup_type": backup_type,
        }
        try:
            backup_path = await asyncio.to_thread(manager.create_backup, backup_id)
            if self._verify and not await asyncio.to_thread(manager.verify_backup, backup_path):
                raise RuntimeError("Backup integrity check failed")
            size_bytes = backup_path.stat().st_size
            entry.update(
                status="completed",
                backup_path=str(backup_path),
                size_bytes=size_bytes,
                backup_size=format_size(size_bytes),
            )
        except (RuntimeError, OSError) as e:
            logger.error(f"Backup {backup_id} failed: {e}")
            entry.update(status="failed", error=str(e), size_bytes=0, backup_size=None)

        config = await asyncio.to_thread(db.get_backup_config)
        config_updates: Dict[str, Any] = {}
        if entry["status"] == "completed":
            config_updates["last_backup_date"] = entry["backup_date"]

        if schedule_mode == "recurring":
            next_due = backup_schedule.next_from_config(config, self.now())
            config_updates["next_scheduled_backup"] = db.to_iso(next_due)
        elif schedule_mode == "one_time" or (
            not config["auto_backup_enabled"] and config["one_time_backup_enabled"]
        ):
            config_updates.update(
                one_time_backup_enabled=0,
                one_time_scheduled_backup=None,
                next_scheduled_backup=None,
            )

        recorded = await asyncio.to_thread(db.record_backup, entry, config_updates)
        logger.info(
            f"Backup {backup_id} {entry['status']} "
            f"(type={backup_type}, size={entry.get('backup_size')})"
        )
        return recorded

    async def check_and_run(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Run at most one backup if the active schedule is due.

        Returns:
            The history entry of the backup that ran, or None
        """
        async with self._lock:
            config = await asyncio.to_thread(db.get_backup_config)
            mode = backup_schedule.due_backup_mode(config, now or self.now())
            if mode is None:
                return None
            logger.info(f"Scheduled backup is due ({mode})")
            return await self._perform_backup_locked(None, "automatic", mode)

    async def history(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(db.list_backup_history)


_backup_service: Optional[BackupService] = None


def get_backup_service() -> BackupService:
    """Get or create the process-wide backup service."""
    global _backup_service
    if _backup_service is None:
        from smartscribe.config import get_config

        cfg = get_config()
        _backup_service = BackupService(
            max_backups=int(cfg.get("backup", "max_backups", default=DEFAULT_MAX_BACKUPS)),
            timezone_name=cfg.get("backup", "timezone"),
        )
    return _backup_service


def set_backup_service(service: Optional[BackupService]) -> None:
    global _backup_service
    _backup_service = service
