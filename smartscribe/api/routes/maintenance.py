"""
Maintenance mode, APK distribution, backup and system information endpoints.

Public:
- GET  /check-maintenance
- GET  /latest-apk-public
- GET  /public-apk-history

Everything else requires an admin session.
"""

import asyncio
import json
import logging
import secrets
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from smartscribe.api.routes.utils import AuthContext, require_admin, sanitize_for_log
from smartscribe.core import realtime
from smartscribe.core.errors import NotFoundError, ValidationError
from smartscribe.database import database as db
from smartscribe.database.backup import get_backup_service

logger = logging.getLogger(__name__)

router = APIRouter()

APK_EXTENSIONS = {".apk", ".ipa"}
APK_CONTENT_TYPES = {"application/vnd.android.package-archive", "application/octet-stream"}
MAX_APK_BYTES = 500 * 1024 * 1024
CHUNK_SIZE = 1024 * 1024


class ToggleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    maintenance_mode: bool = Field(alias="maintenanceMode")
    maintenance_message: Optional[str] = Field(default=None, alias="maintenanceMessage")


class BackupConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auto_backup_enabled: Optional[bool] = Field(default=None, alias="autoBackupEnabled")
    backup_frequency: Optional[str] = Field(default=None, alias="backupFrequency")
    backup_time: Optional[str] = Field(default=None, alias="backupTime")
    backup_day: Optional[str] = Field(default=None, alias="backupDay")
    one_time_backup_enabled: Optional[bool] = Field(default=None, alias="oneTimeBackupEnabled")
    one_time_scheduled_backup: Optional[str] = Field(
        default=None, alias="oneTimeScheduledBackup"
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _uploader(row: Dict[str, Any], prefix: str, id_key: str) -> Optional[Dict[str, Any]]:
    if row.get(id_key) is None:
        return None
    return {"_id": row[id_key], "name": row.get(f"{prefix}_name"), "email": row.get(f"{prefix}_email")}


def serialize_apk(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": row["id"],
        "version": row["version"],
        "releaseDate": row["release_date"],
        "features": row["features"] or [],
        "improvements": row["improvements"] or [],
        "bugFixes": row["bug_fixes"] or [],
        "filePath": row["file_path"],
        "fileName": row["file_name"],
        "fileSize": row["file_size"],
        "uploadedAt": row["uploaded_at"],
        "uploadedBy": _uploader(row, "uploader", "uploaded_by"),
    }


def serialize_backup_config(config: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "autoBackupEnabled": bool(config["auto_backup_enabled"]),
        "backupFrequency": config["backup_frequency"],
        "backupTime": config["backup_time"],
        "backupDay": config["backup_day"],
        "oneTimeBackupEnabled": bool(config["one_time_backup_enabled"]),
        "oneTimeScheduledBackup": config["one_time_scheduled_backup"],
    }


def serialize_backup(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": entry["id"],
        "backupId": entry["backup_id"],
        "backupDate": entry["backup_date"],
        "backupSize": entry["backup_size"],
        "status": entry["status"],
        "backupType": entry["backup_type"],
        "error": entry.get("error"),
        "triggeredBy": _uploader(entry, "triggered_by", "triggered_by"),
    }


def effective_next_backup(config: Dict[str, Any]) -> Optional[str]:
    """Next backup of whichever schedule is active."""
    if config["auto_backup_enabled"]:
        return config["next_scheduled_backup"]
    if config["one_time_backup_enabled"]:
        return config["one_time_scheduled_backup"]
    return None


def update_type(apk: Dict[str, Any]) -> str:
    if apk["improvements"]:
        return "Minor"
    if apk["bug_fixes"]:
        return "Patch"
    return "No changes"


def _parse_string_list(raw: Optional[str], field: str) -> List[str]:
    """Release notes arrive as JSON-encoded arrays inside multipart fields."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError(f"{field} must be a JSON array")
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a JSON array")
    return [str(item) for item in value if str(item).strip()]


def _apk_path(file_path: Optional[str]) -> Optional[Path]:
    prefix = "/uploads/apk/"
    if not file_path or not file_path.startswith(prefix):
        return None
    name = Path(file_path[len(prefix):]).name
    return db.get_uploads_dir("apk") / name if name else None


async def _remove_file(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        await asyncio.to_thread(path.unlink)
    except FileNotFoundError:
        logger.warning(f"APK file already removed: {path.name}")


# ---------------------------------------------------------------------------
# Maintenance mode
# ---------------------------------------------------------------------------


@router.get("/check-maintenance")
async def check_maintenance() -> Dict[str, Any]:
    state = await asyncio.to_thread(db.get_maintenance)
    return {
        "maintenanceMode": bool(state["maintenance_mode"]),
        "maintenanceMessage": state["maintenance_message"],
    }


@router.post("/toggle-mode")
async def toggle_mode(body: ToggleRequest, auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"maintenance_mode": int(body.maintenance_mode)}
    if body.maintenance_message:
        fields["maintenance_message"] = body.maintenance_message
    state = await asyncio.to_thread(db.update_maintenance, **fields)

    enabled = bool(state["maintenance_mode"])
    await realtime.get_event_hub().broadcast(
        realtime.MAINTENANCE_MODE_CHANGED,
        {"maintenanceMode": enabled, "maintenanceMessage": state["maintenance_message"]},
    )
    logger.info(f"Maintenance mode {'enabled' if enabled else 'disabled'} by admin {auth.user_id}")
    return {
        "success": True,
        "message": f"Maintenance mode {'activated' if enabled else 'deactivated'}",
        "data": {"maintenanceMessage": state["maintenance_message"]},
    }


# ---------------------------------------------------------------------------
# APK versions
# ---------------------------------------------------------------------------


@router.post("/upload-apk", status_code=201)
async def upload_apk(
    apk: Optional[UploadFile] = File(None),
    version: Optional[str] = Form(None),
    features: Optional[str] = Form(None),
    improvements: Optional[str] = Form(None),
    bug_fixes: Optional[str] = Form(None, alias="bugFixes"),
    auth: AuthContext = Depends(require_admin),
) -> Dict[str, Any]:
    """Store an app build (multipart field ``apk``) and publish it as the latest version."""
    if apk is None:
        raise ValidationError("No file uploaded")

    ext = Path(apk.filename or "").suffix.lower()
    if ext not in APK_EXTENSIONS and apk.content_type not in APK_CONTENT_TYPES:
        raise ValidationError("Only APK or IPA files are allowed")

    filename = f"app-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext or '.apk'}"
    target = db.get_uploads_dir("apk") / filename

    size = 0
    try:
        async with aiofiles.open(target, "wb") as f:
            while chunk := await apk.read(CHUNK_SIZE):
                size += len(chunk)
                if size > MAX_APK_BYTES:
                    raise ValidationError("File too large. Maximum size is 500 MB")
                await f.write(chunk)

        if not version or not version.strip():
            raise ValidationError("Version is required")

        row = await asyncio.to_thread(
            db.insert_apk_version,
            version.strip(),
            _parse_string_list(features, "features"),
            _parse_string_list(improvements, "improvements"),
            _parse_string_list(bug_fixes, "bugFixes"),
            f"/uploads/apk/{filename}",
            apk.filename or filename,
            size,
            auth.user_id,
        )
    except Exception:
        await _remove_file(target)
        raise

    logger.info(
        f"APK {sanitize_for_log(row['version'])} uploaded by admin {auth.user_id} ({size} bytes)"
    )
    await realtime.get_event_hub().broadcast(realtime.APK_LIST_UPDATED)

    state = await asyncio.to_thread(db.get_maintenance)
    return {
        "success": True,
        "message": "APK uploaded successfully",
        "data": {
            "apk": serialize_apk(row),
            "lastUpdateDate": state["last_update_date"],
            "systemVersion": state["system_version"],
        },
    }


@router.get("/apk-versions")
async def apk_versions(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    versions = await asyncio.to_thread(db.list_apk_versions)
    return {
        "success": True,
        "data": [serialize_apk(v) for v in versions],
        "totalVersions": len(versions),
    }


async def _latest_apk() -> Dict[str, Any]:
    versions = await asyncio.to_thread(db.list_apk_versions)
    if not versions:
        return {"success": True, "data": None, "message": "No APK versions available"}
    return {"success": True, "data": serialize_apk(versions[0])}


@router.get("/latest-apk")
async def latest_apk(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    return await _latest_apk()


@router.get("/latest-apk-public")
async def latest_apk_public() -> Dict[str, Any]:
    return await _latest_apk()


@router.get("/public-apk-history")
async def public_apk_history() -> Dict[str, Any]:
    versions = await asyncio.to_thread(db.list_apk_versions)
    return {
        "success": True,
        "data": [
            {
                "version": v["version"],
                "features": v["features"] or [],
                "improvements": v["improvements"] or [],
                "bugFixes": v["bug_fixes"] or [],
                "uploadedAt": v["uploaded_at"],
                "releaseDate": v["release_date"],
                "filePath": v["file_path"],
            }
            for v in versions
        ],
    }


@router.delete("/delete-apk/{version_id}")
async def delete_apk(version_id: int, auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    apk = await asyncio.to_thread(db.get_apk_version, version_id)
    if apk is None:
        raise NotFoundError("APK version not found")

    await _remove_file(_apk_path(apk["file_path"]))
    await asyncio.to_thread(db.delete_apk_version, version_id)
    await realtime.get_event_hub().broadcast(realtime.APK_LIST_UPDATED)
    logger.info(f"APK version {version_id} deleted by admin {auth.user_id}")
    return {"success": True, "message": "APK version deleted successfully"}


@router.get("/update-history")
async def update_history(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    versions = await asyncio.to_thread(db.list_apk_versions)
    versions.sort(key=lambda v: v["release_date"] or "", reverse=True)
    history = [
        {
            "id": v["id"],
            "version": v["version"],
            "date": v["release_date"],
            "description": f"Version {v['version']} released",
            "improvements": v["improvements"] or [],
            "type": update_type(v),
            "features": v["features"] or [],
            "bugFixes": v["bug_fixes"] or [],
        }
        for v in versions
    ]
    return {"success": True, "data": history, "totalUpdates": len(history)}


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


@router.post("/update-backup-config")
async def update_backup_config(
    body: BackupConfigRequest, auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    config = await get_backup_service().update_config(body.model_dump())
    return {
        "success": True,
        "message": "Backup configuration updated",
        "data": {
            "backupConfig": serialize_backup_config(config),
            "nextScheduledBackup": config["next_scheduled_backup"],
        },
    }


@router.get("/backup-config")
async def backup_config(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    config = await get_backup_service().get_config()
    return {
        "success": True,
        "data": {
            "backupConfig": serialize_backup_config(config),
            "nextScheduledBackup": config["next_scheduled_backup"],
            "lastBackupDate": config["last_backup_date"],
        },
    }


@router.post("/trigger-backup")
async def trigger_backup(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    service = get_backup_service()
    entry = await service.perform_backup(triggered_by=auth.user_id, backup_type="manual")
    config = await service.get_config()
    return {
        "success": True,
        "message": "Backup triggered successfully",
        "data": {
            "backup": serialize_backup(entry),
            "nextScheduledBackup": config["next_scheduled_backup"],
        },
    }


@router.get("/backup-history")
async def backup_history(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    history = await get_backup_service().history()
    return {
        "success": True,
        "data": [serialize_backup(entry) for entry in history],
        "totalBackups": len(history),
    }


# ---------------------------------------------------------------------------
# System information
# ---------------------------------------------------------------------------


@router.get("/system-info")
async def system_info(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    state = await asyncio.to_thread(db.get_maintenance)
    config = await get_backup_service().get_config()
    return {
        "success": True,
        "data": {
            "version": state["system_version"],
            "lastUpdate": state["last_update_date"],
            "uptime": state["system_uptime"],
            "serverLoad": state["server_load"],
            "database": state["database_label"],
            "maintenanceMode": bool(state["maintenance_mode"]),
            "lastBackupDate": config["last_backup_date"],
            "nextScheduledBackup": effective_next_backup(config),
            "backupConfig": serialize_backup_config(config),
        },
    }
