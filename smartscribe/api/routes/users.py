"""
User profile and admin user management endpoints.
"""

import asyncio
import logging
import secrets
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from fastapi import APIRouter, Depends, File, Request, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from smartscribe.api.routes.utils import (
    AuthContext,
    format_role,
    get_client_ip,
    get_current_user,
    get_user_agent,
    require_admin,
    serialize_user,
)
from smartscribe.core import accounts, activity
from smartscribe.core.errors import ValidationError
from smartscribe.database import database as db

logger = logging.getLogger(__name__)

router = APIRouter()

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_password: Optional[str] = Field(default=None, alias="oldPassword")
    new_password: Optional[str] = Field(default=None, alias="newPassword")
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")


@router.get("/profile")
async def get_profile(auth: AuthContext = Depends(get_current_user)) -> Dict[str, Any]:
    return {"success": True, "user": serialize_user(auth.user)}


@router.put("/profile")
async def update_profile(
    request: Request, body: ProfileUpdate, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    user = await accounts.update_profile(auth.user_id, name=body.name, role=body.role)
    await activity.log_user_activity(
        user,
        "Profile Updated",
        "Profile details updated.",
        {"fields": [k for k, v in body.model_dump().items() if v is not None]},
        get_client_ip(request),
        get_user_agent(request),
    )
    return {"success": True, "message": "Profile updated successfully", "user": serialize_user(user)}


@router.post("/change-password")
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    auth: AuthContext = Depends(get_current_user),
) -> Dict[str, Any]:
    await accounts.change_password(
        auth.user_id, body.old_password, body.new_password, body.confirm_password
    )
    await activity.log_user_activity(
        auth.user, "Password Changed", None, {}, get_client_ip(request), get_user_agent(request)
    )
    return {"success": True, "message": "Password changed successfully"}


@router.post("/profile/image")
async def upload_profile_image(
    image: UploadFile = File(...),
    auth: AuthContext = Depends(get_current_user),
) -> Dict[str, Any]:
    """Store a new profile image and delete the one it replaces."""
    ext = Path(image.filename or "").suffix.lower()
    if ext not in IMAGE_EXTENSIONS and not (image.content_type or "").startswith("image/"):
        raise ValidationError("Only image files are allowed")
    if ext not in IMAGE_EXTENSIONS:
        ext = ".jpg"

    content = await image.read()
    if not content:
        raise ValidationError("No file uploaded")
    if len(content) > MAX_IMAGE_BYTES:
        raise ValidationError("Image must be 5 MB or smaller")

    filename = f"profile-{auth.user_id}-{int(time.time() * 1000)}-{secrets.token_hex(4)}{ext}"
    async with aiofiles.open(db.get_uploads_dir("profiles") / filename, "wb") as f:
        await f.write(content)

    previous = auth.user.get("image")
    user = await accounts.update_profile(auth.user_id, image=f"/uploads/profiles/{filename}")
    await accounts.remove_profile_image_file(previous)
    logger.info(f"Profile image updated for user {auth.user_id}")
    return {"success": True, "image": user["image"], "user": serialize_user(user)}


@router.delete("/profile/image")
async def remove_profile_image(auth: AuthContext = Depends(get_current_user)) -> Dict[str, Any]:
    previous = auth.user.get("image")
    user = await accounts.update_profile(auth.user_id, image="")
    await accounts.remove_profile_image_file(previous)
    return {"success": True, "message": "Profile image removed", "user": serialize_user(user)}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/")
async def list_users(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    users = await asyncio.to_thread(db.list_users, False)
    return {
        "users": [
            {
                "id": user["id"],
                "name": user["name"] or "Unknown",
                "email": user["email"],
                "role": format_role(user["role"]),
                "joinDate": (user["created_at"] or "")[:10] or None,
                "transcriptions": user["transcription_count"] or 0,
                "isActive": bool(user["is_active"]),
            }
            for user in users
        ]
    }


@router.put("/{user_id}/disable")
async def disable_user(user_id: int, auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    user = await accounts.set_active(user_id, False)
    return {"success": True, "message": "User disabled", "user": serialize_user(user)}


@router.put("/{user_id}/enable")
async def enable_user(user_id: int, auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    user = await accounts.set_active(user_id, True)
    return {"success": True, "message": "User enabled", "user": serialize_user(user)}


@router.delete("/{user_id}")
async def delete_user(user_id: int, auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    await accounts.delete_account(user_id)
    return {"message": "User deleted"}
