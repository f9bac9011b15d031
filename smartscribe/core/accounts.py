"""
User accounts: signup, credentials, profile and admin account management.
"""

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

from smartscribe.core import realtime
from smartscribe.core.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from smartscribe.core.recording_manager import get_recording_manager
from smartscribe.core.security import enforce_password_policy, hash_password, verify_password
from smartscribe.database import database as db
from smartscribe.logging import get_logger

logger = get_logger("accounts")

ROLES = ("student", "teacher", "other")
DISABLED_MESSAGE = "Your account has been disabled. Please contact support."


def normalize_role(role: Optional[str]) -> str:
    if not role:
        return "other"
    normalized = str(role).strip().lower()
    if normalized not in ROLES:
        raise ValidationError("Role must be teacher, student, or other")
    return normalized


async def get_user_or_404(user_id: int) -> Dict[str, Any]:
    user = await asyncio.to_thread(db.get_user, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def create_account(
    name: Optional[str], email: str, password: str, role: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a regular user.

    Raises:
        ValidationError: Unknown role or weak password
        ConflictError: Email already registered
    """
    normalized_role = normalize_role(role)
    enforce_password_policy(password)

    if await asyncio.to_thread(db.get_user_by_email, email) is not None:
        raise ConflictError("User already exists")

    password_hash = await asyncio.to_thread(hash_password, password)
    try:
        user = await asyncio.to_thread(
            db.create_user, (name or "").strip() or None, email, password_hash, normalized_role
        )
    except sqlite3.IntegrityError:
        raise ConflictError("User already exists")

    logger.info(f"User {user['id']} signed up (role={normalized_role})")
    hub = realtime.get_event_hub()
    await hub.broadcast(realtime.USER_LIST_UPDATED)
    await hub.broadcast(realtime.ANALYTICS_UPDATE, {"reason": "user_signup"})
    return user


async def authenticate(email: Optional[str], password: Optional[str]) -> Optional[Dict[str, Any]]:
    """The user whose credentials these are, or None."""
    if not email or not password:
        return None
    user = await asyncio.to_thread(db.get_user_by_email, email)
    if user is None:
        return None
    if not await asyncio.to_thread(verify_password, password, user["password_hash"]):
        return None
    return user


async def change_password(
    user_id: int,
    current_password: Optional[str],
    new_password: Optional[str],
    confirm_password: Optional[str],
) -> None:
    """
    Raises:
        ValidationError: Missing fields, mismatch or weak new password
        AuthError: Current password is wrong
    """
    if not current_password or not new_password or not confirm_password:
        raise ValidationError("Old password, new password, and confirmation are required")
    if new_password != confirm_password:
        raise ValidationError("New password and confirmation do not match")
    enforce_password_policy(new_password)

    user = await get_user_or_404(user_id)
    if not await asyncio.to_thread(verify_password, current_password, user["password_hash"]):
        raise AuthError("Old password is incorrect")

    password_hash = await asyncio.to_thread(hash_password, new_password)
    await asyncio.to_thread(db.update_user, user_id, password_hash=password_hash)
    logger.info(f"Password changed for user {user_id}")


async def reset_password(email: str, new_password: Optional[str]) -> Dict[str, Any]:
    """
    Set a new password for a reset flow. The new password must differ from
    the current one.
    """
    enforce_password_policy(new_password)
    user = await asyncio.to_thread(db.get_user_by_email, email)
    if user is None:
        raise NotFoundError("User not found")
    if await asyncio.to_thread(verify_password, new_password, user["password_hash"]):
        raise ValidationError("New password must be different from the current password")

    password_hash = await asyncio.to_thread(hash_password, new_password)  # type: ignore[arg-type]
    updated = await asyncio.to_thread(db.update_user, user["id"], password_hash=password_hash)
    logger.info(f"Password reset for user {user['id']}")
    return updated  # type: ignore[return-value]


async def update_profile(
    user_id: int, name: Optional[str] = None, role: Optional[str] = None, image: Optional[str] = None
) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            raise ValidationError("Name cannot be empty")
        fields["name"] = name.strip()
    if role is not None:
        fields["role"] = normalize_role(role)
    if image is not None:
        fields["image"] = image or None
    await get_user_or_404(user_id)
    return await asyncio.to_thread(db.update_user, user_id, **fields)  # type: ignore[return-value]


def _profile_image_path(image_url: Optional[str]) -> Optional[Path]:
    prefix = "/uploads/profiles/"
    if not image_url or not image_url.startswith(prefix):
        return None
    name = Path(image_url[len(prefix):]).name
    return db.get_uploads_dir("profiles") / name if name else None


async def remove_profile_image_file(image_url: Optional[str]) -> None:
    """Delete a stored profile image; a file that is already gone is fine."""
    path = _profile_image_path(image_url)
    if path is None:
        return
    try:
        await asyncio.to_thread(path.unlink)
    except FileNotFoundError:
        logger.warning(f"Profile image already removed: {path.name}")


async def set_active(user_id: int, is_active: bool) -> Dict[str, Any]:
    """Enable or disable a regular account and tell everyone who cares."""
    user = await get_user_or_404(user_id)
    if user["is_admin"]:
        raise ForbiddenError("Admin accounts cannot be disabled")
    updated = await asyncio.to_thread(db.update_user, user_id, is_active=int(is_active))

    hub = realtime.get_event_hub()
    await hub.emit_to_user(
        user_id,
        realtime.ACCOUNT_STATUS_CHANGED,
        {
            "isActive": is_active,
            "message": None if is_active else DISABLED_MESSAGE,
        },
    )
    await hub.broadcast(realtime.USER_LIST_UPDATED)
    logger.info(f"User {user_id} {'enabled' if is_active else 'disabled'}")
    return updated  # type: ignore[return-value]


async def delete_account(user_id: int) -> None:
    """Delete a regular user with their files; rows cascade in the database."""
    user = await get_user_or_404(user_id)
    if user["is_admin"]:
        raise ForbiddenError("Cannot delete admin users")

    await get_recording_manager().delete_files_for_user(user_id)
    await remove_profile_image_file(user.get("image"))
    await asyncio.to_thread(db.delete_user, user_id)

    await realtime.get_event_hub().broadcast(realtime.USER_LIST_UPDATED)
    logger.info(f"User {user_id} deleted")


def ensure_admin(email: str, password: str, name: str = "Admin") -> Dict[str, Any]:
    """
    Create the admin account, or return it if it already exists.

    Blocking; meant for the command line bootstrap.
    """
    existing = db.get_user_by_email(email)
    if existing is not None:
        if not existing["is_admin"]:
            raise ConflictError(f"{email} already belongs to a regular user")
        logger.info(f"Admin {email} already exists")
        return existing

    enforce_password_policy(password)
    user = db.create_user(name, email, hash_password(password), "other", is_admin=True)
    logger.info(f"Admin account created for {email}")
    return user
