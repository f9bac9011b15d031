"""
Authentication API endpoints for SmartScribe.

Handles:
- Email verification (OTP) and signup
- User login/logout
- Password reset by OTP or link
- Admin login, logout, verify, refresh and profile
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from smartscribe.api.routes.utils import (
    AuthContext,
    get_client_ip,
    get_current_user,
    get_user_agent,
    limit_api,
    require_admin,
    sanitize_for_log,
)
from smartscribe.config import get_config
from smartscribe.core import accounts, activity
from smartscribe.core.errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from smartscribe.core.mailer import get_mailer
from smartscribe.core.otp_store import get_otp_store
from smartscribe.core.security import get_security_guard
from smartscribe.core.token_store import get_token_store
from smartscribe.database import database as db

logger = logging.getLogger(__name__)

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EmailRequest(CamelModel):
    email: EmailStr


class OTPRequest(CamelModel):
    email: EmailStr
    otp: str


class SignupRequest(CamelModel):
    name: Optional[str] = None
    email: EmailStr
    password: str
    role: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class ResetPasswordRequest(CamelModel):
    token: str
    password: str
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")


class ChangePasswordRequest(CamelModel):
    old_password: Optional[str] = Field(default=None, alias="oldPassword")
    new_password: Optional[str] = Field(default=None, alias="newPassword")
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")


class AdminProfileUpdate(CamelModel):
    name: Optional[str] = None
    image: Optional[str] = None


# ---------------------------------------------------------------------------
# Email verification and signup
# ---------------------------------------------------------------------------


@router.post("/send-otp", dependencies=[Depends(limit_api)])
async def send_otp(body: EmailRequest) -> Dict[str, Any]:
    """Email a signup verification code."""
    if await asyncio.to_thread(db.get_user_by_email, body.email) is not None:
        raise ConflictError("User already exists")

    code = get_otp_store().issue_code(body.email)
    await get_mailer().send_signup_otp(body.email, code)
    logger.info(f"Signup OTP sent to {sanitize_for_log(body.email)}")
    return {"success": True, "message": "OTP sent to your email"}


@router.post("/verify-otp", dependencies=[Depends(limit_api)])
async def verify_otp(body: OTPRequest) -> Dict[str, Any]:
    get_otp_store().verify_code(body.email, body.otp)
    return {"success": True, "verified": True, "message": "Email verified successfully"}


@router.post("/signup", status_code=201, dependencies=[Depends(limit_api)])
async def signup(body: SignupRequest) -> Dict[str, Any]:
    otp_store = get_otp_store()
    if not otp_store.is_verified(body.email):
        raise ValidationError("Please verify your email before signing up")

    user = await accounts.create_account(body.name, body.email, body.password, body.role)
    otp_store.consume_verified(body.email)

    token, _ = get_token_store().issue_token(user["id"], is_admin=False)
    return {
        "_id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"].capitalize(),
        "token": token,
    }


# ---------------------------------------------------------------------------
# User login
# ---------------------------------------------------------------------------


@router.post("/login", dependencies=[Depends(limit_api)])
async def login(request: Request, body: LoginRequest) -> Dict[str, Any]:
    ip_address = get_client_ip(request)
    user_agent = get_user_agent(request)
    guard = get_security_guard()

    user = await accounts.authenticate(body.email, body.password)
    if user is None:
        await guard.record_login_attempt(body.email, ip_address, user_agent, False, "user")
        raise AuthError("Invalid email or password")
    if not user["is_active"]:
        await guard.record_login_attempt(body.email, ip_address, user_agent, False, "user")
        raise ForbiddenError(accounts.DISABLED_MESSAGE)

    await guard.record_login_attempt(body.email, ip_address, user_agent, True, "user")
    await activity.log_user_activity(user, "Login", None, {}, ip_address, user_agent)

    token, _ = get_token_store().issue_token(user["id"], is_admin=False)
    return {
        "_id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "isAdmin": bool(user["is_admin"]),
        "token": token,
    }


@router.post("/logout")
async def logout(request: Request, auth: AuthContext = Depends(get_current_user)) -> Dict[str, Any]:
    await activity.log_user_activity(
        auth.user, "Logout", None, {}, get_client_ip(request), get_user_agent(request)
    )
    return {"message": "Logged out successfully"}


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/forgot-password", dependencies=[Depends(limit_api)])
async def forgot_password(body: EmailRequest) -> Dict[str, Any]:
    """Email a reset code plus a reset link for an existing account."""
    user = await asyncio.to_thread(db.get_user_by_email, body.email)
    if user is None:
        raise NotFoundError("No account found with this email")

    code, token = get_otp_store().issue_reset(body.email)
    base_url = get_config().get("server", "public_base_url")
    reset_link = f"{base_url.rstrip('/')}/reset-password?token={token}" if base_url else None
    await get_mailer().send_password_reset(body.email, code, reset_link)
    logger.info(f"Password reset requested for user {user['id']}")
    return {"success": True, "message": "Password reset code sent to your email"}


@router.post("/verify-reset-otp", dependencies=[Depends(limit_api)])
async def verify_reset_otp(body: OTPRequest) -> Dict[str, Any]:
    token = get_otp_store().verify_reset_code(body.email, body.otp)
    return {"success": True, "resetToken": token, "message": "OTP verified"}


@router.post("/reset-password", dependencies=[Depends(limit_api)])
async def reset_password(body: ResetPasswordRequest) -> Dict[str, Any]:
    if body.confirm_password is not None and body.password != body.confirm_password:
        raise ValidationError("Passwords do not match")

    otp_store = get_otp_store()
    email = otp_store.resolve_reset_token(body.token)
    await accounts.reset_password(email, body.password)
    otp_store.consume_reset_token(body.token)
    return {"success": True, "message": "Password reset successfully"}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.post("/admin/login")
async def admin_login(request: Request, body: LoginRequest) -> Dict[str, Any]:
    """
    Admin login.

    Order matters: the IP+email quota is charged first, then the account
    lockout is checked, then the credentials.
    """
    ip_address = get_client_ip(request)
    user_agent = get_user_agent(request)
    guard = get_security_guard()

    guard.limit_admin_login(ip_address, body.email)
    await guard.check_account_lockout(body.email, "admin")

    admin = await accounts.authenticate(body.email, body.password)
    if admin is None or not admin["is_admin"] or not admin["is_active"]:
        await guard.record_login_attempt(body.email, ip_address, user_agent, False, "admin")
        logger.warning(
            f"Failed admin login attempt for {sanitize_for_log(body.email)} from IP: {ip_address}"
        )
        raise AuthError("Admin credentials invalid")

    token, expires_at = await get_token_store().create_admin_session(
        admin["id"], ip_address, user_agent
    )
    await guard.record_login_attempt(body.email, ip_address, user_agent, True, "admin")
    logger.info(f"Admin {admin['id']} logged in from IP: {ip_address}")

    return {
        "_id": admin["id"],
        "email": admin["email"],
        "name": admin["name"],
        "token": token,
        "expiresAt": db.to_iso(expires_at),
    }


@router.post("/admin/logout")
async def admin_logout(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    await get_token_store().revoke_admin_session(auth.claims.token, auth.user_id)
    return {"message": "Admin logged out successfully"}


@router.get("/admin/verify")
async def verify_admin(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    expires_at = await get_token_store().get_session_expiry(auth.claims.token)
    return {
        "valid": True,
        "admin": {
            "_id": auth.user_id,
            "email": auth.user["email"],
            "name": auth.user["name"],
            "isAdmin": True,
        },
        "sessionExpiresAt": expires_at,
    }


@router.post("/admin/refresh")
async def refresh_admin_token(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    token, expires_at = await get_token_store().refresh_admin_session(
        auth.claims.token, auth.user_id
    )
    return {
        "token": token,
        "expiresAt": db.to_iso(expires_at),
        "message": "Token refreshed successfully",
    }


def _admin_view(admin: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": admin["id"],
        "name": admin["name"],
        "email": admin["email"],
        "image": admin.get("image"),
        "isAdmin": bool(admin["is_admin"]),
    }


@router.get("/admin/profile")
async def get_admin_profile(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    return {"success": True, "admin": _admin_view(auth.user)}


@router.put("/admin/profile")
async def update_admin_profile(
    body: AdminProfileUpdate, auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    admin = await accounts.update_profile(
        auth.user_id, name=body.name or None, image=body.image or None
    )
    return {
        "success": True,
        "message": "Profile updated successfully",
        "admin": _admin_view(admin),
    }


@router.post("/admin/change-password")
async def change_admin_password(
    body: ChangePasswordRequest, auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    await accounts.change_password(
        auth.user_id, body.old_password, body.new_password, body.confirm_password
    )
    return {"success": True, "message": "Password changed successfully"}
