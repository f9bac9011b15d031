"""
Notification endpoints: admin create/list/recipients/dispatch, user inbox.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from smartscribe.api.routes.utils import AuthContext, get_current_user, require_admin
from smartscribe.core import notifications

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateNotificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    message: Optional[str] = None
    type: Optional[str] = None
    audience: Optional[str] = None
    target_user_id: Optional[Union[int, str]] = Field(default=None, alias="targetUserId")
    target_user_ids: Optional[List[Union[int, str]]] = Field(default=None, alias="targetUserIds")
    scheduled_at: Optional[str] = Field(default=None, alias="scheduledAt")


# User routes are declared first so "/user/list" never matches "/{notification_id}"


@router.get("/user/list")
async def list_user_notifications(auth: AuthContext = Depends(get_current_user)) -> Dict[str, Any]:
    return await notifications.list_for_user(auth.user_id)


@router.put("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    await notifications.mark_read(auth.user_id, notification_id)
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    await notifications.delete_for_user(auth.user_id, notification_id)
    return {"success": True, "message": "Notification deleted"}


@router.get("/")
async def list_notifications(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    return {"notifications": await notifications.list_for_admin()}


@router.get("/recipients")
async def recipient_count(
    audience: Optional[str] = Query(None),
    target_user_id: Optional[str] = Query(None, alias="targetUserId"),
    auth: AuthContext = Depends(require_admin),
) -> Dict[str, Any]:
    count = await notifications.recipient_count(audience, target_user_id)
    return {"count": count}


@router.post("/", status_code=201)
async def create_notification(
    body: CreateNotificationRequest, auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    return await notifications.create_notification(
        body.title,
        body.message,
        type_=body.type,
        audience=body.audience,
        target_user_id=body.target_user_id,
        target_user_ids=body.target_user_ids,
        scheduled_at=body.scheduled_at,
        created_by=auth.user_id,
    )


@router.post("/dispatch")
async def dispatch_scheduled(auth: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    """Send every scheduled notification that is due now."""
    dispatched = await notifications.dispatch_due_notifications()
    return {"success": True, "dispatched": dispatched}
