"""
Activity log endpoints.

Users log and read their own actions; the analytics queries are admin-only.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from smartscribe.api.routes.utils import (
    AuthContext,
    get_client_ip,
    get_current_user,
    get_user_agent,
    require_admin,
)
from smartscribe.core import activity
from smartscribe.core.errors import ForbiddenError
from smartscribe.database import database as db

logger = logging.getLogger(__name__)

router = APIRouter()


class LogActivityRequest(BaseModel):
    action: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _time_range(days_back: int) -> Dict[str, Any]:
    now = db.utc_now()
    return {
        "days": days_back,
        "from": db.to_iso(now - timedelta(days=days_back)),
        "to": db.to_iso(now),
    }


@router.post("/log", status_code=201)
async def log_activity(
    request: Request, body: LogActivityRequest, auth: AuthContext = Depends(get_current_user)
) -> Dict[str, Any]:
    row = await activity.record_action(
        auth.user,
        body.action,
        body.description,
        body.metadata,
        get_client_ip(request),
        get_user_agent(request),
    )
    return {"message": "Activity logged successfully", "activity": activity.serialize_activity(row)}


@router.get("/user/{user_id}")
async def user_activities(
    user_id: int,
    limit: int = Query(50),
    skip: int = Query(0),
    auth: AuthContext = Depends(get_current_user),
) -> Dict[str, Any]:
    """A user's own activity; admins may read anyone's."""
    if user_id != auth.user_id and not auth.is_admin:
        raise ForbiddenError("Unauthorized")
    return await activity.query_logs(user_id=user_id, limit=limit, skip=skip)


@router.get("/logs")
async def activity_logs(
    user_id: Optional[int] = Query(None, alias="userId"),
    user_email: Optional[str] = Query(None, alias="userEmail"),
    email: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    limit: int = Query(50),
    skip: int = Query(0),
    auth: AuthContext = Depends(require_admin),
) -> Dict[str, Any]:
    return await activity.query_logs(
        user_id=user_id,
        user_email=user_email or email,
        action=action,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        skip=skip,
    )


@router.get("/stats")
async def activity_stats(
    days_back: int = Query(30, alias="daysBack"), auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    return {"timeRange": _time_range(days_back), "stats": await activity.action_stats(days_back)}


@router.get("/top-users")
async def top_users(
    limit: int = Query(5),
    days_back: int = Query(30, alias="daysBack"),
    auth: AuthContext = Depends(require_admin),
) -> Dict[str, Any]:
    return {
        "topUsers": await activity.top_users(days_back, limit),
        "timeRange": _time_range(days_back),
    }


@router.get("/usage")
async def daily_usage(
    days_back: int = Query(7, alias="daysBack"), auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    return {"timeRange": _time_range(days_back), "usage": await activity.daily_usage(days_back)}


@router.get("/summary")
async def activity_summary(
    days_back: int = Query(30, alias="daysBack"), auth: AuthContext = Depends(require_admin)
) -> Dict[str, Any]:
    result = await activity.summary(days_back)
    result["timeRange"] = _time_range(days_back)
    return {"summary": result}
