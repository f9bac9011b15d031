"""
User activity audit log and the analytics built on it.

Writes are best-effort: a failed insert is logged and swallowed so that the
operation being audited always completes.
"""

import asyncio
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional

from smartscribe.core import realtime
from smartscribe.core.errors import ValidationError
from smartscribe.database import database as db
from smartscribe.logging import get_logger

logger = get_logger("activity")

ACTIONS = (
    "Login",
    "Logout",
    "Transcription Created",
    "Summary Generated",
    "Profile Updated",
    "Export PDF",
    "File Upload",
    "File Download",
    "Settings Changed",
    "Password Changed",
    "Account Deleted",
    "Recording Started",
    "Recording Completed",
    "Notification Viewed",
    "Share Document",
)

RETENTION_DAYS = 90


async def log_user_activity(
    user: Optional[Dict[str, Any]],
    action: str,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Append one audit entry. Never raises."""
    try:
        return await asyncio.to_thread(
            db.insert_activity,
            user["id"] if user else None,
            user.get("email") if user else None,
            user.get("name") if user else None,
            action,
            description,
            metadata or {},
            ip_address,
            user_agent,
        )
    except Exception as e:
        logger.error(f"Error logging activity '{action}': {e}")
        return None


async def record_action(
    user: Dict[str, Any],
    action: Optional[str],
    description: Optional[str],
    metadata: Optional[Dict[str, Any]],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> Dict[str, Any]:
    """Client-reported action; unlike internal logging it validates and raises."""
    if action not in ACTIONS:
        raise ValidationError("Invalid action type")
    return await asyncio.to_thread(
        db.insert_activity,
        user["id"],
        user.get("email"),
        user.get("name"),
        action,
        description,
        metadata or {},
        ip_address,
        user_agent,
    )


def _since(days_back: int) -> str:
    return db.to_iso(db.utc_now() - timedelta(days=max(days_back, 0)))  # type: ignore[return-value]


async def query_logs(
    user_id: Optional[int] = None,
    user_email: Optional[str] = None,
    action: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
) -> Dict[str, Any]:
    limit = min(max(int(limit), 1), 500)
    skip = max(int(skip), 0)
    try:
        start = db.to_iso(db.parse_iso(start_date)) if start_date else None
        end = db.to_iso(db.parse_iso(end_date)) if end_date else None
    except ValueError:
        raise ValidationError("Invalid date range")

    rows, total = await asyncio.to_thread(
        db.query_activities, user_id, user_email, action, start, end, limit, skip
    )
    return {
        "activities": [serialize_activity(row) for row in rows],
        "total": total,
        "limit": limit,
        "skip": skip,
        "pages": math.ceil(total / limit) if total else 0,
    }


async def action_stats(days_back: int = 30) -> List[Dict[str, Any]]:
    rows = await asyncio.to_thread(db.activity_counts_by_action, _since(days_back))
    return [{"action": row["action"], "count": row["count"]} for row in rows]


async def top_users(days_back: int = 30, limit: int = 10) -> List[Dict[str, Any]]:
    rows = await asyncio.to_thread(db.top_active_users, _since(days_back), limit)
    return [
        {
            "rank": rank,
            "userId": row["user_id"],
            "email": row["user_email"],
            "name": row["user_name"],
            "transcriptions": row["activity_count"],
        }
        for rank, row in enumerate(rows, start=1)
    ]


async def daily_usage(days_back: int = 7) -> List[Dict[str, Any]]:
    rows = await asyncio.to_thread(db.daily_activity_usage, _since(days_back))
    return [
        {"date": row["day"], "count": row["count"], "uniqueUsers": row["unique_users"]}
        for row in rows
    ]


async def summary(days_back: int = 30) -> Dict[str, Any]:
    since = _since(days_back)
    total, unique = await asyncio.to_thread(db.activity_totals, since)
    breakdown = await asyncio.to_thread(db.activity_counts_by_action, since)
    return {
        "totalActivities": total,
        "uniqueUsers": unique,
        "activityBreakdown": [
            {"action": row["action"], "count": row["count"]} for row in breakdown
        ],
        "daysBack": days_back,
    }


async def purge_expired() -> int:
    before = _since(RETENTION_DAYS)
    return await asyncio.to_thread(db.purge_activities, before)


async def notify_analytics_changed(reason: str) -> None:
    """Tell connected dashboards to refresh their charts."""
    await realtime.get_event_hub().broadcast(
        realtime.ANALYTICS_UPDATE, {"reason": reason}
    )


def serialize_activity(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": row["id"],
        "userId": row["user_id"],
        "userEmail": row["user_email"],
        "userName": row["user_name"],
        "action": row["action"],
        "description": row["description"],
        "metadata": row.get("metadata") or {},
        "ipAddress": row["ip_address"],
        "userAgent": row["user_agent"],
        "timestamp": row["created_at"],
    }
