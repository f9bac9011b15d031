"""
Notification creation and fan-out.

A notification resolves its audience once, at creation, and stores that
recipient count as a snapshot. Delivery to each recipient is two independent
steps: a live push to the user's room (lost when they are offline) and a
durable delivery row (the source of truth, safe to insert twice).
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from smartscribe.core import realtime
from smartscribe.core.errors import NotFoundError, ValidationError
from smartscribe.database import database as db
from smartscribe.logging import get_logger

logger = get_logger("notifications")

TYPES = ("info", "success", "warning", "alert")
AUDIENCES = ("all", "students", "teachers", "user")

TITLE_MAX_LENGTH = 200
MESSAGE_MAX_LENGTH = 1000


def normalize_type(value: Optional[str]) -> str:
    if not value:
        return "info"
    normalized = str(value).strip().lower()
    if normalized == "error":
        return "alert"
    if normalized not in TYPES:
        raise ValidationError("Invalid notification type")
    return normalized


def normalize_audience(value: Optional[str]) -> str:
    if not value:
        return "all"
    normalized = str(value).strip().lower()
    if normalized not in AUDIENCES:
        raise ValidationError("Invalid audience")
    return normalized


def audience_label(audience: str, target_email: Optional[str] = None) -> str:
    if audience == "students":
        return "Students Only"
    if audience == "teachers":
        return "Teachers Only"
    if audience == "user":
        return f"User: {target_email}" if target_email else "Specific User"
    return "All Users"


def _parse_user_ids(
    target_user_id: Any = None, target_user_ids: Optional[Iterable[Any]] = None
) -> List[int]:
    raw: List[Any] = list(target_user_ids or [])
    if target_user_id not in (None, ""):
        raw.append(target_user_id)
    ids: List[int] = []
    for value in raw:
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return sorted(set(ids))


async def resolve_recipients(
    audience: str,
    target_user_id: Any = None,
    target_user_ids: Optional[Iterable[Any]] = None,
) -> List[int]:
    """
    Concrete recipient IDs for an audience selector.

    For ``user`` the given IDs are intersected with non-admin users. Invalid
    IDs drop out silently unless none survive.

    Raises:
        ValidationError: If ``user`` is selected without any target
        NotFoundError: If none of the targets is a non-admin user
    """
    audience = normalize_audience(audience)
    if audience != "user":
        return await asyncio.to_thread(db.resolve_audience, audience)

    requested = _parse_user_ids(target_user_id, target_user_ids)
    if not requested and target_user_id in (None, "") and not target_user_ids:
        raise ValidationError("targetUserId is required")
    recipients = await asyncio.to_thread(db.resolve_audience, "user", requested)
    if not recipients:
        raise NotFoundError("User not found")
    return recipients


async def recipient_count(
    audience: Optional[str],
    target_user_id: Any = None,
    target_user_ids: Optional[Iterable[Any]] = None,
) -> int:
    return len(await resolve_recipients(normalize_audience(audience), target_user_id, target_user_ids))


async def _target_email(audience: str, recipients: List[int]) -> Optional[str]:
    if audience != "user" or len(recipients) != 1:
        return None
    emails = await asyncio.to_thread(db.get_emails_for_users, recipients)
    return emails.get(recipients[0])


def _event_payload(notification: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": notification["id"],
        "title": notification["title"],
        "message": notification["message"],
        "type": notification["type"],
        "tag": notification.get("tag"),
        "sentAt": notification.get("sent_at"),
        "isRead": False,
    }


async def deliver(notification: Dict[str, Any], recipients: Iterable[int]) -> Dict[str, int]:
    """
    Push a sent notification to each recipient and store their delivery rows.

    A failure on one recipient, or on one of the two steps, never stops the
    rest. Re-running is harmless: existing delivery rows are left as they are.

    Returns:
        Counts of live pushes, new rows and already-present rows
    """
    hub = realtime.get_event_hub()
    payload = _event_payload(notification)
    stats = {"pushed": 0, "stored": 0, "existing": 0}

    for user_id in recipients:
        try:
            if await hub.emit_to_user(user_id, realtime.NEW_NOTIFICATION, payload):
                stats["pushed"] += 1
        except Exception as e:
            logger.warning(f"Live push of notification {notification['id']} to user {user_id} failed: {e}")

        try:
            created = await asyncio.to_thread(
                db.insert_user_notification, user_id, notification["id"]
            )
            stats["stored" if created else "existing"] += 1
        except Exception as e:
            logger.error(
                f"Storing notification {notification['id']} for user {user_id} failed: {e}"
            )

    logger.info(
        f"Notification {notification['id']} delivered: {stats['pushed']} live, "
        f"{stats['stored']} stored, {stats['existing']} already present"
    )
    return stats


async def create_notification(
    title: Optional[str],
    message: Optional[str],
    type_: Optional[str] = None,
    audience: Optional[str] = None,
    target_user_id: Any = None,
    target_user_ids: Optional[Iterable[Any]] = None,
    scheduled_at: Optional[str] = None,
    created_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Validate, persist and (unless scheduled for later) deliver a notification.

    Returns:
        The API view of the created notification
    """
    title = str(title).strip() if title is not None else ""
    message = str(message).strip() if message is not None else ""
    if not title or not message:
        raise ValidationError("Title and message are required")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters")
    if len(message) > MESSAGE_MAX_LENGTH:
        raise ValidationError(f"Message must be at most {MESSAGE_MAX_LENGTH} characters")

    normalized_type = normalize_type(type_)
    normalized_audience = normalize_audience(audience)
    recipients = await resolve_recipients(normalized_audience, target_user_id, target_user_ids)

    scheduled_date = None
    if scheduled_at:
        try:
            scheduled_date = db.parse_iso(str(scheduled_at))
        except ValueError:
            raise ValidationError("Invalid scheduled date")

    now = now or db.utc_now()
    is_scheduled = scheduled_date is not None and scheduled_date > now

    notification = await asyncio.to_thread(
        db.insert_notification,
        title,
        message,
        normalized_type,
        normalized_audience,
        recipients if normalized_audience == "user" else [],
        len(recipients),
        db.to_iso(scheduled_date) if is_scheduled else None,
        None if is_scheduled else db.to_iso(now),
        "scheduled" if is_scheduled else "sent",
        created_by,
    )
    logger.info(
        f"Notification {notification['id']} created for audience '{normalized_audience}' "
        f"({len(recipients)} recipients, status={notification['status']})"
    )

    if not is_scheduled:
        await deliver(notification, recipients)

    target_email = await _target_email(normalized_audience, recipients)
    return {
        "id": notification["id"],
        "title": notification["title"],
        "message": notification["message"],
        "type": notification["type"],
        "audience": notification["audience"],
        "audienceLabel": audience_label(notification["audience"], target_email),
        "sentDate": notification["sent_at"],
        "scheduledAt": notification["scheduled_at"],
        "status": notification["status"],
        "recipientCount": notification["recipient_count"],
    }


async def dispatch_due_notifications(now: Optional[datetime] = None) -> int:
    """
    Send every scheduled notification whose time has come.

    Each one is claimed (scheduled -> sent) before delivery, so concurrent
    dispatchers never deliver the same notification twice. The audience is
    resolved again at send time; the stored recipient count is not touched.

    Returns:
        Number of notifications dispatched
    """
    sent_at = db.to_iso(now or db.utc_now())
    due = await asyncio.to_thread(db.list_due_notifications, sent_at)
    dispatched = 0
    for notification in due:
        claimed = await asyncio.to_thread(
            db.claim_scheduled_notification, notification["id"], sent_at
        )
        if not claimed:
            continue
        notification = {**notification, "status": "sent", "sent_at": sent_at}
        recipients = await asyncio.to_thread(
            db.resolve_audience,
            notification["audience"],
            notification.get("target_user_ids") or [],
        )
        try:
            await deliver(notification, recipients)
        except Exception as e:
            logger.error(f"Dispatch of notification {notification['id']} failed: {e}")
            continue
        dispatched += 1
    if dispatched:
        logger.info(f"Dispatched {dispatched} scheduled notification(s)")
    return dispatched


async def list_for_admin() -> List[Dict[str, Any]]:
    rows = await asyncio.to_thread(db.list_notifications)
    payload = []
    for row in rows:
        target_email = None
        targets = row.get("target_user_ids") or []
        if row["audience"] == "user" and len(targets) == 1:
            emails = await asyncio.to_thread(db.get_emails_for_users, targets)
            target_email = emails.get(targets[0])
        payload.append(
            {
                "id": row["id"],
                "title": row["title"],
                "message": row["message"],
                "type": row["type"],
                "audience": row["audience"],
                "audienceLabel": audience_label(row["audience"], target_email),
                "sentBy": row.get("sender_name") or row.get("sender_email") or "Admin",
                "sentDate": row["sent_at"] or row["scheduled_at"] or row["created_at"],
                "scheduledAt": row["scheduled_at"],
                "status": row["status"],
                "recipientCount": row["recipient_count"],
            }
        )
    return payload


async def list_for_user(user_id: int) -> Dict[str, Any]:
    rows = await asyncio.to_thread(db.list_user_notifications, user_id)
    notifications = [
        {
            "id": row["id"],
            "title": row["title"],
            "message": row["message"],
            "type": row["type"],
            "tag": row["tag"],
            "isRead": bool(row["is_read"]),
            "sentAt": row["sent_at"] or row["created_at"],
            "receivedAt": row["delivered_at"],
        }
        for row in rows
    ]
    unread = sum(1 for n in notifications if not n["isRead"])
    return {"notifications": notifications, "unreadCount": unread}


async def mark_read(user_id: int, notification_id: int) -> None:
    if not await asyncio.to_thread(db.mark_user_notification_read, user_id, notification_id):
        raise NotFoundError("Notification not found")


async def delete_for_user(user_id: int, notification_id: int) -> None:
    if not await asyncio.to_thread(db.delete_user_notification, user_id, notification_id):
        raise NotFoundError("Notification not found")
