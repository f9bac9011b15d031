"""
Periodic maintenance task.

One cooperative loop, started from the application lifespan, that on every
wake runs the backup due-check, dispatches scheduled notifications and purges
expired records. Each step is isolated: a failure is logged and the next
step still runs.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from smartscribe.core import activity, notifications
from smartscribe.database import database as db
from smartscribe.database.backup import get_backup_service
from smartscribe.logging import get_logger

logger = get_logger("scheduler")

DEFAULT_INTERVAL_MINUTES = 30
LOGIN_ATTEMPT_RETENTION = timedelta(hours=24)


async def run_maintenance_tick(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run every periodic job once.

    Returns:
        What each step did; a failed step reports None
    """
    now = now or db.utc_now()
    results: Dict[str, Any] = {}

    try:
        backup = await get_backup_service().check_and_run()
        results["backup"] = backup["backup_id"] if backup else None
    except Exception as e:
        logger.error(f"Scheduled backup check failed: {e}", exc_info=True)
        results["backup"] = None

    try:
        results["notifications"] = await notifications.dispatch_due_notifications(now)
    except Exception as e:
        logger.error(f"Scheduled notification dispatch failed: {e}", exc_info=True)
        results["notifications"] = None

    try:
        results["login_attempts"] = await asyncio.to_thread(
            db.purge_login_attempts, db.to_iso(now - LOGIN_ATTEMPT_RETENTION)
        )
    except Exception as e:
        logger.error(f"Login attempt purge failed: {e}")
        results["login_attempts"] = None

    try:
        results["activities"] = await activity.purge_expired()
    except Exception as e:
        logger.error(f"Activity purge failed: {e}")
        results["activities"] = None

    try:
        results["admin_sessions"] = await asyncio.to_thread(
            db.deactivate_expired_admin_sessions, db.to_iso(now)
        )
    except Exception as e:
        logger.error(f"Admin session cleanup failed: {e}")
        results["admin_sessions"] = None

    logger.debug(f"Maintenance tick finished: {results}")
    return results


async def maintenance_loop(interval_minutes: float = DEFAULT_INTERVAL_MINUTES) -> None:
    """Run the maintenance tick forever; cancel the task to stop it."""
    interval = max(float(interval_minutes), 0.1) * 60
    logger.info(f"Maintenance loop started (every {interval_minutes} min)")
    while True:
        await run_maintenance_tick()
        await asyncio.sleep(interval)
