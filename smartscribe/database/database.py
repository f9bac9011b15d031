"""
SQLite storage layer for SmartScribe.

Consolidated database layer. Handles:
- Users, recordings and their transcriptions
- Notifications and per-user delivery rows
- Admin sessions and login attempts
- User activity audit log
- Maintenance singleton, APK versions, backup configuration and history

All functions are synchronous and open one connection per call. Async callers
offload them with ``asyncio.to_thread``.

Timestamps are stored as ISO-8601 strings in UTC with a fixed format, so
string comparison in SQL matches chronological order.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Path to migrations directory
MIGRATIONS_DIR = Path(__file__).parent / "migrations"

UPLOAD_KINDS = ("recording", "profiles", "apk")

MAINTENANCE_DEFAULTS: Dict[str, Any] = {
    "maintenance_mode": 0,
    "maintenance_message": "System is under maintenance. Please try again later.",
    "system_version": "2.4.1",
    "database_label": "SQLITE",
    "system_uptime": "99.8%",
    "server_load": "34%",
}

_data_dir: Optional[Path] = None
_db_path: Optional[Path] = None


# =============================================================================
# Time helpers
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage. Naive values are taken as server local time."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored or client supplied ISO timestamp into an aware datetime."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def now_iso() -> str:
    return to_iso(utc_now())  # type: ignore[return-value]


# =============================================================================
# Paths and connections
# =============================================================================


def set_data_directory(path: Path) -> None:
    """Set the data directory for database, uploads and backups."""
    global _data_dir, _db_path
    _data_dir = Path(path)
    _db_path = _data_dir / "database" / "smartscribe.db"
    logger.info(f"Database data directory set to: {path}")


def set_database_path(path: Path) -> None:
    """Point the storage layer at an explicit database file."""
    global _db_path
    _db_path = Path(path)


def get_data_dir() -> Path:
    """Get the data directory, creating if needed."""
    global _data_dir
    if _data_dir is None:
        env_data_dir = os.environ.get("DATA_DIR")
        if env_data_dir:
            _data_dir = Path(env_data_dir)
        else:
            _data_dir = Path(__file__).parent.parent.parent / "data"

    _data_dir.mkdir(parents=True, exist_ok=True)
    return _data_dir


def get_db_path() -> Path:
    """Get database path, creating directories if needed."""
    global _db_path
    if _db_path is None:
        _db_path = get_data_dir() / "database" / "smartscribe.db"
    _db_path.parent.mkdir(parents=True, exist_ok=True)
    return _db_path


def get_uploads_dir(kind: Optional[str] = None) -> Path:
    """Get the uploads root, or one of its per-purpose subdirectories."""
    uploads = get_data_dir() / "uploads"
    if kind is not None:
        if kind not in UPLOAD_KINDS:
            raise ValueError(f"Unknown upload kind: {kind}")
        uploads = uploads / kind
    uploads.mkdir(parents=True, exist_ok=True)
    return uploads


def get_backup_dir() -> Path:
    backup_dir = get_data_dir() / "backups"
    backup_dir.mkdir(parents=True, exist_ok=True)
    return backup_dir


@contextmanager
def get_connection() -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection with context manager.

    Connection is configured for concurrent request handlers:
    - 30 second timeout waiting for locks
    - 5 second busy timeout for retry on SQLITE_BUSY
    - Multi-thread support enabled
    - Foreign keys enforced (cascades remove dependent rows)
    """
    conn = sqlite3.connect(
        get_db_path(),
        timeout=30.0,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
    finally:
        conn.close()


def run_migrations() -> bool:
    """
    Run pending Alembic migrations.

    Returns:
        True if migrations ran successfully, False otherwise
    """
    try:
        from alembic import command
        from alembic.config import Config

        db_path = get_db_path()
        logger.info(f"Running database migrations for {db_path}")

        alembic_cfg = Config()
        alembic_cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
        alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")

        command.upgrade(alembic_cfg, "head")

        logger.info("Database migrations completed successfully")
        return True

    except Exception as e:
        logger.error(f"Migration error: {e}", exc_info=True)
        return False


REQUIRED_SCHEMA: Dict[str, set[str]] = {
    "users": {"id", "email", "password_hash", "role", "transcription_count", "is_admin", "is_active"},
    "recordings": {"id", "user_id", "filename", "original_name", "name", "duration", "created_at"},
    "transcriptions": {"id", "user_id", "recording_id", "text", "created_at"},
    "notifications": {"id", "title", "message", "type", "audience", "recipient_count", "status"},
    "user_notifications": {"id", "user_id", "notification_id", "is_read"},
    "admin_sessions": {"id", "admin_id", "token", "expires_at", "is_active", "last_activity"},
    "login_attempts": {"id", "email", "success", "attempt_type", "created_at"},
    "user_activities": {"id", "user_id", "action", "metadata", "created_at"},
    "maintenance": {"id", "maintenance_mode", "maintenance_message", "system_version"},
    "apk_versions": {"id", "version", "file_path", "file_name", "uploaded_at"},
    "backup_config": {"id", "auto_backup_enabled", "backup_frequency", "backup_time", "backup_day"},
    "backup_history": {"id", "backup_id", "backup_date", "status", "backup_type"},
}


def _assert_schema_sanity(conn: sqlite3.Connection) -> None:
    """
    Validate that required tables/columns exist after migrations.

    Raises RuntimeError if the database schema is not compatible.
    """
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row[0] for row in cursor.fetchall()}

    missing_tables = [name for name in REQUIRED_SCHEMA if name not in tables]
    if missing_tables:
        raise RuntimeError(
            "Database schema validation failed; missing tables: "
            + ", ".join(sorted(missing_tables))
        )

    for table_name, required_columns in REQUIRED_SCHEMA.items():
        cursor.execute(f"PRAGMA table_info({table_name})")
        existing_columns = {row[1] for row in cursor.fetchall()}
        missing_columns = sorted(required_columns - existing_columns)
        if missing_columns:
            raise RuntimeError(
                f"Database schema validation failed; table '{table_name}' is missing "
                f"columns: {', '.join(missing_columns)}"
            )


def init_db() -> None:
    """Initialize the database.

    1. Runs pending Alembic migrations
    2. Validates required schema objects exist
    3. Enables runtime SQLite pragmas (WAL, synchronous)
    4. Creates the maintenance and backup singleton rows
    """
    logger.info(f"Initializing database at {get_db_path()}")

    if not run_migrations():
        raise RuntimeError(
            "Database migration failed; refusing to start with potentially invalid schema"
        )

    with get_connection() as conn:
        _assert_schema_sanity(conn)

        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        journal_mode = cursor.fetchone()[0]
        cursor.execute("PRAGMA synchronous=NORMAL")
        _ensure_singletons(conn)
        conn.commit()
        logger.info(f"Database initialized successfully (journal_mode={journal_mode})")


def _ensure_singletons(conn: sqlite3.Connection) -> None:
    now = now_iso()
    conn.execute(
        """
        INSERT OR IGNORE INTO maintenance (
            id, maintenance_mode, maintenance_message, last_update_date,
            system_version, database_label, system_uptime, server_load, updated_at
        ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            MAINTENANCE_DEFAULTS["maintenance_mode"],
            MAINTENANCE_DEFAULTS["maintenance_message"],
            now,
            MAINTENANCE_DEFAULTS["system_version"],
            MAINTENANCE_DEFAULTS["database_label"],
            MAINTENANCE_DEFAULTS["system_uptime"],
            MAINTENANCE_DEFAULTS["server_load"],
            now,
        ),
    )
    conn.execute(
        "INSERT OR IGNORE INTO backup_config (id, updated_at) VALUES (1, ?)", (now,)
    )


def _row(row: Optional[sqlite3.Row], json_fields: Iterable[str] = ()) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for field in json_fields:
        raw = data.get(field)
        if isinstance(raw, str):
            try:
                data[field] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Corrupt JSON in column {field}")
                data[field] = None
    return data


def _rows(rows: Iterable[sqlite3.Row], json_fields: Iterable[str] = ()) -> List[Dict[str, Any]]:
    fields = tuple(json_fields)
    return [_row(r, fields) for r in rows]  # type: ignore[misc]


# =============================================================================
# Users
# =============================================================================


def create_user(
    name: Optional[str],
    email: str,
    password_hash: str,
    role: str = "other",
    is_admin: bool = False,
) -> Dict[str, Any]:
    """Insert a user. Raises sqlite3.IntegrityError if the email is taken."""
    now = now_iso()
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO users (name, email, password_hash, role, is_admin, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (name, email.strip().lower(), password_hash, role, int(is_admin), now, now),
        )
        conn.commit()
        user_id = cursor.lastrowid
        return _row(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())  # type: ignore[return-value]


def get_user(user_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        return _row(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        return _row(
            conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        )


def list_users(include_admins: bool = False) -> List[Dict[str, Any]]:
    """List users newest first, excluding admins unless asked."""
    query = "SELECT * FROM users"
    if not include_admins:
        query += " WHERE is_admin = 0"
    query += " ORDER BY created_at DESC, id DESC"
    with get_connection() as conn:
        return _rows(conn.execute(query).fetchall())


def update_user(user_id: int, **fields: Any) -> Optional[Dict[str, Any]]:
    """Update whitelisted user columns and return the fresh row."""
    allowed = {"name", "role", "image", "password_hash", "is_active"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if not updates:
        return get_user(user_id)

    updates["updated_at"] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    with get_connection() as conn:
        conn.execute(
            f"UPDATE users SET {assignments} WHERE id = ?",
            (*updates.values(), user_id),
        )
        conn.commit()
        return _row(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())


def delete_user(user_id: int) -> bool:
    """Delete a user; recordings, transcriptions and deliveries cascade."""
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        conn.commit()
        return cursor.rowcount > 0


def _audience_clause(audience: str) -> Tuple[str, Tuple[Any, ...]]:
    if audience == "students":
        return "is_admin = 0 AND role = ?", ("student",)
    if audience == "teachers":
        return "is_admin = 0 AND role = ?", ("teacher",)
    return "is_admin = 0", ()


def resolve_audience(audience: str, user_ids: Optional[List[int]] = None) -> List[int]:
    """
    Resolve an audience selector to concrete non-admin user IDs.

    For ``user`` the explicit ID list is intersected with non-admin users;
    unknown and admin IDs drop out.
    """
    with get_connection() as conn:
        if audience == "user":
            ids = sorted({int(i) for i in (user_ids or [])})
            if not ids:
                return []
            placeholders = ", ".join("?" for _ in ids)
            rows = conn.execute(
                f"SELECT id FROM users WHERE is_admin = 0 AND id IN ({placeholders}) ORDER BY id",
                ids,
            ).fetchall()
        else:
            clause, params = _audience_clause(audience)
            rows = conn.execute(
                f"SELECT id FROM users WHERE {clause} ORDER BY id", params
            ).fetchall()
        return [row["id"] for row in rows]


def get_emails_for_users(user_ids: List[int]) -> Dict[int, str]:
    if not user_ids:
        return {}
    placeholders = ", ".join("?" for _ in user_ids)
    with get_connection() as conn:
        rows = conn.execute(
            f"SELECT id, email FROM users WHERE id IN ({placeholders})", user_ids
        ).fetchall()
        return {row["id"]: row["email"] for row in rows}


# =============================================================================
# Recordings and transcriptions
# =============================================================================


def insert_recording(
    user_id: int,
    filename: str,
    original_name: Optional[str],
    name: Optional[str],
    duration: Optional[str],
    size_bytes: int = 0,
) -> Dict[str, Any]:
    """Insert a new recording and return it."""
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO recordings (user_id, filename, original_name, name, duration, size_bytes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, filename, original_name, name, duration, size_bytes, now_iso()),
        )
        conn.commit()
        return _row(
            conn.execute("SELECT * FROM recordings WHERE id = ?", (cursor.lastrowid,)).fetchone()
        )  # type: ignore[return-value]


def get_recording(recording_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        return _row(
            conn.execute("SELECT * FROM recordings WHERE id = ?", (recording_id,)).fetchone()
        )


def list_user_recordings(user_id: int) -> List[Dict[str, Any]]:
    """Recordings owned by a user, newest first, with a transcribed flag."""
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT r.*, (t.id IS NOT NULL) AS has_transcription
            FROM recordings r
            LEFT JOIN transcriptions t ON t.recording_id = r.id
            WHERE r.user_id = ? AND r.deleted = 0
            ORDER BY r.created_at DESC, r.id DESC
            """,
            (user_id,),
        ).fetchall()
        return _rows(rows)


def list_recording_filenames_for_user(user_id: int) -> List[str]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT filename FROM recordings WHERE user_id = ?", (user_id,)
        ).fetchall()
        return [row["filename"] for row in rows]


def delete_recording(recording_id: int) -> bool:
    """Delete a recording's transcription, then the recording, in one transaction."""
    with get_connection() as conn:
        conn.execute("DELETE FROM transcriptions WHERE recording_id = ?", (recording_id,))
        cursor = conn.execute("DELETE FROM recordings WHERE id = ?", (recording_id,))
        conn.commit()
        return cursor.rowcount > 0


def get_transcription_for_recording(recording_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        return _row(
            conn.execute(
                "SELECT * FROM transcriptions WHERE recording_id = ?", (recording_id,)
            ).fetchone()
        )


def create_transcription(
    user_id: int, recording_id: int, text: str
) -> Tuple[Dict[str, Any], bool]:
    """
    Insert the transcription for a recording unless one already exists.

    The insert and the owner's counter increment commit together, and the
    counter only moves when this call created the row.

    Returns:
        (transcription row, created)
    """
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO transcriptions (user_id, recording_id, text, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(recording_id) DO NOTHING
            """,
            (user_id, recording_id, text, now_iso()),
        )
        created = cursor.rowcount == 1
        if created:
            conn.execute(
                "UPDATE users SET transcription_count = transcription_count + 1 WHERE id = ?",
                (user_id,),
            )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM transcriptions WHERE recording_id = ?", (recording_id,)
        ).fetchone()
        return _row(row), created  # type: ignore[return-value]


def count_user_transcriptions(user_id: int) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM transcriptions WHERE user_id = ?", (user_id,)
        ).fetchone()[0]


# =============================================================================
# Notifications
# =============================================================================


_NOTIFICATION_SELECT = """
    SELECT n.*, u.name AS sender_name, u.email AS sender_email
    FROM notifications n
    LEFT JOIN users u ON u.id = n.created_by
"""


def insert_notification(
    title: str,
    message: str,
    type_: str,
    audience: str,
    target_user_ids: List[int],
    recipient_count: int,
    scheduled_at: Optional[str],
    sent_at: Optional[str],
    status: str,
    created_by: Optional[int],
    tag: str = "SmartScribe",
) -> Dict[str, Any]:
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO notifications (
                title, message, type, audience, target_user_ids, recipient_count,
                scheduled_at, sent_at, status, tag, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                title,
                message,
                type_,
                audience,
                json.dumps(target_user_ids),
                recipient_count,
                scheduled_at,
                sent_at,
                status,
                tag,
                created_by,
                now_iso(),
            ),
        )
        conn.commit()
        row = conn.execute(
            _NOTIFICATION_SELECT + " WHERE n.id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row(row, ("target_user_ids",))  # type: ignore[return-value]


def get_notification(notification_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        row = conn.execute(
            _NOTIFICATION_SELECT + " WHERE n.id = ?", (notification_id,)
        ).fetchone()
        return _row(row, ("target_user_ids",))


def list_notifications() -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            _NOTIFICATION_SELECT + " ORDER BY n.created_at DESC, n.id DESC"
        ).fetchall()
        return _rows(rows, ("target_user_ids",))


def list_due_notifications(now: str) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            _NOTIFICATION_SELECT
            + " WHERE n.status = 'scheduled' AND n.scheduled_at <= ? ORDER BY n.scheduled_at",
            (now,),
        ).fetchall()
        return _rows(rows, ("target_user_ids",))


def claim_scheduled_notification(notification_id: int, sent_at: str) -> bool:
    """Flip a scheduled notification to sent. False if someone else already did."""
    with get_connection() as conn:
        cursor = conn.execute(
            "UPDATE notifications SET status = 'sent', sent_at = ? "
            "WHERE id = ? AND status = 'scheduled'",
            (sent_at, notification_id),
        )
        conn.commit()
        return cursor.rowcount == 1


def insert_user_notification(user_id: int, notification_id: int) -> bool:
    """
    Store a delivery row. Re-running for the same pair is a no-op.

    Returns:
        True if a new row was created
    """
    now = now_iso()
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO user_notifications (user_id, notification_id, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, notification_id) DO NOTHING
            """,
            (user_id, notification_id, now, now),
        )
        conn.commit()
        return cursor.rowcount == 1


def count_user_notification_rows(notification_id: int) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM user_notifications WHERE notification_id = ?",
            (notification_id,),
        ).fetchone()[0]


def list_user_notifications(user_id: int) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT un.id AS delivery_id, un.is_read, un.created_at AS delivered_at,
                   n.id, n.title, n.message, n.type, n.tag, n.sent_at, n.created_at
            FROM user_notifications un
            JOIN notifications n ON n.id = un.notification_id
            WHERE un.user_id = ?
            ORDER BY un.created_at DESC, un.id DESC
            """,
            (user_id,),
        ).fetchall()
        return _rows(rows)


def mark_user_notification_read(user_id: int, notification_id: int) -> bool:
    with get_connection() as conn:
        cursor = conn.execute(
            "UPDATE user_notifications SET is_read = 1, updated_at = ? "
            "WHERE user_id = ? AND notification_id = ?",
            (now_iso(), user_id, notification_id),
        )
        conn.commit()
        return cursor.rowcount > 0


def delete_user_notification(user_id: int, notification_id: int) -> bool:
    with get_connection() as conn:
        cursor = conn.execute(
            "DELETE FROM user_notifications WHERE user_id = ? AND notification_id = ?",
            (user_id, notification_id),
        )
        conn.commit()
        return cursor.rowcount > 0


# =============================================================================
# Admin sessions
# =============================================================================


def replace_admin_session(
    admin_id: int,
    token: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
    expires_at: str,
) -> Dict[str, Any]:
    """
    Deactivate every active session of an admin, then create the new one.

    Both steps run in a single IMMEDIATE transaction, so concurrent logins for
    the same admin are serialized and a reader never sees two active rows.
    """
    now = now_iso()
    with get_connection() as conn:
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "UPDATE admin_sessions SET is_active = 0 WHERE admin_id = ? AND is_active = 1",
                (admin_id,),
            )
            cursor = conn.execute(
                """
                INSERT INTO admin_sessions (
                    admin_id, token, ip_address, user_agent, last_activity,
                    expires_at, is_active, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (admin_id, token, ip_address, user_agent, now, expires_at, now),
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        row = conn.execute(
            "SELECT * FROM admin_sessions WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row(row)  # type: ignore[return-value]


def get_active_admin_session(token: str, now: str) -> Optional[Dict[str, Any]]:
    """Return the active, unexpired session bound to this exact token."""
    with get_connection() as conn:
        return _row(
            conn.execute(
                "SELECT * FROM admin_sessions WHERE token = ? AND is_active = 1 AND expires_at > ?",
                (token, now),
            ).fetchone()
        )


def touch_admin_session(session_id: int, now: str) -> None:
    with get_connection() as conn:
        conn.execute(
            "UPDATE admin_sessions SET last_activity = ? WHERE id = ?", (now, session_id)
        )
        conn.commit()


def rotate_admin_session_token(
    old_token: str, admin_id: int, new_token: str, expires_at: str, now: str
) -> bool:
    """Swap a live session's token and expiry in place."""
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE admin_sessions
            SET token = ?, expires_at = ?, last_activity = ?
            WHERE token = ? AND admin_id = ? AND is_active = 1 AND expires_at > ?
            """,
            (new_token, expires_at, now, old_token, admin_id, now),
        )
        conn.commit()
        return cursor.rowcount == 1


def deactivate_admin_session(token: str, admin_id: int) -> bool:
    with get_connection() as conn:
        cursor = conn.execute(
            "UPDATE admin_sessions SET is_active = 0 WHERE token = ? AND admin_id = ?",
            (token, admin_id),
        )
        conn.commit()
        return cursor.rowcount > 0


def deactivate_expired_admin_sessions(now: str) -> int:
    with get_connection() as conn:
        cursor = conn.execute(
            "UPDATE admin_sessions SET is_active = 0 WHERE is_active = 1 AND expires_at <= ?",
            (now,),
        )
        conn.commit()
        return cursor.rowcount


def count_active_admin_sessions(admin_id: int) -> int:
    with get_connection() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM admin_sessions WHERE admin_id = ? AND is_active = 1",
            (admin_id,),
        ).fetchone()[0]


# =============================================================================
# Login attempts
# =============================================================================


def insert_login_attempt(
    email: str,
    ip_address: Optional[str],
    user_agent: Optional[str],
    success: bool,
    attempt_type: str,
    created_at: Optional[str] = None,
) -> None:
    with get_connection() as conn:
        conn.execute(
            """
            INSERT INTO login_attempts (email, ip_address, user_agent, success, attempt_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (email, ip_address, user_agent, int(success), attempt_type, created_at or now_iso()),
        )
        conn.commit()


def failures_since_last_success(email: str, attempt_type: str, since: str) -> List[str]:
    """
    Timestamps (oldest first) of failed attempts inside the window that came
    after the most recent success in that window.
    """
    with get_connection() as conn:
        last_success = conn.execute(
            """
            SELECT MAX(created_at) FROM login_attempts
            WHERE email = ? AND attempt_type = ? AND success = 1 AND created_at >= ?
            """,
            (email, attempt_type, since),
        ).fetchone()[0]
        floor = max(since, last_success) if last_success else since
        rows = conn.execute(
            f"""
            SELECT created_at FROM login_attempts
            WHERE email = ? AND attempt_type = ? AND success = 0
              AND created_at {'>' if last_success else '>='} ?
            ORDER BY created_at
            """,
            (email, attempt_type, floor),
        ).fetchall()
        return [row["created_at"] for row in rows]


def purge_login_attempts(before: str) -> int:
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM login_attempts WHERE created_at < ?", (before,))
        conn.commit()
        return cursor.rowcount


# =============================================================================
# User activity
# =============================================================================


def insert_activity(
    user_id: Optional[int],
    user_email: Optional[str],
    user_name: Optional[str],
    action: str,
    description: Optional[str],
    metadata: Dict[str, Any],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> Dict[str, Any]:
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO user_activities (
                user_id, user_email, user_name, action, description, metadata,
                ip_address, user_agent, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                user_email,
                user_name,
                action,
                description,
                json.dumps(metadata or {}, default=str),
                ip_address,
                user_agent,
                now_iso(),
            ),
        )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM user_activities WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row(row, ("metadata",))  # type: ignore[return-value]


def query_activities(
    user_id: Optional[int] = None,
    user_email: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """Filtered activity log, newest first, plus the unpaginated total."""
    clauses: List[str] = []
    params: List[Any] = []
    if user_id is not None:
        clauses.append("user_id = ?")
        params.append(user_id)
    if user_email:
        clauses.append("user_email = ?")
        params.append(user_email.strip().lower())
    if action:
        clauses.append("action = ?")
        params.append(action)
    if start:
        clauses.append("created_at >= ?")
        params.append(start)
    if end:
        clauses.append("created_at <= ?")
        params.append(end)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

    with get_connection() as conn:
        total = conn.execute(
            f"SELECT COUNT(*) FROM user_activities{where}", params
        ).fetchone()[0]
        rows = conn.execute(
            f"SELECT * FROM user_activities{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, skip),
        ).fetchall()
        return _rows(rows, ("metadata",)), total


def activity_counts_by_action(since: str) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT action, COUNT(*) AS count FROM user_activities
            WHERE created_at >= ?
            GROUP BY action ORDER BY count DESC, action
            """,
            (since,),
        ).fetchall()
        return _rows(rows)


def top_active_users(since: str, limit: int) -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT user_email, MAX(user_name) AS user_name, MAX(user_id) AS user_id,
                   COUNT(*) AS activity_count
            FROM user_activities
            WHERE created_at >= ?
            GROUP BY user_email
            ORDER BY activity_count DESC, user_email
            LIMIT ?
            """,
            (since, limit),
        ).fetchall()
        return _rows(rows)


def daily_activity_usage(since: str) -> List[Dict[str, Any]]:
    """Per-day activity and distinct-user counts (UTC days)."""
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT substr(created_at, 1, 10) AS day,
                   COUNT(*) AS count,
                   COUNT(DISTINCT user_id) AS unique_users
            FROM user_activities
            WHERE created_at >= ?
            GROUP BY day ORDER BY day
            """,
            (since,),
        ).fetchall()
        return _rows(rows)


def activity_totals(since: str) -> Tuple[int, int]:
    """(total activities, distinct users) since a timestamp."""
    with get_connection() as conn:
        row = conn.execute(
            "SELECT COUNT(*), COUNT(DISTINCT user_id) FROM user_activities WHERE created_at >= ?",
            (since,),
        ).fetchone()
        return row[0], row[1]


def purge_activities(before: str) -> int:
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM user_activities WHERE created_at < ?", (before,))
        conn.commit()
        return cursor.rowcount


# =============================================================================
# Maintenance and APK versions
# =============================================================================


def get_maintenance() -> Dict[str, Any]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM maintenance WHERE id = 1").fetchone()
        if row is None:
            _ensure_singletons(conn)
            conn.commit()
            row = conn.execute("SELECT * FROM maintenance WHERE id = 1").fetchone()
        return _row(row)  # type: ignore[return-value]


def update_maintenance(**fields: Any) -> Dict[str, Any]:
    allowed = {
        "maintenance_mode",
        "maintenance_message",
        "last_update_date",
        "system_version",
        "database_label",
        "system_uptime",
        "server_load",
    }
    updates = {k: v for k, v in fields.items() if k in allowed}
    get_maintenance()
    if updates:
        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with get_connection() as conn:
            conn.execute(
                f"UPDATE maintenance SET {assignments} WHERE id = 1", tuple(updates.values())
            )
            conn.commit()
    return get_maintenance()


_APK_JSON = ("features", "improvements", "bug_fixes")

_APK_SELECT = """
    SELECT a.*, u.name AS uploader_name, u.email AS uploader_email
    FROM apk_versions a
    LEFT JOIN users u ON u.id = a.uploaded_by
"""


def insert_apk_version(
    version: str,
    features: List[str],
    improvements: List[str],
    bug_fixes: List[str],
    file_path: str,
    file_name: str,
    file_size: int,
    uploaded_by: Optional[int],
) -> Dict[str, Any]:
    """Store an APK release and bump the maintenance version/update date."""
    now = now_iso()
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO apk_versions (
                version, release_date, features, improvements, bug_fixes,
                file_path, file_name, file_size, uploaded_at, uploaded_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                version,
                now,
                json.dumps(features),
                json.dumps(improvements),
                json.dumps(bug_fixes),
                file_path,
                file_name,
                file_size,
                now,
                uploaded_by,
            ),
        )
        conn.execute(
            "UPDATE maintenance SET system_version = ?, last_update_date = ?, updated_at = ? WHERE id = 1",
            (version, now, now),
        )
        conn.commit()
        row = conn.execute(_APK_SELECT + " WHERE a.id = ?", (cursor.lastrowid,)).fetchone()
        return _row(row, _APK_JSON)  # type: ignore[return-value]


def list_apk_versions() -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            _APK_SELECT + " ORDER BY a.uploaded_at DESC, a.id DESC"
        ).fetchall()
        return _rows(rows, _APK_JSON)


def get_apk_version(version_id: int) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        return _row(
            conn.execute(_APK_SELECT + " WHERE a.id = ?", (version_id,)).fetchone(), _APK_JSON
        )


def delete_apk_version(version_id: int) -> bool:
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM apk_versions WHERE id = ?", (version_id,))
        conn.commit()
        return cursor.rowcount > 0


# =============================================================================
# Backup configuration and history
# =============================================================================


def get_backup_config() -> Dict[str, Any]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM backup_config WHERE id = 1").fetchone()
        if row is None:
            _ensure_singletons(conn)
            conn.commit()
            row = conn.execute("SELECT * FROM backup_config WHERE id = 1").fetchone()
        return _row(row)  # type: ignore[return-value]


_BACKUP_CONFIG_COLUMNS = {
    "auto_backup_enabled",
    "backup_frequency",
    "backup_time",
    "backup_day",
    "one_time_backup_enabled",
    "one_time_scheduled_backup",
    "last_backup_date",
    "next_scheduled_backup",
}


def update_backup_config(**fields: Any) -> Dict[str, Any]:
    updates = {k: v for k, v in fields.items() if k in _BACKUP_CONFIG_COLUMNS}
    get_backup_config()
    if updates:
        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with get_connection() as conn:
            conn.execute(
                f"UPDATE backup_config SET {assignments} WHERE id = 1",
                tuple(updates.values()),
            )
            conn.commit()
    return get_backup_config()


def record_backup(entry: Dict[str, Any], config_updates: Dict[str, Any]) -> Dict[str, Any]:
    """Append a history entry and apply config bookkeeping atomically."""
    updates = {k: v for k, v in config_updates.items() if k in _BACKUP_CONFIG_COLUMNS}
    updates["updated_at"] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in updates)
    with get_connection() as conn:
        cursor = conn.execute(
            """
            INSERT INTO backup_history (
                backup_id, backup_date, backup_size, size_bytes, status,
                backup_path, triggered_by, backup_type, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["backup_id"],
                entry["backup_date"],
                entry.get("backup_size"),
                entry.get("size_bytes", 0),
                entry["status"],
                entry.get("backup_path"),
                entry.get("triggered_by"),
                entry["backup_type"],
                entry.get("error"),
            ),
        )
        conn.execute(
            f"UPDATE backup_config SET {assignments} WHERE id = 1", tuple(updates.values())
        )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM backup_history WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row(row)  # type: ignore[return-value]


def list_backup_history() -> List[Dict[str, Any]]:
    with get_connection() as conn:
        rows = conn.execute(
            """
            SELECT h.*, u.name AS triggered_by_name, u.email AS triggered_by_email
            FROM backup_history h
            LEFT JOIN users u ON u.id = h.triggered_by
            ORDER BY h.backup_date DESC, h.id DESC
            """
        ).fetchall()
        return _rows(rows)
