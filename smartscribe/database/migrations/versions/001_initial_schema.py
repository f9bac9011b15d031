"""Initial SmartScribe schema.

Revision ID: 001
Revises: None
Create Date: 2026-01-12

Uses IF NOT EXISTS clauses so it is safe to run against an existing database.
"""

from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the initial schema if tables don't exist."""
    conn = op.get_bind()

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'other',
            transcription_count INTEGER NOT NULL DEFAULT 0,
            is_admin INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            image TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS recordings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            filename TEXT NOT NULL UNIQUE,
            original_name TEXT,
            name TEXT,
            duration TEXT,
            size_bytes INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """)
    )

    # One transcription per recording; the UNIQUE constraint is what makes
    # concurrent transcribe calls converge on a single row.
    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS transcriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            recording_id INTEGER NOT NULL UNIQUE,
            text TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (recording_id) REFERENCES recordings(id) ON DELETE CASCADE
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'info',
            audience TEXT NOT NULL DEFAULT 'all',
            target_user_ids TEXT NOT NULL DEFAULT '[]',
            recipient_count INTEGER NOT NULL DEFAULT 0,
            scheduled_at TEXT,
            sent_at TEXT,
            status TEXT NOT NULL DEFAULT 'sent',
            tag TEXT NOT NULL DEFAULT 'SmartScribe',
            created_by INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS user_notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            notification_id INTEGER NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, notification_id),
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (notification_id) REFERENCES notifications(id) ON DELETE CASCADE
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS admin_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            admin_id INTEGER NOT NULL,
            token TEXT NOT NULL UNIQUE,
            ip_address TEXT,
            user_agent TEXT,
            last_activity TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY (admin_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS login_attempts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL,
            ip_address TEXT,
            user_agent TEXT,
            success INTEGER NOT NULL,
            attempt_type TEXT NOT NULL DEFAULT 'admin',
            created_at TEXT NOT NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS user_activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            user_email TEXT,
            user_name TEXT,
            action TEXT NOT NULL,
            description TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',
            ip_address TEXT,
            user_agent TEXT,
            created_at TEXT NOT NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS maintenance (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            maintenance_mode INTEGER NOT NULL DEFAULT 0,
            maintenance_message TEXT NOT NULL,
            last_update_date TEXT NOT NULL,
            system_version TEXT NOT NULL,
            database_label TEXT NOT NULL,
            system_uptime TEXT NOT NULL,
            server_load TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS apk_versions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version TEXT NOT NULL,
            release_date TEXT NOT NULL,
            features TEXT NOT NULL DEFAULT '[]',
            improvements TEXT NOT NULL DEFAULT '[]',
            bug_fixes TEXT NOT NULL DEFAULT '[]',
            file_path TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_size INTEGER NOT NULL DEFAULT 0,
            uploaded_at TEXT NOT NULL,
            uploaded_by INTEGER,
            FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS backup_config (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            auto_backup_enabled INTEGER NOT NULL DEFAULT 1,
            backup_frequency TEXT NOT NULL DEFAULT 'daily',
            backup_time TEXT NOT NULL DEFAULT '02:00',
            backup_day TEXT NOT NULL DEFAULT 'Sunday',
            one_time_backup_enabled INTEGER NOT NULL DEFAULT 0,
            one_time_scheduled_backup TEXT,
            last_backup_date TEXT,
            next_scheduled_backup TEXT,
            updated_at TEXT NOT NULL
        )
    """)
    )

    conn.execute(
        text("""
        CREATE TABLE IF NOT EXISTS backup_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            backup_id TEXT NOT NULL UNIQUE,
            backup_date TEXT NOT NULL,
            backup_size TEXT,
            size_bytes INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'completed',
            backup_path TEXT,
            triggered_by INTEGER,
            backup_type TEXT NOT NULL DEFAULT 'automatic',
            error TEXT,
            FOREIGN KEY (triggered_by) REFERENCES users(id) ON DELETE SET NULL
        )
    """)
    )

    # At most one active session per admin
    conn.execute(
        text(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_admin_sessions_one_active "
            "ON admin_sessions(admin_id) WHERE is_active = 1"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_recordings_user ON recordings(user_id, created_at)"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_login_attempts_lookup "
            "ON login_attempts(email, attempt_type, created_at)"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_user_activities_time ON user_activities(created_at)"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_user_activities_user ON user_activities(user_id, created_at)"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_user_notifications_user ON user_notifications(user_id, created_at)"
        )
    )
    conn.execute(
        text(
            "CREATE INDEX IF NOT EXISTS idx_notifications_due ON notifications(status, scheduled_at)"
        )
    )


def downgrade() -> None:
    """Cannot downgrade initial schema - data loss would occur."""
    pass
