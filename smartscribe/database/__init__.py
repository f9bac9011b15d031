"""
Database layer for SmartScribe.

SQLite storage with Alembic-managed schema, plus the backup service.
"""


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    from smartscribe.database import database

    return getattr(database, name)


__all__ = [
    # Core
    "init_db",
    "get_connection",
    "set_data_directory",
    "get_data_dir",
    "get_db_path",
    "get_uploads_dir",
    "get_backup_dir",
    # Users
    "create_user",
    "get_user",
    "get_user_by_email",
    "list_users",
    "update_user",
    "delete_user",
    "resolve_audience",
    # Recordings
    "insert_recording",
    "get_recording",
    "list_user_recordings",
    "delete_recording",
    "get_transcription_for_recording",
    "create_transcription",
    # Notifications
    "insert_notification",
    "list_notifications",
    "insert_user_notification",
    "list_user_notifications",
    # Sessions and attempts
    "replace_admin_session",
    "get_active_admin_session",
    "insert_login_attempt",
    # Maintenance and backup
    "get_maintenance",
    "update_maintenance",
    "get_backup_config",
    "update_backup_config",
    "record_backup",
]
