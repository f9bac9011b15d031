"""
REST API for SmartScribe.

Provides a single FastAPI application serving:
- Authentication and admin session endpoints (/api/auth/*)
- User profile and management endpoints (/api/users/*)
- Recording and transcription endpoints (/api/recordings/*)
- Notification endpoints (/api/notifications/*)
- Maintenance, APK and backup endpoints (/api/maintenance/*)
- Activity analytics endpoints (/api/activity/*)
- WebSocket for real-time events
"""
