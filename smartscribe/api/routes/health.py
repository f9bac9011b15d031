"""
Health and status endpoints for the SmartScribe server.
"""

import asyncio
import sqlite3
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from smartscribe import __version__
from smartscribe.core.realtime import get_event_hub
from smartscribe.database import database as db

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint (no auth required)."""
    return {"status": "healthy", "service": "smartscribe"}


def _database_reachable() -> bool:
    try:
        with db.get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
    except sqlite3.Error:
        return False


@router.get("/ready")
async def readiness_check() -> JSONResponse:
    """
    Readiness check.

    Returns:
        200: Database answers queries
        503: Database is unavailable
    """
    if await asyncio.to_thread(_database_reachable):
        return JSONResponse(content={"status": "ready"}, status_code=200)
    return JSONResponse(content={"status": "unavailable"}, status_code=503)


@router.get("/api/status")
async def get_status() -> dict[str, Any]:
    """Server version and live connection count."""
    return {
        "status": "running",
        "version": __version__,
        "connections": get_event_hub().connection_count,
    }
