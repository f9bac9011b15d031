"""
FastAPI application for the SmartScribe server.

Provides a single API serving:
- Authentication endpoints (/api/auth/*)
- User profile and management endpoints (/api/users/*)
- Recording and transcription endpoints (/api/recordings/*)
- Notification endpoints (/api/notifications/*)
- Maintenance, APK and backup endpoints (/api/maintenance/*)
- Activity analytics endpoints (/api/activity/*)
- Real-time events (/ws/events)
- Health and status endpoints
"""

import argparse
import asyncio
import contextlib
import getpass
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from smartscribe import __version__
from smartscribe.api.routes import (
    activity,
    auth,
    health,
    maintenance,
    notifications,
    recordings,
    users,
    websocket,
)
from smartscribe.config import ServerConfig, get_config, resolve_allowed_origins
from smartscribe.core.errors import (
    LockedError,
    RateLimitedError,
    SmartScribeError,
    ValidationError,
)
from smartscribe.core.scheduler import DEFAULT_INTERVAL_MINUTES, maintenance_loop
from smartscribe.database import database as db
from smartscribe.database.backup import get_backup_service
from smartscribe.logging import get_logger, setup_logging

logger = get_logger("api")


def configure_storage(config: ServerConfig) -> None:
    """Point the storage layer at the configured data directory or database URL."""
    data_dir = config.get("storage", "data_dir")
    if data_dir:
        db.set_data_directory(Path(data_dir))

    database_url = config.get("storage", "database_url")
    if database_url:
        prefix = "sqlite:///"
        if not str(database_url).startswith(prefix):
            raise RuntimeError(f"Only sqlite:/// database URLs are supported, got {database_url}")
        db.set_database_path(Path(str(database_url)[len(prefix):]))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    config = get_config()

    # Initialize logging
    setup_logging(config.logging)
    logger.info("SmartScribe server starting...")

    # Initialize database
    db.init_db()
    logger.info("Database initialized")

    await get_backup_service().initialize()

    scheduler_task: Optional[asyncio.Task] = None
    if config.get("scheduler", "enabled", default=True):
        interval = config.get("scheduler", "interval_minutes", default=DEFAULT_INTERVAL_MINUTES)
        scheduler_task = asyncio.create_task(maintenance_loop(float(interval)))

    app.state.config = config
    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info("Server shutting down...")
    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task
    logger.info("Shutdown complete")


def error_response(exc: SmartScribeError) -> JSONResponse:
    """Translate a service error into its JSON body, status and headers."""
    content: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
    headers: Dict[str, str] = {}
    if isinstance(exc, LockedError) and exc.locked_until:
        content["lockedUntil"] = exc.locked_until
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(max(int(exc.retry_after), 1))
    if isinstance(exc, ValidationError) and exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


def create_app(config_path: Path | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Configured FastAPI application
    """
    # Initialize config early if path provided
    config = get_config(config_path)
    configure_storage(config)

    app = FastAPI(
        title="SmartScribe",
        description="Recording transcription, speaker labeling and admin console API",
        version=__version__,
        lifespan=lifespan,
    )

    origins = resolve_allowed_origins(config)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=bool(origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(users.router, prefix="/api/users", tags=["Users"])
    app.include_router(recordings.router, prefix="/api/recordings", tags=["Recordings"])
    app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
    app.include_router(maintenance.router, prefix="/api/maintenance", tags=["Maintenance"])
    app.include_router(activity.router, prefix="/api/activity", tags=["Activity"])
    app.include_router(websocket.router, tags=["WebSocket"])

    # Uploaded recordings, profile images and app builds
    app.mount(
        "/uploads",
        StaticFiles(directory=str(db.get_uploads_dir()), check_dir=False),
        name="uploads",
    )

    @app.exception_handler(SmartScribeError)
    async def smartscribe_exception_handler(request: Request, exc: SmartScribeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            errors.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "code": ValidationError.code, "errors": errors},
        )

    # Exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


def create_admin_command(email: Optional[str]) -> int:
    """Interactive bootstrap of the first admin account."""
    from smartscribe.core.accounts import ensure_admin

    config = get_config()
    setup_logging(config.logging)
    configure_storage(config)
    db.init_db()

    email = email or input("Admin email: ").strip()
    password = getpass.getpass("Admin password: ")
    if password != getpass.getpass("Confirm password: "):
        print("Passwords do not match", file=sys.stderr)
        return 1

    try:
        admin = ensure_admin(email, password)
    except SmartScribeError as e:
        print(e.message, file=sys.stderr)
        return 1
    print(f"Admin ready: {admin['email']} (id {admin['id']})")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="smartscribe", description="SmartScribe server")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--host", help="Bind address (default from config)")
    parser.add_argument("--port", type=int, help="Port (default from config)")
    parser.add_argument(
        "--create-admin",
        action="store_true",
        help="Create the admin account and exit",
    )
    parser.add_argument("--email", help="Admin email for --create-admin")
    args = parser.parse_args(argv)

    config = get_config(args.config)
    if args.create_admin:
        return create_admin_command(args.email)

    import uvicorn

    uvicorn.run(
        create_app(),
        host=args.host or config.get("server", "host", default="0.0.0.0"),
        port=args.port or int(config.get("server", "port", default=5000)),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
