"""
Centralized logging for SmartScribe server.

Provides structured JSON logging with service tagging and log rotation.
"""

from smartscribe.logging.setup import get_logger, setup_logging

__all__ = ["setup_logging", "get_logger"]
