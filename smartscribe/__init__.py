"""
SmartScribe Server Package.

Backend API for the SmartScribe transcription service: recording upload and
transcription, speaker labeling, notifications, admin console and backups.
"""

from pathlib import Path


def _get_version() -> str:
    """
    Get the server version from package metadata or pyproject.toml.

    Returns:
        Version string (e.g., "1.0.0") or "dev" if unavailable
    """
    try:
        from importlib.metadata import version

        return version("smartscribe-server")
    except Exception:
        pass

    try:
        import tomllib

        current = Path(__file__).resolve()
        for parent in current.parents:
            potential_path = parent / "pyproject.toml"
            if potential_path.exists():
                with open(potential_path, "rb") as f:
                    data = tomllib.load(f)
                return data.get("project", {}).get("version", "dev")
    except Exception:
        pass

    return "dev"


__version__ = _get_version()
