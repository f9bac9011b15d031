"""
Server configuration management for SmartScribe.

Handles loading configuration from YAML files and environment variables.
Provides typed configuration access for all server components.

Configuration Priority (highest to lowest):
    1. Environment variables (secrets and deployment specifics, see ENV_OVERRIDES)
    2. User config: ~/.config/SmartScribe/config.yaml
    3. Default config: /app/config.yaml (Docker container)
    4. Dev config: config.yaml in the project root
    5. Fallback: ./config.yaml (current directory)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Environment variable -> nested config key path
ENV_OVERRIDES: Dict[str, tuple[str, ...]] = {
    "DATA_DIR": ("storage", "data_dir"),
    "DATABASE_URL": ("storage", "database_url"),
    "JWT_SECRET": ("auth", "jwt_secret"),
    "ALLOWED_ORIGINS": ("server", "allowed_origins"),
    "OPEN_AI_API_KEY": ("providers", "api_key"),
    "OPENAI_API_KEY": ("providers", "api_key"),
    "OPENAI_BASE_URL": ("providers", "base_url"),
    "MAIL_USERNAME": ("mail", "username"),
    "MAIL_PASSWORD": ("mail", "password"),
    "MAIL_FROM": ("mail", "from_address"),
    "MAIL_SERVER": ("mail", "server"),
    "MAIL_PORT": ("mail", "port"),
    "PUBLIC_BASE_URL": ("server", "public_base_url"),
}


def get_user_config_dir() -> Path:
    """
    Get the user configuration directory.

    Returns:
        Path to user config directory:
        - Docker: /user-config/ (if exists and is mounted)
        - otherwise $XDG_CONFIG_HOME/SmartScribe or ~/.config/SmartScribe
    """
    docker_user_config = Path("/user-config")
    if docker_user_config.exists() and docker_user_config.is_dir():
        return docker_user_config

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "SmartScribe"
    return Path.home() / ".config" / "SmartScribe"


class ServerConfig:
    """
    Server configuration manager.

    Loads configuration from a YAML file, then applies environment overrides.
    """

    def __init__(self, config_path: Optional[Path] = None, use_env: bool = True):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, searches in priority order.
            use_env: Apply .env / environment variable overrides.
        """
        self.config: Dict[str, Any] = {}
        self._config_path = config_path
        self._loaded_from: Optional[Path] = None
        self._load_config()
        if use_env:
            load_dotenv()
            self._apply_env_overrides()

    def _find_config_candidates(self) -> list[Path]:
        """Return readable config file candidates in priority order."""
        if self._config_path:
            if self._config_path.exists():
                try:
                    with self._config_path.open("r", encoding="utf-8"):
                        pass
                    return [self._config_path]
                except (PermissionError, OSError):
                    return []
            return []

        candidates = [
            get_user_config_dir() / "config.yaml",
            Path("/app/config.yaml"),
            Path(__file__).parent.parent / "config.yaml",
            Path.cwd() / "config.yaml",
        ]

        readable: list[Path] = []
        for path in candidates:
            if not (path.exists() and path.is_file()):
                continue
            try:
                with path.open("r", encoding="utf-8"):
                    pass
                readable.append(path)
            except (PermissionError, OSError):
                continue

        return readable

    def _load_config(self) -> None:
        """Load configuration from file."""
        candidates = self._find_config_candidates()

        if not candidates:
            raise RuntimeError(
                "No configuration file found. "
                "Expected one of:\n"
                f"  - {get_user_config_dir() / 'config.yaml'} (user config)\n"
                "  - /app/config.yaml (Docker default)\n"
                "  - config.yaml (project root)\n"
                "  - ./config.yaml (current directory)"
            )

        errors: list[tuple[Path, Exception]] = []
        for config_file in candidates:
            try:
                with config_file.open("r", encoding="utf-8") as f:
                    self.config = yaml.safe_load(f) or {}
                self._loaded_from = config_file
                if errors:
                    logger.warning(
                        "Skipped invalid config file(s): "
                        + ", ".join(str(path) for path, _ in errors)
                    )
                logger.info(f"Loaded configuration from: {config_file}")
                return
            except (yaml.YAMLError, OSError) as e:
                logger.error(f"Could not load config file {config_file}: {e}")
                errors.append((config_file, e))
                if self._config_path:
                    break

        details = "\n".join(f"  - {path}: {err}" for path, err in errors)
        raise RuntimeError("Failed to load configuration. Tried:\n" + details)

    def _apply_env_overrides(self) -> None:
        """Overlay environment variables onto the loaded file config."""
        for env_name, key_path in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None or not value.strip():
                continue
            self.set(*key_path, value=value.strip())

    @property
    def loaded_from(self) -> Optional[Path]:
        """Return the path of the loaded configuration file."""
        return self._loaded_from

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get a configuration value by nested key path.

            config.get("auth", "admin_token_hours")
            config.get("logging", "level", default="INFO")
            config.get("security", default={})

        Raises:
            TypeError: If any key argument is not a string
        """
        if not keys:
            return self.config

        for i, key in enumerate(keys):
            if not isinstance(key, str):
                raise TypeError(
                    f"All configuration keys must be strings, got {type(key).__name__} "
                    f"for keys[{i}]: {repr(key)}. "
                    f"If you want to provide a default value, use the 'default=' keyword argument: "
                    f"cfg.get({', '.join(repr(k) for k in keys[:i] if isinstance(k, str))}, default={repr(key)})"
                )

        value = self.config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    def set(self, *keys: str, value: Any) -> None:
        """Set a nested configuration value, creating sections as needed."""
        if not keys:
            raise ValueError("At least one key is required")
        section = self.config
        for key in keys[:-1]:
            nested = section.get(key)
            if not isinstance(nested, dict):
                nested = {}
                section[key] = nested
            section = nested
        section[keys[-1]] = value

    @property
    def server(self) -> Dict[str, Any]:
        """Get server configuration."""
        return self.config.get("server", {})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.config.get("logging", {})

    @property
    def auth(self) -> Dict[str, Any]:
        """Get authentication configuration."""
        return self.config.get("auth", {})

    @property
    def security(self) -> Dict[str, Any]:
        """Get rate limit / lockout configuration."""
        return self.config.get("security", {})

    @property
    def providers(self) -> Dict[str, Any]:
        """Get speech-to-text / completion provider configuration."""
        return self.config.get("providers", {})

    @property
    def mail(self) -> Dict[str, Any]:
        """Get mail configuration."""
        return self.config.get("mail", {})

    @property
    def backup(self) -> Dict[str, Any]:
        """Get backup configuration."""
        return self.config.get("backup", {})


def resolve_allowed_origins(config: ServerConfig) -> list[str]:
    """Return CORS origins from config, accepting a list or a comma separated string."""
    origins = config.get("server", "allowed_origins", default=[])
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",")]
    return [o for o in origins if o]


# Global config instance
_config: Optional[ServerConfig] = None


def get_config(config_path: Optional[Path] = None) -> ServerConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = ServerConfig(config_path)
    return _config


def reset_config() -> None:
    """Drop the cached configuration (used by tests and reloads)."""
    global _config
    _config = None
