"""CLI configuration management.

Handles persistent configuration stored in ~/.servercore/config.yaml.
Supports environment variable overrides and tracks where every value came
from.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from .errors import ConfigError
from .shared.paths import CONFIG_FILE, DEPLOYMENTS_DIR

# Default values
DEFAULT_PROJECT_NAME = "nextcloud-servercore"
DEFAULT_ADMIN_USER = "ubuntu"
DEFAULT_DOMAIN = "cloud.example.net"
DEFAULT_SSH_PORT = 7392
DEFAULT_TIMEZONE = "UTC"
DEFAULT_NEXTCLOUD_ADMIN = "admin"

DEFAULT_BASE_PACKAGES = [
    "apt-transport-https",
    "ca-certificates",
    "curl",
    "software-properties-common",
    "gnupg",
    "lsb-release",
    "fail2ban",
    "ufw",
    "openssl",
    "htop",
    "unattended-upgrades",
    "logrotate",
    "rsyslog",
]

# Environment variable mappings
ENV_PREFIX = "SERVERCORE_"


@dataclass
class ServercoreConfig:
    """Provisioning configuration."""

    project_name: str = DEFAULT_PROJECT_NAME
    admin_user: str = DEFAULT_ADMIN_USER
    domain: str = DEFAULT_DOMAIN
    ssh_port: int = DEFAULT_SSH_PORT
    timezone: str = DEFAULT_TIMEZONE
    nextcloud_admin: str = DEFAULT_NEXTCLOUD_ADMIN
    base_packages: list[str] = field(default_factory=lambda: list(DEFAULT_BASE_PACKAGES))
    retry_attempts: int = 4
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    health_timeout: float = 300.0
    health_poll_interval: float = 5.0
    health_url: str | None = None
    state_dir: Path = field(default_factory=lambda: DEPLOYMENTS_DIR)
    project_dir_override: str | None = None

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict, repr=False)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    @property
    def home_dir(self) -> PurePosixPath:
        if self.admin_user == "root":
            return PurePosixPath("/root")
        return PurePosixPath("/home") / self.admin_user

    @property
    def project_root(self) -> PurePosixPath:
        """Directory holding the project on the target host."""
        return self.home_dir / self.project_name

    @property
    def project_dir(self) -> PurePosixPath:
        """Directory holding compose file, env file and service data."""
        if self.project_dir_override:
            return PurePosixPath(self.project_dir_override)
        return self.project_root / "docker"

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value.
        """
        if not 0 < self.ssh_port < 65536:
            raise ConfigError(message=f"ssh_port out of range: {self.ssh_port}")
        if self.retry_attempts < 1:
            raise ConfigError(message="retry_attempts must be at least 1")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigError(message="retry delays must not be negative")
        if self.health_timeout <= 0 or self.health_poll_interval <= 0:
            raise ConfigError(message="health_timeout and health_poll_interval must be positive")
        if not self.admin_user or not self.project_name:
            raise ConfigError(message="admin_user and project_name must not be empty")
        if not self.base_packages:
            raise ConfigError(message="base_packages must not be empty")


def _coerce(name: str, raw: Any, target: Any) -> Any:
    """Convert a raw file/env value to the type of the field default."""
    try:
        if name == "state_dir":
            return Path(str(raw)).expanduser()
        if name == "base_packages":
            if isinstance(raw, str):
                return [p for p in raw.replace(",", " ").split() if p]
            return [str(p) for p in raw]
        if name in ("health_url", "project_dir_override"):
            return str(raw) if raw else None
        if isinstance(target, int):
            return int(raw)
        if isinstance(target, float):
            return float(raw)
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(message=f"Invalid value for {name}: {raw!r} ({e})") from e


def _config_keys() -> list[str]:
    return [f.name for f in fields(ServercoreConfig) if not f.name.startswith("_")]


def get_config_path() -> Path:
    """Get the CLI config file path.

    Returns:
        Path to ~/.servercore/config.yaml
    """
    return CONFIG_FILE


def load_config(path: str | Path | None = None) -> ServercoreConfig:
    """Load configuration.

    Precedence (highest to lowest):
    1. Environment variables (SERVERCORE_<KEY>)
    2. Config file (path, or ~/.servercore/config.yaml)
    3. Defaults

    Args:
        path: Explicit config file. Must exist when given.

    Returns:
        ServercoreConfig with values and sources

    Raises:
        ConfigError: Unreadable file, unknown key, or invalid value.
    """
    config = ServercoreConfig()
    sources: dict[str, str] = {key: "default" for key in _config_keys()}
    defaults = {key: getattr(config, key) for key in _config_keys()}

    config_path = Path(path).expanduser() if path else get_config_path()
    if path and not config_path.exists():
        raise ConfigError(message=f"Config file not found: {config_path}")

    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(message=f"Cannot read config file {config_path}: {e}") from e
        if not isinstance(file_config, dict):
            raise ConfigError(message=f"Config file {config_path} must contain a mapping")

        unknown = sorted(set(file_config) - set(defaults))
        if unknown:
            raise ConfigError(message=f"Unknown config keys in {config_path}: {', '.join(unknown)}")

        for key, raw in file_config.items():
            setattr(config, key, _coerce(key, raw, defaults[key]))
            sources[key] = "config file"

    # Override with environment variables
    for key in _config_keys():
        env_name = ENV_PREFIX + key.upper()
        if os.environ.get(env_name):
            setattr(config, key, _coerce(key, os.environ[env_name], defaults[key]))
            sources[key] = "environment"

    config._sources = sources
    config.validate()
    return config


def config_as_dict(config: ServercoreConfig) -> dict[str, Any]:
    """Plain dict view of a config, for display."""
    data: dict[str, Any] = {}
    for key in _config_keys():
        value = getattr(config, key)
        data[key] = str(value) if isinstance(value, Path) else value
    data["project_dir"] = str(config.project_dir)
    return data
