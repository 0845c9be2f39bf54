"""Path management for servercore-cli.

Manages the ~/.servercore/ directory structure. Every deployment identity
gets its own directory holding the execution record, the secret store and
the run lock.
"""

import re
from pathlib import Path

# Base directory for all servercore data
SERVERCORE_DIR = Path.home() / ".servercore"

# CLI config file
CONFIG_FILE = SERVERCORE_DIR / "config.yaml"

# Per-identity state lives below this directory
DEPLOYMENTS_DIR = SERVERCORE_DIR / "deployments"

RECORD_FILE_NAME = "record.json"
SECRETS_FILE_NAME = "secrets.yaml"
LOCK_FILE_NAME = ".lock"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def identity_dir_name(identity: str) -> str:
    """Map a deployment identity to a safe directory name.

    >>> identity_dir_name("cloud.example.net")
    'cloud.example.net'
    >>> identity_dir_name("fe80::1")
    'fe80__1'
    """
    name = _UNSAFE_CHARS.sub("_", identity.strip())
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid deployment identity: {identity!r}")
    return name


def deployment_dir(identity: str, state_dir: Path | None = None) -> Path:
    """Get the state directory of a deployment identity."""
    return (state_dir or DEPLOYMENTS_DIR) / identity_dir_name(identity)


def ensure_deployment_dir(identity: str, state_dir: Path | None = None) -> Path:
    """Create the identity's state directory if missing.

    Directories are created with mode 0o700 (user-only access), since they
    hold secret material.
    """
    path = deployment_dir(identity, state_dir)
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    return path


def get_record_file(identity: str, state_dir: Path | None = None) -> Path:
    """Get path to the execution record of an identity."""
    return deployment_dir(identity, state_dir) / RECORD_FILE_NAME


def get_secrets_file(identity: str, state_dir: Path | None = None) -> Path:
    """Get path to the secret store of an identity."""
    return deployment_dir(identity, state_dir) / SECRETS_FILE_NAME


def get_lock_file(identity: str, state_dir: Path | None = None) -> Path:
    """Get path to the run lock of an identity."""
    return deployment_dir(identity, state_dir) / LOCK_FILE_NAME
