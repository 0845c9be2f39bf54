"""Shared modules for servercore-cli.

This module provides functionality used across the CLI and the
provisioning core:
- Paths (per-deployment state directories)
- Logging (structlog with secret redaction)
- Atomic file writes
- Per-deployment run lock
"""

from .files import atomic_write
from .lock import DeploymentLock
from .logging import configure_logging, get_logger, redactor
from .paths import (
    CONFIG_FILE,
    DEPLOYMENTS_DIR,
    SERVERCORE_DIR,
    deployment_dir,
    ensure_deployment_dir,
    get_lock_file,
    get_record_file,
    get_secrets_file,
)

__all__ = [
    # Paths
    "SERVERCORE_DIR",
    "CONFIG_FILE",
    "DEPLOYMENTS_DIR",
    "deployment_dir",
    "ensure_deployment_dir",
    "get_lock_file",
    "get_record_file",
    "get_secrets_file",
    # Files
    "atomic_write",
    # Locking
    "DeploymentLock",
    # Logging
    "configure_logging",
    "get_logger",
    "redactor",
]
