"""Error taxonomy for provisioning.

Errors carry a machine-readable ``kind`` and a ``retryable`` flag so the
execution engine can decide between retrying, failing a step, and aborting
the whole run:

- TransientError: retried with bounded exponential backoff.
- PermanentError: the step is marked failed, no retry.
- FatalError (and subclasses): programming or configuration errors, the run
  aborts immediately.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Any

# Exit codes reported by the CLI
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 3
EXIT_DEGRADED = 4
EXIT_LOCKED = 75
EXIT_INTERRUPTED = 130


@dataclass(eq=False)
class ProvisioningError(Exception):
    """Base error class for provisioning errors."""

    message: str
    kind: str = "error"
    retryable: bool = False
    step_id: str | None = None

    def __str__(self) -> str:
        return self.message

    def describe(self) -> dict[str, Any]:
        """Convert to a dict suitable for reports."""
        data: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.step_id:
            data["step"] = self.step_id
        return data


@dataclass(eq=False)
class TransientError(ProvisioningError):
    """Temporary environment failure (network, lock contention, mirror outage)."""

    kind: str = "transient"
    retryable: bool = True


@dataclass(eq=False)
class PermanentError(ProvisioningError):
    """Environment failure that will not go away by retrying."""

    kind: str = "permanent"


@dataclass(eq=False)
class LockHeldError(TransientError):
    """Another run holds the lock for this deployment identity."""

    kind: str = "lock_held"
    lock_path: str = ""


@dataclass(eq=False)
class FatalError(ProvisioningError):
    """Error that aborts the run immediately."""

    kind: str = "fatal"


@dataclass(eq=False)
class CyclicDependencyError(FatalError):
    """The step dependency graph contains a cycle."""

    kind: str = "cyclic_dependency"
    cycle: tuple[str, ...] = ()


@dataclass(eq=False)
class StepDefinitionError(FatalError):
    """Invalid step declaration (duplicate id, unknown or forward dependency)."""

    kind: str = "step_definition"


@dataclass(eq=False)
class RenderError(FatalError):
    """Template missing, undefined binding, or template syntax error."""

    kind: str = "render"
    template_id: str = ""


@dataclass(eq=False)
class PersistError(FatalError):
    """Writing an artifact to disk failed after retries."""

    kind: str = "persist"
    path: str = ""


@dataclass(eq=False)
class PostconditionViolation(FatalError):
    """A step applied without error but its idempotence check still fails."""

    kind: str = "postcondition"


@dataclass(eq=False)
class SecretBackendError(FatalError):
    """Secret material could not be persisted or loaded."""

    kind: str = "secret_backend"


@dataclass(eq=False)
class RecordCorruptError(FatalError):
    """The persisted execution record cannot be parsed."""

    kind: str = "record_corrupt"
    path: str = ""


@dataclass(eq=False)
class ConfigError(FatalError):
    """Invalid configuration file or value."""

    kind: str = "config"


@dataclass(eq=False)
class CommandError(Exception):
    """A command run on the target host failed."""

    argv: list[str] = field(default_factory=list)
    returncode: int | None = None
    stderr: str = ""
    stdout: str = ""
    timed_out: bool = False

    def __str__(self) -> str:
        command = shlex.join(self.argv) if self.argv else "<command>"
        if self.timed_out:
            return f"{command} timed out"
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
        suffix = f": {detail}" if detail else ""
        return f"{command} exited with {self.returncode}{suffix}"


# Output fragments of apt, dpkg, curl, docker and ssh that indicate a
# condition worth retrying.
TRANSIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"could not get lock",
        r"unable to acquire the dpkg frontend lock",
        r"temporary failure (in name resolution|resolving)",
        r"could not resolve host",
        r"connection (timed out|reset|refused)",
        r"operation timed out",
        r"i/o timeout",
        r"tls handshake timeout",
        r"failed to fetch .* (5\d\d|connection)",
        r"503 service unavailable",
        r"502 bad gateway",
        r"too many requests",
        r"toomanyrequests",
        r"net/http: request canceled",
    )
]

# ssh reserves exit code 255 for its own (connection) failures
SSH_CONNECTION_FAILURE = 255


def classify_command_error(error: CommandError, step_id: str | None = None) -> ProvisioningError:
    """Map a failed command to TransientError or PermanentError.

    Args:
        error: The failed command.
        step_id: Step that ran the command, for reporting.

    Returns:
        TransientError for retryable conditions, PermanentError otherwise.
    """
    message = str(error)
    if error.timed_out or error.returncode == SSH_CONNECTION_FAILURE:
        return TransientError(message=message, step_id=step_id)

    output = f"{error.stderr}\n{error.stdout}"
    for pattern in TRANSIENT_PATTERNS:
        if pattern.search(output):
            return TransientError(message=message, step_id=step_id)

    return PermanentError(message=message, step_id=step_id)
