"""Secret generation and persistence.

Secrets are generated once per deployment identity and reused on every
later run: regenerating a database root password after the database was
initialized with the old one would lock the stack out of its own data.

The store is a YAML file with mode 0600 in the identity's state directory.
A value is persisted before it is handed out, so a later step can never see
a secret that would differ on the next run.
"""

from __future__ import annotations

import hmac
import secrets
import string
from dataclasses import dataclass
from pathlib import Path

import yaml

from ..errors import SecretBackendError
from ..shared.files import atomic_write
from ..shared.logging import REDACTED, get_logger, redactor

logger = get_logger(__name__)

DEFAULT_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class SecretSpec:
    """Shape of a generated secret."""

    length: int = 32
    alphabet: str = DEFAULT_ALPHABET

    def __post_init__(self) -> None:
        if self.length < 1:
            raise ValueError("Secret length must be positive")
        if len(set(self.alphabet)) < 2:
            raise ValueError("Secret alphabet needs at least two distinct characters")

    def generate(self) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(self.length))

    def accepts(self, value: str) -> bool:
        return len(value) == self.length and set(value) <= set(self.alphabet)


class SecretMaterial:
    """A secret value that does not print itself."""

    __slots__ = ("key", "_value")

    def __init__(self, key: str, value: str):
        self.key = key
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"SecretMaterial({self.key!r}, {REDACTED!r})"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretMaterial):
            return NotImplemented
        return self.key == other.key and hmac.compare_digest(self._value, other._value)

    def __hash__(self) -> int:
        return hash(self.key)


class SecretStore:
    """Secrets of one deployment identity.

    Args:
        identity: Deployment identity the secrets belong to.
        path: YAML file backing the store. None keeps secrets in memory.
    """

    def __init__(self, identity: str, path: Path | None = None):
        self.identity = identity
        self.path = path
        self._values: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._values is not None:
            return self._values

        values: dict[str, str] = {}
        if self.path is not None and self.path.exists():
            try:
                data = yaml.safe_load(self.path.read_text()) or {}
            except (OSError, yaml.YAMLError) as e:
                raise SecretBackendError(message=f"Cannot read secret store {self.path}: {e}") from e
            if not isinstance(data, dict) or not isinstance(data.get("secrets", {}), dict):
                raise SecretBackendError(message=f"Secret store {self.path} has an unexpected layout")
            stored_identity = data.get("identity")
            if stored_identity and stored_identity != self.identity:
                raise SecretBackendError(
                    message=f"Secret store {self.path} belongs to {stored_identity!r}"
                )
            values = {str(k): str(v) for k, v in data.get("secrets", {}).items()}

        redactor.register(*values.values())
        self._values = values
        return values

    def _persist(self, values: dict[str, str]) -> None:
        if self.path is None:
            return
        document = {"identity": self.identity, "secrets": dict(sorted(values.items()))}
        payload = yaml.safe_dump(document, default_flow_style=False, sort_keys=False).encode()
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write(self.path, payload, mode=0o600)
        except OSError as e:
            raise SecretBackendError(message=f"Cannot persist secret store {self.path}: {e}") from e

    def get_or_generate(self, key: str, spec: SecretSpec | None = None) -> SecretMaterial:
        """Return the stored secret for key, generating and persisting it first if needed.

        Raises:
            SecretBackendError: The store could not be read or written.
        """
        values = self._load()
        if key in values:
            return SecretMaterial(key, values[key])

        spec = spec or SecretSpec()
        value = spec.generate()
        updated = {**values, key: value}
        self._persist(updated)
        values[key] = value
        redactor.register(value)
        logger.info("secrets.generated", identity=self.identity, key=key, length=spec.length)
        return SecretMaterial(key, value)

    def get(self, key: str) -> SecretMaterial | None:
        values = self._load()
        if key not in values:
            return None
        return SecretMaterial(key, values[key])

    def has(self, *keys: str) -> bool:
        values = self._load()
        return all(key in values for key in keys)

    def keys(self) -> list[str]:
        return sorted(self._load())

    def export_env(self) -> dict[str, str]:
        """Clear values by key, for the configuration renderer only."""
        return dict(sorted(self._load().items()))

    def redacted_view(self) -> dict[str, str]:
        """Same keys as export_env, every value masked. Safe for logs and reports."""
        return {key: REDACTED for key in sorted(self._load())}

    def redact(self, text: str) -> str:
        """Mask every secret of this store that appears in text."""
        for value in sorted(self._load().values(), key=len, reverse=True):
            if value in text:
                text = text.replace(value, REDACTED)
        return text
