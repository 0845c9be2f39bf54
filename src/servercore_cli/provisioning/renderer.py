"""Configuration rendering.

Templates live in the package's ``templates`` directory as
``<template_id>.j2``. Rendering is a pure function of the template id and
the bindings: no clock, no randomness, stable key order in the YAML and
JSON filters. Re-running the configure phase without changes therefore
produces byte-identical files and the idempotence checks compare equal.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import jinja2
import yaml
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import PersistError, RenderError
from ..shared.files import atomic_write
from ..shared.logging import get_logger

logger = get_logger(__name__)

TEMPLATE_SUFFIX = ".j2"


def to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, default_flow_style=False, sort_keys=False, width=1000)


def to_json(value: Any, indent: int = 2) -> str:
    return json.dumps(value, indent=indent)


def restrict_mode(mode: int) -> int:
    """Drop group-write and all 'other' bits from a mode.

    >>> oct(restrict_mode(0o644))
    '0o640'
    >>> oct(restrict_mode(0o600))
    '0o600'
    """
    return mode & 0o750


class ConfigRenderer:
    """Render templates to bytes and write them atomically."""

    def __init__(
        self,
        loader: jinja2.BaseLoader | None = None,
        persist_attempts: int = 3,
        persist_base_delay: float = 0.5,
        persist_max_delay: float = 5.0,
        sleep: Callable[[float], None] | None = None,
    ):
        self.env = jinja2.Environment(
            loader=loader or jinja2.PackageLoader("servercore_cli", "templates"),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        self.env.filters["to_yaml"] = to_yaml
        self.env.filters["to_json"] = to_json
        self.persist_attempts = persist_attempts
        self.persist_base_delay = persist_base_delay
        self.persist_max_delay = persist_max_delay
        self._sleep = sleep

    def template_ids(self) -> list[str]:
        return sorted(
            name[: -len(TEMPLATE_SUFFIX)]
            for name in self.env.list_templates()
            if name.endswith(TEMPLATE_SUFFIX)
        )

    def render(self, template_id: str, bindings: Mapping[str, Any]) -> bytes:
        """Render a template.

        Args:
            template_id: Template name without the .j2 suffix (e.g. "nginx.conf").
            bindings: Template variables.

        Returns:
            Rendered artifact as UTF-8 bytes.

        Raises:
            RenderError: Unknown template, undefined binding, or syntax error.
        """
        try:
            template = self.env.get_template(template_id + TEMPLATE_SUFFIX)
            text = template.render(**bindings)
        except jinja2.TemplateNotFound:
            raise RenderError(
                message=f"Unknown template {template_id!r}", template_id=template_id
            ) from None
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(
                message=f"Template {template_id!r} line {e.lineno}: {e.message}",
                template_id=template_id,
            ) from e
        except jinja2.UndefinedError as e:
            raise RenderError(
                message=f"Template {template_id!r}: {e.message}", template_id=template_id
            ) from e
        return text.encode()

    def write(self, path: Path, artifact: bytes, mode: int = 0o644, secret: bool = False) -> None:
        """Atomically replace path with artifact.

        Args:
            path: Target file.
            artifact: Rendered content.
            mode: Permission bits of the final file.
            secret: The artifact embeds secret material; mode is restricted.

        Raises:
            PersistError: Writing kept failing after bounded retries.
        """
        path = Path(path)
        if secret:
            mode = restrict_mode(mode)

        retrying_kwargs: dict[str, Any] = {
            "retry": retry_if_exception_type(PersistError),
            "stop": stop_after_attempt(self.persist_attempts),
            "wait": wait_exponential(
                multiplier=self.persist_base_delay, max=self.persist_max_delay
            ),
            "reraise": True,
        }
        if self._sleep is not None:
            retrying_kwargs["sleep"] = self._sleep

        for attempt in Retrying(**retrying_kwargs):
            with attempt:
                try:
                    atomic_write(path, artifact, mode)
                except OSError as e:
                    logger.warning(
                        "render.write_failed",
                        path=str(path),
                        attempt=attempt.retry_state.attempt_number,
                        error=str(e),
                    )
                    raise PersistError(message=f"Cannot write {path}: {e}", path=str(path)) from e

        logger.debug("render.written", path=str(path), mode=oct(mode), size=len(artifact))
