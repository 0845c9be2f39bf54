"""servercore application wiring.

Builds the orchestrator for one target from the CLI configuration: config,
host, renderer, step catalogue and service topology.
"""

from __future__ import annotations

import sys
from typing import Any

import click

from .config import ServercoreConfig, load_config
from .errors import EXIT_FATAL, ProvisioningError
from .provisioning.host import Host, make_host, parse_target
from .provisioning.orchestrator import Orchestrator
from .provisioning.renderer import ConfigRenderer
from .stack import build_stack


class ServercoreApplication:
    """Wire all components for one deployment target."""

    def __init__(self, config_path: str | None = None, target: str = "localhost", sudo: bool = False):
        """Initialize application.

        Args:
            config_path: Path to config file (optional)
            target: [user@]host[:port] to provision
            sudo: Prefix privileged commands with sudo -n

        Raises:
            ConfigError: Invalid configuration or service topology.
            StepDefinitionError: Invalid step catalogue.
            ValueError: Unparseable target.
        """
        self.config: ServercoreConfig = load_config(config_path)
        self.target = parse_target(target)
        self.renderer = ConfigRenderer()
        self.host: Host = make_host(self.target, sudo=sudo, renderer=self.renderer)
        self.registry, self.topology = build_stack(self.config)
        self.orchestrator = Orchestrator(
            self.config,
            self.host,
            self.registry,
            self.topology,
            renderer=self.renderer,
        )

    @property
    def identity(self) -> str:
        return self.host.identity


def load_application(obj: dict[str, Any], target: str, sudo: bool = False) -> ServercoreApplication:
    """Build the application for a CLI command, exiting on setup errors."""
    try:
        return ServercoreApplication(obj.get("config_path"), target=target, sudo=sudo)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--target") from e
    except ProvisioningError as e:
        click.echo(f"Error: [{e.kind}] {e.message}", err=True)
        sys.exit(EXIT_FATAL)
