"""Typed service topology.

A ServiceTopology is the desired set of containers. It is converted to a
docker-compose document by ``to_compose`` and written by the configuration
renderer. Secret values never appear in the compose document: environment
bindings reference secrets by key (``SecretRef``) and are rendered as
``${VAR}`` references resolved by compose from the restricted env file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from ..errors import ConfigError, ProvisioningError
from .graph import topological_order


@dataclass(frozen=True)
class SecretRef:
    """Environment binding to a secret, by secret key."""

    key: str


@dataclass(frozen=True)
class EnvRef:
    """Environment binding to a plain variable of the env file."""

    name: str


EnvValue = Union[str, SecretRef, EnvRef]


@dataclass
class HealthCheckSpec:
    """Container health-check descriptor."""

    test: list[str]
    interval: str = "30s"
    timeout: str = "10s"
    retries: int = 3
    start_period: str | None = None

    def to_compose(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "test": list(self.test),
            "interval": self.interval,
            "timeout": self.timeout,
            "retries": self.retries,
        }
        if self.start_period:
            data["start_period"] = self.start_period
        return data


@dataclass
class ServiceSpec:
    """One service of the topology."""

    name: str
    image: str
    container_name: str | None = None
    environment: dict[str, EnvValue] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)
    ports: list[str] = field(default_factory=list)
    command: str | list[str] | None = None
    depends_on: dict[str, str] = field(default_factory=dict)  # service -> condition
    healthcheck: HealthCheckSpec | None = None
    restart: str = "unless-stopped"
    security_opt: list[str] = field(default_factory=lambda: ["no-new-privileges:true"])


@dataclass
class ServiceTopology:
    """Desired services, networks and secret variable names."""

    project_name: str
    services: list[ServiceSpec] = field(default_factory=list)
    networks: dict[str, dict[str, Any]] = field(default_factory=dict)
    secret_env: dict[str, str] = field(default_factory=dict)  # secret key -> env var

    def service(self, name: str) -> ServiceSpec:
        for spec in self.services:
            if spec.name == name:
                return spec
        raise KeyError(name)

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self.services]

    @property
    def images(self) -> list[str]:
        return list(dict.fromkeys(spec.image for spec in self.services))

    def secret_keys(self) -> list[str]:
        """Secret keys referenced by any service, sorted."""
        keys = {
            value.key
            for spec in self.services
            for value in spec.environment.values()
            if isinstance(value, SecretRef)
        }
        return sorted(keys)

    def validate(self) -> None:
        """Check names, dependencies, networks and secret bindings.

        Raises:
            ConfigError: The topology is inconsistent.
        """
        names = self.names
        if len(set(names)) != len(names):
            raise ConfigError(message=f"Duplicate service names in topology: {names}")
        for spec in self.services:
            for dep in spec.depends_on:
                if dep not in names:
                    raise ConfigError(message=f"Service {spec.name!r} depends on unknown {dep!r}")
            for network in spec.networks:
                if network not in self.networks:
                    raise ConfigError(message=f"Service {spec.name!r} uses undeclared network {network!r}")
        for key in self.secret_keys():
            if key not in self.secret_env:
                raise ConfigError(message=f"Secret {key!r} has no environment variable name")
        self.start_order()

    def start_order(self) -> list[str]:
        """Service names ordered so dependencies start first."""
        try:
            return topological_order(
                self.names, {spec.name: spec.depends_on.keys() for spec in self.services}
            )
        except ProvisioningError as e:
            raise ConfigError(message=f"Invalid service dependencies: {e.message}") from e

    def _env_value(self, value: EnvValue) -> str:
        if isinstance(value, SecretRef):
            return "${" + self.secret_env[value.key] + "}"
        if isinstance(value, EnvRef):
            return "${" + value.name + "}"
        return str(value)

    def _service_dict(self, spec: ServiceSpec) -> dict[str, Any]:
        data: dict[str, Any] = {"image": spec.image}
        if spec.container_name:
            data["container_name"] = spec.container_name
        data["restart"] = spec.restart
        if spec.environment:
            data["environment"] = {k: self._env_value(v) for k, v in spec.environment.items()}
        if spec.command is not None:
            data["command"] = spec.command
        if spec.ports:
            data["ports"] = list(spec.ports)
        if spec.volumes:
            data["volumes"] = list(spec.volumes)
        if spec.networks:
            data["networks"] = list(spec.networks)
        if spec.depends_on:
            data["depends_on"] = {dep: {"condition": cond} for dep, cond in spec.depends_on.items()}
        if spec.security_opt:
            data["security_opt"] = list(spec.security_opt)
        if spec.healthcheck:
            data["healthcheck"] = spec.healthcheck.to_compose()
        return data

    def to_compose(self) -> dict[str, Any]:
        """Build the docker-compose structure, services in start order."""
        self.validate()
        compose: dict[str, Any] = {
            "name": self.project_name,
            "services": {name: self._service_dict(self.service(name)) for name in self.start_order()},
        }
        if self.networks:
            compose["networks"] = {name: dict(opts) for name, opts in self.networks.items()}
        return compose
