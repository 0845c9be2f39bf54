"""Adapters for the system services provisioning drives.

Each adapter wraps one command-line tool on the target host (apt, docker
compose, ufw, fail2ban, systemd) and exposes apply/check pairs the stack
steps build on. Commands go through ``Host.run`` so failures surface as
``CommandError`` and are classified by the engine.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from ..shared.logging import get_logger
from .health import HealthState
from .host import Host
from .renderer import ConfigRenderer
from .topology import ServiceTopology

logger = get_logger(__name__)

APT_ENV = ["env", "DEBIAN_FRONTEND=noninteractive", "NEEDRESTART_MODE=a"]
APT_UPDATE_STAMP = PurePosixPath("/var/lib/apt/servercore-update-stamp")


class AptPackageManager:
    """Install Debian packages non-interactively."""

    def __init__(self, host: Host):
        self.host = host

    def update_index(self) -> None:
        self.host.run([*APT_ENV, "apt-get", "update", "-q"])
        self.host.run(["touch", str(APT_UPDATE_STAMP)])

    def index_is_fresh(self, max_age_minutes: int = 1440) -> bool:
        """True when the index was updated by us within max_age_minutes."""
        result = self.host.run(
            ["find", str(APT_UPDATE_STAMP), "-maxdepth", "0", "-mmin", f"-{max_age_minutes}"],
            check=False,
        )
        return result.ok and bool(result.stdout.strip())

    def install(self, names: Iterable[str]) -> None:
        names = list(names)
        if not names:
            return
        self.host.run(
            [
                *APT_ENV,
                "apt-get",
                "install",
                "-y",
                "-q",
                "-o",
                "Dpkg::Options::=--force-confdef",
                "-o",
                "Dpkg::Options::=--force-confold",
                *names,
            ]
        )

    def missing(self, names: Iterable[str]) -> list[str]:
        """Packages of names that are not fully installed."""
        missing = []
        for name in names:
            result = self.host.run(
                ["dpkg-query", "-W", "-f=${Status}", name], check=False
            )
            if not result.ok or result.stdout.strip() != "install ok installed":
                missing.append(name)
        return missing

    def is_installed(self, names: Iterable[str]) -> bool:
        return not self.missing(names)


class ServiceState(Enum):
    """Container state reported by docker compose."""

    RUNNING = "running"
    EXITED = "exited"
    MISSING = "missing"


def parse_compose_ps(output: str) -> list[dict[str, Any]]:
    """Parse ``docker compose ps --format json`` output.

    Older compose releases print a JSON array, newer ones one object per
    line. Unparseable lines are ignored.

    >>> parse_compose_ps('{"Service": "db", "State": "running"}')
    [{'Service': 'db', 'State': 'running'}]
    >>> parse_compose_ps('[{"Service": "db"}]')
    [{'Service': 'db'}]
    """
    output = output.strip()
    if not output:
        return []
    if output.startswith("["):
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            return []
        return [item for item in data if isinstance(item, dict)]

    entries = []
    for line in output.splitlines():
        if line.strip():
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                entries.append(item)
    return entries


class ComposeRuntime:
    """Manage the docker-compose project on the host."""

    def __init__(
        self,
        host: Host,
        project_dir: PurePosixPath | str,
        compose_file: str = "docker-compose.yml",
    ):
        """Initialize compose runtime.

        Args:
            host: Host the project lives on.
            project_dir: Directory holding the compose file and .env.
            compose_file: Compose file name inside project_dir.
        """
        self.host = host
        self.project_dir = PurePosixPath(project_dir)
        self.compose_file = self.project_dir / compose_file

    def _compose(self, *args: str) -> list[str]:
        return [
            "docker",
            "compose",
            "--project-directory",
            str(self.project_dir),
            "-f",
            str(self.compose_file),
            *args,
        ]

    def pull(self) -> None:
        self.host.run(self._compose("pull", "--quiet"))

    def images_present(self, topology: ServiceTopology) -> bool:
        return all(
            self.host.test(["docker", "image", "inspect", image]) for image in topology.images
        )

    def apply_topology(self, topology: ServiceTopology) -> None:
        """Create or update containers to match the compose file."""
        logger.info("compose.up", project=topology.project_name, services=topology.names)
        self.host.run(self._compose("up", "-d", "--remove-orphans"))

    def ps(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """Containers of the project, as reported by docker compose."""
        if not self.host.exists(self.compose_file, timeout=timeout):
            return []
        result = self.host.run(self._compose("ps", "--all", "--format", "json"), timeout=timeout, check=False)
        if not result.ok:
            logger.debug("compose.ps_failed", stderr=result.stderr.strip())
            return []
        return parse_compose_ps(result.stdout)

    def _entry(self, name: str, timeout: float | None = None) -> dict[str, Any] | None:
        for entry in self.ps(timeout):
            if entry.get("Service", entry.get("Name")) == name:
                return entry
        return None

    def service_status(self, name: str) -> ServiceState:
        entry = self._entry(name)
        if entry is None:
            return ServiceState.MISSING
        if entry.get("State") == "running":
            return ServiceState.RUNNING
        return ServiceState.EXITED

    def health_probe(self, name: str, timeout: float | None = None) -> HealthState:
        """Health of a service's container.

        Containers without a health check count as healthy while running.
        Each docker command is bounded by timeout when given.
        """
        entry = self._entry(name, timeout)
        if entry is None:
            return HealthState.UNKNOWN
        state = entry.get("State", "")
        health = entry.get("Health", "")
        if state in ("created", "restarting"):
            return HealthState.STARTING
        if state != "running":
            return HealthState.UNHEALTHY
        if health in ("", "healthy"):
            return HealthState.HEALTHY
        if health == "starting":
            return HealthState.STARTING
        return HealthState.UNHEALTHY

    def down(self, remove_volumes: bool = False) -> None:
        args = ["down"]
        if remove_volumes:
            args.append("-v")
        self.host.run(self._compose(*args))

    def logs(self, service: str | None = None, tail: int = 100) -> str:
        args = ["logs", "--no-color", "--tail", str(tail)]
        if service:
            args.append(service)
        return self.host.run(self._compose(*args)).stdout


@dataclass(frozen=True)
class FirewallRule:
    """Allow incoming traffic on one port."""

    port: int
    proto: str = "tcp"
    comment: str = ""

    @property
    def key(self) -> tuple[int, str]:
        return (self.port, self.proto)


@dataclass(frozen=True)
class RuleSet:
    """Complete firewall policy: defaults plus allowed ports."""

    allow: tuple[FirewallRule, ...] = ()
    default_incoming: str = "deny"
    default_outgoing: str = "allow"
    unrecognized: tuple[str, ...] = field(default=(), compare=False)

    def equivalent(self, other: RuleSet | None) -> bool:
        """Same defaults and the same allowed ports; comments are ignored."""
        if other is None or self.unrecognized or other.unrecognized:
            return False
        return (
            self.default_incoming == other.default_incoming
            and self.default_outgoing == other.default_outgoing
            and {r.key for r in self.allow} == {r.key for r in other.allow}
        )


_UFW_DEFAULT_RE = re.compile(r"^Default:\s*(\w+) \(incoming\),\s*(\w+) \(outgoing\)")
_UFW_ALLOW_RE = re.compile(
    r"^(?P<port>\d+)/(?P<proto>tcp|udp)(?: \(v6\))?\s+ALLOW IN\s+Anywhere(?: \(v6\))?"
    r"(?:\s+#\s*(?P<comment>.*))?$"
)


def parse_ufw_status(output: str) -> RuleSet | None:
    """Parse ``ufw status verbose``; None when the firewall is inactive."""
    lines = [line.rstrip() for line in output.splitlines()]
    if not any(line.strip() == "Status: active" for line in lines):
        return None

    incoming, outgoing = "", ""
    allow: dict[tuple[int, str], FirewallRule] = {}
    unrecognized: list[str] = []
    in_table = False
    for line in lines:
        match = _UFW_DEFAULT_RE.match(line)
        if match:
            incoming, outgoing = match.group(1), match.group(2)
            continue
        if line.startswith("--"):
            in_table = True
            continue
        if not in_table or not line.strip():
            continue
        match = _UFW_ALLOW_RE.match(line)
        if match:
            rule = FirewallRule(
                int(match.group("port")), match.group("proto"), (match.group("comment") or "").strip()
            )
            allow.setdefault(rule.key, rule)
        else:
            unrecognized.append(line.strip())

    return RuleSet(
        allow=tuple(allow.values()),
        default_incoming=incoming,
        default_outgoing=outgoing,
        unrecognized=tuple(unrecognized),
    )


class UfwFirewall:
    """Manage the host firewall with ufw."""

    def __init__(self, host: Host):
        self.host = host

    def set_rules(self, rules: RuleSet) -> None:
        """Replace the whole rule set and enable the firewall."""
        self.host.run(["ufw", "--force", "reset"])
        self.host.run(["ufw", "default", rules.default_incoming, "incoming"])
        self.host.run(["ufw", "default", rules.default_outgoing, "outgoing"])
        for rule in rules.allow:
            argv = ["ufw", "allow", f"{rule.port}/{rule.proto}"]
            if rule.comment:
                argv += ["comment", rule.comment]
            self.host.run(argv)
        self.host.run(["ufw", "--force", "enable"])
        logger.info("firewall.applied", allow=[f"{r.port}/{r.proto}" for r in rules.allow])

    def current_rules(self) -> RuleSet | None:
        result = self.host.run(["ufw", "status", "verbose"], check=False)
        if not result.ok:
            return None
        return parse_ufw_status(result.stdout)


@dataclass(frozen=True)
class JailPolicy:
    """fail2ban jail settings."""

    port: str
    logpath: str | None = None
    maxretry: int = 5
    bantime: int = 3600
    findtime: int = 600
    filter: str | None = None
    backend: str | None = None


JAIL_DIR = PurePosixPath("/etc/fail2ban/jail.d")
FILTER_DIR = PurePosixPath("/etc/fail2ban/filter.d")


class Fail2banJails:
    """Manage fail2ban jails as drop-in files."""

    def __init__(self, host: Host, renderer: ConfigRenderer):
        self.host = host
        self.renderer = renderer

    @staticmethod
    def jail_path(service: str) -> PurePosixPath:
        return JAIL_DIR / f"servercore-{service}.local"

    @staticmethod
    def filter_path(name: str) -> PurePosixPath:
        return FILTER_DIR / f"{name}.conf"

    def render_jail(self, service: str, policy: JailPolicy) -> bytes:
        return self.renderer.render("fail2ban-jail.local", {"name": service, "policy": policy})

    def render_filter(self, name: str, failregex: Iterable[str]) -> bytes:
        return self.renderer.render("fail2ban-filter.conf", {"name": name, "failregex": list(failregex)})

    def configure_jail(self, service: str, policy: JailPolicy) -> bool:
        """Write the jail file. Returns True when its content changed."""
        content = self.render_jail(service, policy)
        path = self.jail_path(service)
        if self.host.read_file(path) == content:
            return False
        self.host.put_file(path, content, mode=0o644)
        return True

    def jail_applied(self, service: str, policy: JailPolicy) -> bool:
        return self.host.read_file(self.jail_path(service)) == self.render_jail(service, policy)

    def ensure_filter(self, name: str, failregex: Iterable[str]) -> bool:
        """Write a filter definition. Returns True when its content changed."""
        content = self.render_filter(name, failregex)
        path = self.filter_path(name)
        if self.host.read_file(path) == content:
            return False
        self.host.put_file(path, content, mode=0o644)
        return True

    def filter_applied(self, name: str, failregex: Iterable[str]) -> bool:
        return self.host.read_file(self.filter_path(name)) == self.render_filter(name, failregex)

    def reload(self) -> None:
        """Start fail2ban if needed, then reload its configuration."""
        if not self.host.test(["systemctl", "is-active", "--quiet", "fail2ban"]):
            self.host.run(["systemctl", "enable", "--now", "fail2ban"])
            return
        self.host.run(["fail2ban-client", "reload"])


class SystemdServices:
    """Start and query systemd units."""

    def __init__(self, host: Host):
        self.host = host

    def enable_now(self, unit: str) -> None:
        self.host.run(["systemctl", "enable", "--now", unit])

    def restart(self, unit: str) -> None:
        self.host.run(["systemctl", "restart", unit])

    def is_active(self, unit: str) -> bool:
        return self.host.test(["systemctl", "is-active", "--quiet", unit])
