"""Provisioning facade.

The Orchestrator ties the pieces together for one deployment identity:
take the run lock, build the plan, load the execution record, run the
engine, verify service health after a successful deploy, and summarize the
outcome in a DeploymentReport. The report is safe to print: it carries a
masked view of the credentials, never their values.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..config import ServercoreConfig
from ..errors import (
    EXIT_DEGRADED,
    EXIT_FATAL,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PARTIAL_FAILURE,
    ConfigError,
    FatalError,
    ProvisioningError,
)
from ..shared.lock import DeploymentLock
from ..shared.logging import get_logger
from ..shared.paths import ensure_deployment_dir, get_lock_file, get_record_file, get_secrets_file
from .adapters import AptPackageManager, ComposeRuntime, Fail2banJails, SystemdServices, UfwFirewall
from .engine import ExecutionEngine, PhaseResult, RetryPolicy, RunStatus
from .health import HealthStatus, HealthVerifier, HttpProbe
from .host import Host
from .record import ExecutionRecord, StepRecord
from .renderer import ConfigRenderer
from .secrets import SecretStore
from .steps import Phase, ProvisioningPlan, StepContext, StepRegistry
from .topology import ServiceTopology

logger = get_logger(__name__)

HEALTH_ENDPOINT = "endpoint"


class ReportStatus(Enum):
    """Overall outcome of a provisioning run."""

    SUCCESS = "success"
    DEGRADED = "degraded"  # Deployed, some service not healthy
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return {
            ReportStatus.SUCCESS: EXIT_OK,
            ReportStatus.DEGRADED: EXIT_DEGRADED,
            ReportStatus.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
            ReportStatus.FATAL: EXIT_FATAL,
            ReportStatus.INTERRUPTED: EXIT_INTERRUPTED,
        }[self]


@dataclass
class DeploymentReport:
    """Outcome of Orchestrator.provision."""

    identity: str
    status: ReportStatus
    phases: list[PhaseResult] = field(default_factory=list)
    configuration: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, str] = field(default_factory=dict)
    health: dict[str, HealthStatus] = field(default_factory=dict)
    notices: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None
    dry_run: bool = False

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "identity": self.identity,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "phases": [phase.to_dict() for phase in self.phases],
            "configuration": dict(self.configuration),
            "credentials": dict(self.credentials),
            "health": {name: status.to_dict() for name, status in self.health.items()},
            "notices": list(self.notices),
        }
        if self.error:
            data["error"] = dict(self.error)
        return data


class Orchestrator:
    """Provision one deployment identity: install -> configure -> deploy."""

    def __init__(
        self,
        config: ServercoreConfig,
        host: Host,
        registry: StepRegistry,
        topology: ServiceTopology,
        renderer: ConfigRenderer | None = None,
        secrets: SecretStore | None = None,
        verifier: HealthVerifier | None = None,
        retry_sleep: Callable[[float], None] | None = None,
    ):
        """Initialize orchestrator.

        Args:
            config: Provisioning configuration.
            host: Target host.
            registry: Declared steps.
            topology: Desired services.
            renderer: Template renderer (defaults to the packaged templates).
            secrets: Secret store (defaults to the identity's file store).
            verifier: Health verifier (defaults to compose + HTTP probes).
            retry_sleep: Sleep between step retries (injectable for tests).
        """
        self.config = config
        self.host = host
        self.identity = host.identity
        self.registry = registry
        self.topology = topology
        self.renderer = renderer or ConfigRenderer()
        self.secrets = secrets or SecretStore(
            self.identity, get_secrets_file(self.identity, config.state_dir)
        )
        self.runtime = ComposeRuntime(host, config.project_dir)
        self.verifier = verifier
        self.retry_sleep = retry_sleep

    @property
    def record_path(self) -> Path:
        return get_record_file(self.identity, self.config.state_dir)

    def context(self) -> StepContext:
        return StepContext(
            host=self.host,
            config=self.config,
            secrets=self.secrets,
            renderer=self.renderer,
            topology=self.topology,
            packages=AptPackageManager(self.host),
            runtime=self.runtime,
            firewall=UfwFirewall(self.host),
            jails=Fail2banJails(self.host, self.renderer),
            services=SystemdServices(self.host),
        )

    def plan(self, phases: Iterable[Phase]) -> ProvisioningPlan:
        return self.registry.build_plan(phases, self.identity)

    def load_record(self) -> ExecutionRecord:
        return ExecutionRecord.load(self.identity, self.record_path)

    def status(self) -> list[tuple[str, StepRecord]]:
        """Recorded state of every declared step, plus stale record entries."""
        record = self.load_record()
        known = [step.id for step in self.registry.all_steps()]
        rows = [(step_id, record.get(step_id)) for step_id in known]
        rows += [(step_id, entry) for step_id, entry in record.items() if step_id not in known]
        return rows

    def configuration_summary(self) -> dict[str, Any]:
        """Non-secret configuration for the report."""
        return {
            "target": self.identity,
            "project_name": self.config.project_name,
            "project_dir": str(self.config.project_dir),
            "domain": self.config.domain,
            "admin_user": self.config.admin_user,
            "ssh_port": self.config.ssh_port,
            "nextcloud_admin": self.config.nextcloud_admin,
            "timezone": self.config.timezone,
            "services": self.topology.start_order(),
        }

    def provision(
        self,
        phases: Iterable[Phase],
        force_steps: Iterable[str] = (),
        dry_run: bool = False,
        cancel: threading.Event | None = None,
        on_health_poll: Callable[[int, dict[str, HealthStatus]], None] | None = None,
    ) -> DeploymentReport:
        """Run the requested phases under the deployment lock.

        Raises:
            LockHeldError: Another run holds the lock of this identity.
        """
        ensure_deployment_dir(self.identity, self.config.state_dir)
        with DeploymentLock(get_lock_file(self.identity, self.config.state_dir)):
            logger.info("provision.started", identity=self.identity, dry_run=dry_run)
            report = self._provision(list(phases), list(force_steps), dry_run, cancel, on_health_poll)
            logger.info("provision.finished", identity=self.identity, status=report.status.value)
            return report

    def _provision(
        self,
        phases: list[Phase],
        force_steps: list[str],
        dry_run: bool,
        cancel: threading.Event | None,
        on_health_poll: Callable[[int, dict[str, HealthStatus]], None] | None,
    ) -> DeploymentReport:
        ctx = self.context()
        report = DeploymentReport(
            identity=self.identity, status=ReportStatus.SUCCESS, dry_run=dry_run
        )

        try:
            report.configuration = self.configuration_summary()
            plan = self.plan(phases)
            unknown = [step_id for step_id in force_steps if step_id not in plan.step_ids]
            if unknown:
                raise ConfigError(message=f"Forced steps not in plan: {', '.join(unknown)}")
            record = self.load_record()
            engine = ExecutionEngine(
                ctx,
                record,
                retry=RetryPolicy.from_config(self.config),
                sleep=self.retry_sleep,
                redact=self.secrets.redact,
            )
            result = engine.run(plan, force=force_steps, dry_run=dry_run, cancel=cancel)
        except FatalError as e:
            logger.error("provision.fatal", kind=e.kind, error=self.secrets.redact(e.message))
            report.status = ReportStatus.FATAL
            report.error = self._describe(e)
            report.credentials = self._credentials()
            return report

        report.phases = result.phases
        report.notices = list(ctx.notices)
        report.status = {
            RunStatus.SUCCESS: ReportStatus.SUCCESS,
            RunStatus.PARTIAL_FAILURE: ReportStatus.PARTIAL_FAILURE,
            RunStatus.FATAL: ReportStatus.FATAL,
            RunStatus.INTERRUPTED: ReportStatus.INTERRUPTED,
        }[result.status]
        if result.error:
            report.error = self._describe(result.error)

        if (
            not dry_run
            and Phase.DEPLOY in plan.phases
            and result.phase_succeeded(Phase.DEPLOY)
            and not (cancel is not None and cancel.is_set())
        ):
            report.health = self.verify_health(on_health_poll)
            if not all(status.healthy for status in report.health.values()):
                report.status = ReportStatus.DEGRADED

        report.credentials = self._credentials()
        return report

    def _describe(self, error: ProvisioningError) -> dict[str, Any]:
        data = error.describe()
        data["message"] = self.secrets.redact(data["message"])
        return data

    def _credentials(self) -> dict[str, str]:
        try:
            return self.secrets.redacted_view()
        except FatalError:
            return {}

    def verify_health(
        self, on_poll: Callable[[int, dict[str, HealthStatus]], None] | None = None
    ) -> dict[str, HealthStatus]:
        """Poll the topology's services (and the HTTP endpoint, if configured)."""
        services = self.topology.start_order()
        verifier = self.verifier
        if verifier is None:
            probes = {}
            if self.config.health_url:
                probes[HEALTH_ENDPOINT] = HttpProbe(self.config.health_url)
            verifier = HealthVerifier(self.runtime.health_probe, probes=probes)
        if self.config.health_url:
            services.append(HEALTH_ENDPOINT)
        return verifier.wait_until_ready_sync(
            services,
            timeout=self.config.health_timeout,
            poll_interval=self.config.health_poll_interval,
            on_poll=on_poll,
        )
