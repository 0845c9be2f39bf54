"""Provisioning core.

This package provides the pieces a provisioning run is built from:
1. Steps, the step registry and plans (steps, graph)
2. Durable execution record (record)
3. Secret generation and persistence (secrets)
4. Template rendering (renderer)
5. Step execution with retries and resume (engine)
6. Service health polling (health)
7. Host command execution and system adapters (host, adapters)
8. The Orchestrator facade and its DeploymentReport (orchestrator)
"""

from .engine import ExecutionEngine, OutcomeStatus, PhaseResult, RetryPolicy, RunResult, StepOutcome
from .health import HealthState, HealthStatus, HealthVerifier, HttpProbe
from .host import CommandResult, Host, LocalHost, SshHost, Target, make_host, parse_target
from .orchestrator import DeploymentReport, Orchestrator, ReportStatus
from .record import ExecutionRecord, StepRecord, StepStatus
from .renderer import ConfigRenderer
from .secrets import SecretMaterial, SecretSpec, SecretStore
from .steps import Phase, ProvisioningPlan, ProvisioningStep, StepContext, StepRegistry
from .topology import ServiceSpec, ServiceTopology

__all__ = [
    # Steps
    "Phase",
    "ProvisioningPlan",
    "ProvisioningStep",
    "StepContext",
    "StepRegistry",
    # Record
    "ExecutionRecord",
    "StepRecord",
    "StepStatus",
    # Secrets
    "SecretMaterial",
    "SecretSpec",
    "SecretStore",
    # Rendering
    "ConfigRenderer",
    # Engine
    "ExecutionEngine",
    "OutcomeStatus",
    "PhaseResult",
    "RetryPolicy",
    "RunResult",
    "StepOutcome",
    # Health
    "HealthState",
    "HealthStatus",
    "HealthVerifier",
    "HttpProbe",
    # Hosts
    "CommandResult",
    "Host",
    "LocalHost",
    "SshHost",
    "Target",
    "make_host",
    "parse_target",
    # Topology
    "ServiceSpec",
    "ServiceTopology",
    # Orchestrator
    "DeploymentReport",
    "Orchestrator",
    "ReportStatus",
]
