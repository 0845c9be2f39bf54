"""Step catalogue for a hardened Nextcloud host.

Install prepares the operating system and the container runtime, configure
writes the project tree and its configuration, deploy starts the stack.
"""

from ..config import ServercoreConfig
from ..provisioning.steps import StepRegistry
from ..provisioning.topology import ServiceTopology
from .configure import configure_steps
from .deploy import deploy_steps
from .install import install_steps
from .services import SECRET_ENV, SECRET_SPECS, build_topology


def build_registry() -> StepRegistry:
    """All steps, in the order they read best; execution order comes from the graph."""
    return StepRegistry([*install_steps(), *configure_steps(), *deploy_steps()])


def build_stack(config: ServercoreConfig) -> tuple[StepRegistry, ServiceTopology]:
    topology = build_topology(config)
    topology.validate()
    return build_registry(), topology


__all__ = [
    "SECRET_ENV",
    "SECRET_SPECS",
    "build_registry",
    "build_stack",
    "build_topology",
]
