"""Provisioning steps, the step registry and plans.

A step is a named, idempotent unit of work. It declares the phase it belongs
to and the steps that must have succeeded before it runs. The registry keeps
declaration order; execution order comes from a topological sort over
``depends_on``, so steps can be declared in whatever order reads best.
"""

from __future__ import annotations

from abc import ABCMeta, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import StepDefinitionError
from .graph import topological_order

if TYPE_CHECKING:
    from ..config import ServercoreConfig
    from .adapters import AptPackageManager, ComposeRuntime, Fail2banJails, SystemdServices, UfwFirewall
    from .host import Host
    from .renderer import ConfigRenderer
    from .secrets import SecretStore
    from .topology import ServiceTopology


class Phase(Enum):
    """Coarse provisioning stage. Each requires the previous one to succeed."""

    INSTALL = "install"
    CONFIGURE = "configure"
    DEPLOY = "deploy"

    @property
    def rank(self) -> int:
        return list(Phase).index(self)

    @classmethod
    def parse_list(cls, value: str | Iterable[str]) -> list[Phase]:
        """Parse "install,deploy" (or an iterable of names) into ordered phases.

        >>> Phase.parse_list("deploy,install")
        [<Phase.INSTALL: 'install'>, <Phase.DEPLOY: 'deploy'>]
        """
        names = value.split(",") if isinstance(value, str) else list(value)
        phases: set[Phase] = set()
        for name in names:
            name = name.strip().lower()
            if not name:
                continue
            try:
                phases.add(cls(name))
            except ValueError:
                valid = ", ".join(p.value for p in cls)
                raise ValueError(f"Unknown phase {name!r} (expected: {valid})") from None
        if not phases:
            raise ValueError("No phases given")
        return sorted(phases, key=lambda p: p.rank)


@dataclass
class StepContext:
    """Everything a step may touch while applying or checking itself."""

    host: Host
    config: ServercoreConfig
    secrets: SecretStore
    renderer: ConfigRenderer
    topology: ServiceTopology
    packages: AptPackageManager
    runtime: ComposeRuntime
    firewall: UfwFirewall
    jails: Fail2banJails
    services: SystemdServices
    notices: list[str] = field(default_factory=list)

    def notice(self, message: str) -> None:
        """Record an operator-facing note for the final report."""
        if message not in self.notices:
            self.notices.append(message)


class ProvisioningStep(metaclass=ABCMeta):
    """Idempotent unit of work.

    Subclasses implement ``apply`` (make it so) and ``is_applied`` (is it
    so?). ``is_applied`` must not change the host.
    """

    def __init__(
        self,
        step_id: str,
        phase: Phase,
        depends_on: Iterable[str] = (),
        description: str = "",
    ):
        if not step_id:
            raise StepDefinitionError(message="Step id must not be empty")
        self.id = step_id
        self.phase = phase
        self.depends_on = frozenset(depends_on)
        self.description = description or step_id.replace("_", " ")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id!r} ({self.phase.value})>"

    @abstractmethod
    def apply(self, ctx: StepContext) -> None:
        pass

    @abstractmethod
    def is_applied(self, ctx: StepContext) -> bool:
        pass


@dataclass(frozen=True)
class ProvisioningPlan:
    """Ordered, immutable set of steps for one invocation."""

    identity: str
    phases: tuple[Phase, ...]
    steps: tuple[ProvisioningStep, ...]

    def steps_for(self, phase: Phase) -> tuple[ProvisioningStep, ...]:
        return tuple(step for step in self.steps if step.phase == phase)

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


class StepRegistry:
    """Declared provisioning steps, in registration order."""

    def __init__(self, steps: Iterable[ProvisioningStep] = ()):
        self._steps: dict[str, ProvisioningStep] = {}
        for step in steps:
            self.register(step)

    def register(self, step: ProvisioningStep) -> ProvisioningStep:
        if step.id in self._steps:
            raise StepDefinitionError(message=f"Duplicate step id {step.id!r}", step_id=step.id)
        self._steps[step.id] = step
        return step

    def get(self, step_id: str) -> ProvisioningStep:
        try:
            return self._steps[step_id]
        except KeyError:
            raise StepDefinitionError(message=f"Unknown step {step_id!r}", step_id=step_id) from None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def all_steps(self) -> list[ProvisioningStep]:
        return list(self._steps.values())

    def validate(self) -> list[str]:
        """Check the whole graph and return the global execution order.

        Raises:
            StepDefinitionError: Unknown dependency, or dependency on a step
                of a later phase.
            CyclicDependencyError: The graph has a cycle.
        """
        for step in self._steps.values():
            for dep_id in sorted(step.depends_on):
                dep = self._steps.get(dep_id)
                if dep is None:
                    raise StepDefinitionError(
                        message=f"Step {step.id!r} depends on unknown step {dep_id!r}",
                        step_id=step.id,
                    )
                if dep.phase.rank > step.phase.rank:
                    raise StepDefinitionError(
                        message=(
                            f"Step {step.id!r} ({step.phase.value}) depends on "
                            f"{dep_id!r} of later phase {dep.phase.value}"
                        ),
                        step_id=step.id,
                    )
        return topological_order(
            self._steps, {step_id: step.depends_on for step_id, step in self._steps.items()}
        )

    def build_plan(self, phases: Iterable[Phase], identity: str) -> ProvisioningPlan:
        """Filter to the requested phases and order the steps.

        Steps are grouped by phase (install, configure, deploy) and
        topologically ordered within each phase.
        """
        requested = sorted(set(phases), key=lambda p: p.rank)
        order = self.validate()
        rank = {step_id: i for i, step_id in enumerate(order)}
        selected = [step for step in self._steps.values() if step.phase in requested]
        selected.sort(key=lambda step: (step.phase.rank, rank[step.id]))
        return ProvisioningPlan(identity=identity, phases=tuple(requested), steps=tuple(selected))
