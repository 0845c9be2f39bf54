"""Deploy phase: pull images and start the stack."""

from __future__ import annotations

from ..provisioning.adapters import ServiceState
from ..provisioning.steps import Phase, ProvisioningStep, StepContext


class PullImages(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "pull_images",
            Phase.DEPLOY,
            depends_on=["write_service_topology", "write_env_file", "install_container_runtime"],
            description="Pull container images",
        )

    def apply(self, ctx: StepContext) -> None:
        ctx.runtime.pull()

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.runtime.images_present(ctx.topology)


class StartServices(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "start_services",
            Phase.DEPLOY,
            depends_on=[
                "pull_images",
                "write_proxy_config",
                "write_office_config",
                "ensure_tls_certificate",
            ],
            description="Start the containers",
        )

    def apply(self, ctx: StepContext) -> None:
        ctx.runtime.apply_topology(ctx.topology)

    def is_applied(self, ctx: StepContext) -> bool:
        return all(
            ctx.runtime.service_status(name) == ServiceState.RUNNING for name in ctx.topology.names
        )


def deploy_steps() -> list[ProvisioningStep]:
    return [PullImages(), StartServices()]
