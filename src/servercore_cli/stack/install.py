"""Install phase: base system, SSH, firewall, fail2ban and the container runtime."""

from __future__ import annotations

from pathlib import PurePosixPath

from ..errors import CommandError
from ..provisioning.adapters import FirewallRule, JailPolicy, RuleSet
from ..provisioning.host import SshHost
from ..provisioning.steps import Phase, ProvisioningStep, StepContext
from .common import PackagesStep, RenderedFile, RenderFilesStep

SSHD_CONFIG = PurePosixPath("/etc/ssh/sshd_config")
SSHD_BACKUP = PurePosixPath("/etc/ssh/sshd_config.servercore-backup")
SSHD_CANDIDATE = PurePosixPath("/etc/ssh/sshd_config.servercore-new")

DOCKER_KEYRING = PurePosixPath("/usr/share/keyrings/docker-archive-keyring.gpg")
DOCKER_SOURCES = PurePosixPath("/etc/apt/sources.list.d/docker.list")
DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_PACKAGES = ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"]

SSH_BAN_SECONDS = 7 * 24 * 3600


class UpdatePackageIndex(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__("update_package_index", Phase.INSTALL, description="Refresh the apt package index")

    def apply(self, ctx: StepContext) -> None:
        ctx.packages.update_index()

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.packages.index_is_fresh()


class HardenSsh(ProvisioningStep):
    """Render sshd_config and validate it before replacing the live file.

    sshd is not restarted: the new port only takes effect once the operator
    has confirmed key login works and restarts it.
    """

    def __init__(self) -> None:
        super().__init__(
            "harden_ssh",
            Phase.INSTALL,
            depends_on=["install_base_packages"],
            description="Harden the SSH daemon configuration",
        )

    def render(self, ctx: StepContext) -> bytes:
        return ctx.renderer.render(
            "sshd_config",
            {"ssh_port": ctx.config.ssh_port, "admin_user": ctx.config.admin_user},
        )

    def apply(self, ctx: StepContext) -> None:
        content = self.render(ctx)
        if not ctx.host.exists(SSHD_BACKUP) and ctx.host.exists(SSHD_CONFIG):
            ctx.host.run(["cp", "-p", str(SSHD_CONFIG), str(SSHD_BACKUP)])

        ctx.host.put_file(SSHD_CANDIDATE, content, mode=0o644)
        try:
            ctx.host.run(["sshd", "-t", "-f", str(SSHD_CANDIDATE)])
        except CommandError:
            ctx.host.run(["rm", "-f", str(SSHD_CANDIDATE)], check=False)
            raise
        ctx.host.run(["mv", "-f", str(SSHD_CANDIDATE), str(SSHD_CONFIG)])
        ctx.notice(
            f"sshd_config now sets Port {ctx.config.ssh_port}. Confirm key login for "
            f"{ctx.config.admin_user} on that port, then run: systemctl restart ssh"
        )

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.host.read_file(SSHD_CONFIG) == self.render(ctx)


def desired_rules(ctx: StepContext) -> RuleSet:
    """SSH, HTTP and HTTPS; plus the port provisioning itself connects on."""
    rules = [
        FirewallRule(ctx.config.ssh_port, "tcp", "SSH"),
        FirewallRule(80, "tcp", "HTTP"),
        FirewallRule(443, "tcp", "HTTPS"),
    ]
    if isinstance(ctx.host, SshHost):
        current_port = ctx.host.port or 22
        if current_port != ctx.config.ssh_port:
            rules.append(FirewallRule(current_port, "tcp", "provisioning SSH"))
    return RuleSet(allow=tuple(rules))


class ConfigureFirewall(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "configure_firewall",
            Phase.INSTALL,
            depends_on=["install_base_packages"],
            description="Deny incoming traffic except SSH, HTTP and HTTPS",
        )

    def apply(self, ctx: StepContext) -> None:
        rules = desired_rules(ctx)
        ctx.firewall.set_rules(rules)
        extra = [r.port for r in rules.allow if r.comment == "provisioning SSH"]
        if extra:
            ctx.notice(
                f"Firewall keeps port {extra[0]}/tcp open for this session; "
                f"provision through port {ctx.config.ssh_port} once sshd listens there to close it"
            )

    def is_applied(self, ctx: StepContext) -> bool:
        return desired_rules(ctx).equivalent(ctx.firewall.current_rules())


def ssh_jail_policy(ctx: StepContext) -> JailPolicy:
    return JailPolicy(
        port=str(ctx.config.ssh_port),
        logpath="%(sshd_log)s",
        maxretry=2,
        bantime=SSH_BAN_SECONDS,
        findtime=600,
        backend="systemd",
    )


class ConfigureSshJail(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "configure_ssh_jail",
            Phase.INSTALL,
            depends_on=["install_base_packages", "harden_ssh"],
            description="Ban SSH brute-force sources with fail2ban",
        )

    def apply(self, ctx: StepContext) -> None:
        changed = ctx.jails.configure_jail("sshd", ssh_jail_policy(ctx))
        if changed or not ctx.services.is_active("fail2ban"):
            ctx.jails.reload()

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.jails.jail_applied("sshd", ssh_jail_policy(ctx)) and ctx.services.is_active("fail2ban")


class AddContainerRepository(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "add_container_repository",
            Phase.INSTALL,
            depends_on=["install_base_packages"],
            description="Add the Docker apt repository and signing key",
        )

    def sources_line(self, ctx: StepContext) -> bytes:
        arch = ctx.host.run(["dpkg", "--print-architecture"]).stdout.strip()
        codename = ctx.host.run(["lsb_release", "-cs"]).stdout.strip()
        return ctx.renderer.render(
            "docker.list", {"arch": arch, "codename": codename, "keyring": str(DOCKER_KEYRING)}
        )

    def apply(self, ctx: StepContext) -> None:
        if not ctx.host.exists(DOCKER_KEYRING):
            ctx.host.shell(
                f"curl -fsSL {DOCKER_GPG_URL} | gpg --batch --yes --dearmor -o {DOCKER_KEYRING}"
            )
        content = self.sources_line(ctx)
        if ctx.host.read_file(DOCKER_SOURCES) != content:
            ctx.host.put_file(DOCKER_SOURCES, content, mode=0o644)
            ctx.packages.update_index()

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.host.exists(DOCKER_KEYRING) and ctx.host.read_file(DOCKER_SOURCES) == self.sources_line(ctx)


def _restart_docker(ctx: StepContext) -> None:
    ctx.services.restart("docker")


class ConfigureContainerDaemon(RenderFilesStep):
    def __init__(self) -> None:
        super().__init__(
            "configure_container_daemon",
            Phase.INSTALL,
            files=[RenderedFile(path=lambda ctx: PurePosixPath("/etc/docker/daemon.json"), template_id="daemon.json")],
            depends_on=["install_container_runtime"],
            description="Harden the Docker daemon",
            on_change=_restart_docker,
        )

    def apply(self, ctx: StepContext) -> None:
        super().apply(ctx)
        if not ctx.services.is_active("docker"):
            ctx.services.enable_now("docker")

    def is_applied(self, ctx: StepContext) -> bool:
        return super().is_applied(ctx) and ctx.services.is_active("docker")


class GrantContainerAccess(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "grant_container_access",
            Phase.INSTALL,
            depends_on=["install_container_runtime"],
            description="Add the admin user to the docker group",
        )

    def apply(self, ctx: StepContext) -> None:
        ctx.host.run(["usermod", "-aG", "docker", ctx.config.admin_user])
        ctx.notice(f"{ctx.config.admin_user} was added to the docker group; log in again for it to apply")

    def is_applied(self, ctx: StepContext) -> bool:
        if ctx.config.admin_user == "root":
            return True
        result = ctx.host.run(["id", "-nG", ctx.config.admin_user], check=False)
        return result.ok and "docker" in result.stdout.split()


def install_steps() -> list[ProvisioningStep]:
    return [
        UpdatePackageIndex(),
        PackagesStep(
            "install_base_packages",
            Phase.INSTALL,
            packages=lambda ctx: list(ctx.config.base_packages),
            depends_on=["update_package_index"],
            description="Install base and security packages",
        ),
        RenderFilesStep(
            "configure_unattended_upgrades",
            Phase.INSTALL,
            files=[
                RenderedFile(
                    path=lambda ctx: PurePosixPath("/etc/apt/apt.conf.d/52servercore-unattended-upgrades"),
                    template_id="unattended-upgrades",
                )
            ],
            depends_on=["install_base_packages"],
            description="Enable automatic security updates",
        ),
        HardenSsh(),
        ConfigureFirewall(),
        ConfigureSshJail(),
        AddContainerRepository(),
        PackagesStep(
            "install_container_runtime",
            Phase.INSTALL,
            packages=lambda ctx: list(DOCKER_PACKAGES),
            depends_on=["add_container_repository"],
            description="Install Docker Engine and the compose plugin",
        ),
        ConfigureContainerDaemon(),
        GrantContainerAccess(),
    ]
