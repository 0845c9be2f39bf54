"""Configure phase: project tree, secrets, rendered configuration, monitoring."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any

from ..provisioning.adapters import JailPolicy
from ..provisioning.steps import Phase, ProvisioningStep, StepContext
from .common import DirectoriesStep, RenderedFile, RenderFilesStep, owner_of
from .services import SECRET_SPECS, plain_env

PROJECT_SUBDIRS = [
    "data/nextcloud",
    "data/mariadb",
    "data/redis",
    "data/onlyoffice",
    "nginx/ssl",
    "logs/nginx",
    "config/onlyoffice",
    "backups",
    "scripts",
]

MONITOR_SCRIPT = PurePosixPath("/usr/local/bin/nextcloud-security-monitor.sh")
MONITOR_CRON = PurePosixPath("/etc/cron.d/nextcloud-security-monitor")
SECURITY_LOG = "/var/log/nextcloud-security.log"

NEXTCLOUD_AUTH_FAILREGEX = [
    r'^<HOST> .* "POST /index\.php/login HTTP/.*" 401',
    r'^<HOST> .* "POST /remote\.php/webdav/ HTTP/.*" 401',
    r'^<HOST> .* "POST /apps/.*login.* HTTP/.*" 401',
]


def project_path(*parts: str) -> Callable[[StepContext], PurePosixPath]:
    def path(ctx: StepContext) -> PurePosixPath:
        return ctx.config.project_dir.joinpath(*parts)

    return path


def nginx_logs(ctx: StepContext) -> list[PurePosixPath]:
    logs = ctx.config.project_dir / "logs" / "nginx"
    return [logs / "error.log", logs / "access.log"]


class GenerateSecrets(ProvisioningStep):
    def __init__(self) -> None:
        super().__init__(
            "generate_secrets",
            Phase.CONFIGURE,
            description="Generate database, cache, admin and office secrets",
        )

    def apply(self, ctx: StepContext) -> None:
        for key, spec in SECRET_SPECS.items():
            ctx.secrets.get_or_generate(key, spec)

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.secrets.has(*SECRET_SPECS)


class EnsureTlsCertificate(ProvisioningStep):
    """Self-signed placeholder so nginx starts; an existing certificate is kept."""

    def __init__(self) -> None:
        super().__init__(
            "ensure_tls_certificate",
            Phase.CONFIGURE,
            depends_on=["create_directories"],
            description="Provide a TLS certificate for the proxy",
        )

    def paths(self, ctx: StepContext) -> tuple[PurePosixPath, PurePosixPath]:
        ssl = ctx.config.project_dir / "nginx" / "ssl"
        return ssl / "fullchain.pem", ssl / "privkey.pem"

    def apply(self, ctx: StepContext) -> None:
        cert, key = self.paths(ctx)
        if ctx.host.exists(cert) and ctx.host.exists(key):
            return
        ctx.host.run(
            [
                "openssl", "req", "-x509", "-nodes", "-newkey", "rsa:2048", "-days", "365",
                "-subj", f"/CN={ctx.config.domain}",
                "-keyout", str(key), "-out", str(cert),
            ]
        )
        ctx.host.run(["chmod", "600", str(key)])
        owner = owner_of(ctx)
        if owner:
            ctx.host.run(["chown", f"{owner}:{owner}", str(cert), str(key)])
        ctx.notice(f"Replace the self-signed certificate in {cert.parent} with one issued for {ctx.config.domain}")

    def is_applied(self, ctx: StepContext) -> bool:
        cert, key = self.paths(ctx)
        return ctx.host.exists(cert) and ctx.host.exists(key)


def env_bindings(ctx: StepContext) -> dict[str, Any]:
    values = ctx.secrets.export_env()
    secret_env = {
        env_name: values[key] for key, env_name in ctx.topology.secret_env.items() if key in values
    }
    return {"plain": plain_env(ctx.config), "secrets": secret_env}


def compose_bindings(ctx: StepContext) -> dict[str, Any]:
    return {"compose": ctx.topology.to_compose()}


def config_bindings(ctx: StepContext) -> dict[str, Any]:
    return {
        "domain": ctx.config.domain,
        "project_name": ctx.config.project_name,
        "project_dir": str(ctx.config.project_dir),
        "security_log": SECURITY_LOG,
        "monitor_script": str(MONITOR_SCRIPT),
    }


def office_bindings(ctx: StepContext) -> dict[str, Any]:
    return {"jwt_secret": ctx.secrets.export_env()["office_jwt"]}


WEB_JAILS = {
    "nginx-http-auth": lambda logs: JailPolicy(
        port="http,https", logpath=str(logs[0]), maxretry=3, bantime=86400, filter="nginx-http-auth"
    ),
    "nginx-limit-req": lambda logs: JailPolicy(
        port="http,https", logpath=str(logs[0]), maxretry=5, bantime=86400, filter="nginx-limit-req"
    ),
    "nextcloud-auth": lambda logs: JailPolicy(
        port="http,https", logpath=str(logs[1]), maxretry=2, bantime=86400, findtime=600, filter="nextcloud-auth"
    ),
}


class ConfigureWebJails(ProvisioningStep):
    """fail2ban jails over the proxy logs, which exist once the tree is created."""

    def __init__(self) -> None:
        super().__init__(
            "configure_web_jails",
            Phase.CONFIGURE,
            depends_on=["create_directories", "configure_ssh_jail"],
            description="Ban web brute-force sources with fail2ban",
        )

    def policies(self, ctx: StepContext) -> dict[str, JailPolicy]:
        logs = nginx_logs(ctx)
        return {name: make(logs) for name, make in WEB_JAILS.items()}

    def apply(self, ctx: StepContext) -> None:
        changed = ctx.jails.ensure_filter("nextcloud-auth", NEXTCLOUD_AUTH_FAILREGEX)
        for name, policy in self.policies(ctx).items():
            changed = ctx.jails.configure_jail(name, policy) or changed
        if changed or not ctx.services.is_active("fail2ban"):
            ctx.jails.reload()

    def is_applied(self, ctx: StepContext) -> bool:
        return (
            ctx.jails.filter_applied("nextcloud-auth", NEXTCLOUD_AUTH_FAILREGEX)
            and all(ctx.jails.jail_applied(name, policy) for name, policy in self.policies(ctx).items())
            and ctx.services.is_active("fail2ban")
        )


def configure_steps() -> list[ProvisioningStep]:
    return [
        DirectoriesStep(
            "create_directories",
            Phase.CONFIGURE,
            directories=lambda ctx: [ctx.config.project_dir]
            + [ctx.config.project_dir / sub for sub in PROJECT_SUBDIRS],
            files=nginx_logs,
            description="Create the project directory tree",
        ),
        GenerateSecrets(),
        EnsureTlsCertificate(),
        RenderFilesStep(
            "write_env_file",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=project_path(".env"),
                    template_id="env",
                    bindings=env_bindings,
                    mode=0o600,
                    secret=True,
                    owned=True,
                )
            ],
            depends_on=["create_directories", "generate_secrets"],
            description="Write the compose environment file",
        ),
        RenderFilesStep(
            "write_service_topology",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=project_path("docker-compose.yml"),
                    template_id="docker-compose.yml",
                    bindings=compose_bindings,
                    owned=True,
                )
            ],
            depends_on=["create_directories"],
            description="Write the docker-compose service topology",
        ),
        RenderFilesStep(
            "write_proxy_config",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=project_path("nginx", "nginx.conf"),
                    template_id="nginx.conf",
                    bindings=config_bindings,
                    owned=True,
                )
            ],
            depends_on=["create_directories"],
            description="Write the reverse proxy configuration",
        ),
        RenderFilesStep(
            "write_office_config",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=project_path("config", "onlyoffice", "local.json"),
                    template_id="onlyoffice-local.json",
                    bindings=office_bindings,
                    mode=0o644,
                    secret=True,
                    owned=True,
                )
            ],
            depends_on=["create_directories", "generate_secrets"],
            description="Write the document server configuration",
        ),
        RenderFilesStep(
            "write_management_scripts",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=project_path(name),
                    template_id=template,
                    bindings=config_bindings,
                    mode=0o755,
                    owned=True,
                )
                for name, template in (
                    ("start-nextcloud.sh", "start-nextcloud.sh"),
                    ("stop-nextcloud.sh", "stop-nextcloud.sh"),
                    ("scripts/backup-nextcloud.sh", "backup-nextcloud.sh"),
                )
            ],
            depends_on=["create_directories"],
            description="Write start, stop and backup scripts",
        ),
        RenderFilesStep(
            "install_security_monitor",
            Phase.CONFIGURE,
            files=[
                RenderedFile(
                    path=lambda ctx: MONITOR_SCRIPT,
                    template_id="security-monitor.sh",
                    bindings=config_bindings,
                    mode=0o755,
                ),
                RenderedFile(
                    path=lambda ctx: MONITOR_CRON,
                    template_id="security-monitor.cron",
                    bindings=config_bindings,
                ),
            ],
            depends_on=["create_directories"],
            description="Install the periodic security monitor",
        ),
        ConfigureWebJails(),
    ]
