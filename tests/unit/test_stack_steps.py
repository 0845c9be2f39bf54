"""Unit tests for the Nextcloud step catalogue against an in-memory host."""

from __future__ import annotations

import json

import pytest

from servercore_cli.errors import CommandError
from servercore_cli.provisioning.host import SshHost
from servercore_cli.stack import build_registry
from servercore_cli.stack.install import (
    DOCKER_KEYRING,
    DOCKER_SOURCES,
    SSHD_CANDIDATE,
    SSHD_CONFIG,
    desired_rules,
)


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def step(registry):
    return registry.get


class TestHardenSsh:
    """Tests for the harden_ssh step."""

    def test_validated_candidate_replaces_config(self, ctx, host, step):
        """Test the new config is validated before it is moved into place."""
        host.files[str(SSHD_CONFIG)] = b"Port 22\n"
        step("harden_ssh").apply(ctx)

        assert host.ran("cp", "-p", str(SSHD_CONFIG))
        assert b"Port 7392" in host.files[str(SSHD_CANDIDATE)]
        validate = host.commands.index(["sshd", "-t", "-f", str(SSHD_CANDIDATE)])
        move = host.commands.index(["mv", "-f", str(SSHD_CANDIDATE), str(SSHD_CONFIG)])
        assert validate < move
        assert any("Port 7392" in notice for notice in ctx.notices)
        assert not host.ran("systemctl", "restart")

    def test_invalid_config_is_not_installed(self, ctx, host, step):
        """Test a candidate rejected by sshd -t is removed and the live file kept."""
        host.files[str(SSHD_CONFIG)] = b"Port 22\n"
        host.on("sshd", "-t", returncode=255, stderr="Bad configuration option")

        with pytest.raises(CommandError):
            step("harden_ssh").apply(ctx)

        assert host.ran("rm", "-f", str(SSHD_CANDIDATE))
        assert not host.ran("mv")
        assert host.files[str(SSHD_CONFIG)] == b"Port 22\n"

    def test_is_applied(self, ctx, host, step):
        """Test the check compares the live file with the rendered one."""
        harden = step("harden_ssh")
        assert not harden.is_applied(ctx)

        host.files[str(SSHD_CONFIG)] = harden.render(ctx)
        assert harden.is_applied(ctx)


class TestFirewallRules:
    """Tests for desired_rules."""

    def test_local_host(self, ctx):
        """Test the configured SSH port plus HTTP and HTTPS."""
        assert [r.port for r in desired_rules(ctx).allow] == [7392, 80, 443]

    def test_remote_session_port_kept_open(self, config, renderer, context_factory):
        """Test the port provisioning connects on stays open."""
        ctx = context_factory(SshHost("cloud.example.net"), config, renderer)
        assert [r.port for r in desired_rules(ctx).allow] == [7392, 80, 443, 22]

    def test_remote_on_configured_port(self, config, renderer, context_factory):
        """Test no extra rule once provisioning uses the hardened port."""
        ctx = context_factory(SshHost("cloud.example.net", port=7392), config, renderer)
        assert [r.port for r in desired_rules(ctx).allow] == [7392, 80, 443]


class TestJails:
    """Tests for the fail2ban steps."""

    def test_ssh_jail(self, ctx, host, step):
        """Test the SSH jail is written, fail2ban reloaded once, and then converged."""
        jail = step("configure_ssh_jail")
        jail.apply(ctx)
        jail.apply(ctx)

        assert "port = 7392" in host.files["/etc/fail2ban/jail.d/servercore-sshd.local"].decode()
        assert host.count("fail2ban-client", "reload") == 1
        assert jail.is_applied(ctx)

    def test_web_jails(self, ctx, host, step):
        """Test the filter and three web jails are written over the proxy logs."""
        web = step("configure_web_jails")
        web.apply(ctx)

        assert "/etc/fail2ban/filter.d/nextcloud-auth.conf" in host.files
        for name in ("nginx-http-auth", "nginx-limit-req", "nextcloud-auth"):
            assert f"/etc/fail2ban/jail.d/servercore-{name}.local" in host.files
        nextcloud = host.files["/etc/fail2ban/jail.d/servercore-nextcloud-auth.local"].decode()
        assert "logpath = /home/ubuntu/nextcloud-servercore/docker/logs/nginx/access.log" in nextcloud
        assert web.is_applied(ctx)

    def test_jail_not_applied_when_fail2ban_stopped(self, ctx, host, step):
        """Test a stopped fail2ban service is drift."""
        jail = step("configure_ssh_jail")
        jail.apply(ctx)
        host.on("systemctl", "is-active", "--quiet", "fail2ban", returncode=3)

        assert not jail.is_applied(ctx)


class TestConfigureSteps:
    """Tests for the project tree and rendered files."""

    def test_create_directories(self, ctx, host, step):
        """Test the tree is created for the admin user and the proxy logs exist."""
        create = step("create_directories")
        assert not create.is_applied(ctx)

        create.apply(ctx)

        argv = next(a for a in host.commands if a[:2] == ["install", "-d"])
        assert argv[:6] == ["install", "-d", "-m", "755", "-o", "ubuntu"]
        assert "/home/ubuntu/nextcloud-servercore/docker/nginx/ssl" in host.dirs
        assert host.ran("chown", "ubuntu:ubuntu")
        assert create.is_applied(ctx)

    def test_env_file_is_secret(self, ctx, host, step):
        """Test the env file is user-only and owned by the admin user."""
        step("generate_secrets").apply(ctx)
        write_env = step("write_env_file")
        write_env.apply(ctx)

        path = "/home/ubuntu/nextcloud-servercore/docker/.env"
        assert host.modes[path] == 0o600
        assert host.owners[path] == "ubuntu"
        assert write_env.is_applied(ctx)

    def test_widened_mode_is_drift(self, ctx, host, step):
        """Test a secret file whose mode was loosened is rewritten."""
        step("generate_secrets").apply(ctx)
        write_office = step("write_office_config")
        write_office.apply(ctx)

        path = "/home/ubuntu/nextcloud-servercore/docker/config/onlyoffice/local.json"
        assert host.modes[path] == 0o640
        host.modes[path] = 0o644
        assert not write_office.is_applied(ctx)

    def test_generate_secrets_once(self, ctx, step):
        """Test existing secrets are kept on re-apply."""
        generate = step("generate_secrets")
        generate.apply(ctx)
        before = ctx.secrets.export_env()
        generate.apply(ctx)

        assert ctx.secrets.export_env() == before
        assert generate.is_applied(ctx)

    def test_existing_certificate_is_kept(self, ctx, host, step):
        """Test a certificate already in place is not replaced."""
        ssl = "/home/ubuntu/nextcloud-servercore/docker/nginx/ssl"
        host.files[f"{ssl}/fullchain.pem"] = b"cert"
        host.files[f"{ssl}/privkey.pem"] = b"key"

        tls = step("ensure_tls_certificate")
        tls.apply(ctx)

        assert not host.ran("openssl")
        assert tls.is_applied(ctx)
        assert ctx.notices == []

    def test_placeholder_certificate(self, ctx, host, step):
        """Test a self-signed certificate is created for the domain."""
        step("ensure_tls_certificate").apply(ctx)

        openssl = next(argv for argv in host.commands if argv[0] == "openssl")
        assert "/CN=cloud.test" in openssl
        assert host.ran("chmod", "600")
        assert any("self-signed" in notice for notice in ctx.notices)


class TestInstallSteps:
    """Tests for container runtime steps."""

    def test_container_repository(self, ctx, host, step):
        """Test the signing key and sources list are added, then the index refreshed."""
        host.on("dpkg", "--print-architecture", stdout="amd64\n")
        host.on("lsb_release", "-cs", stdout="jammy\n")

        step("add_container_repository").apply(ctx)

        assert host.ran("sh", "-c")
        sources = host.files[str(DOCKER_SOURCES)].decode()
        assert f"[arch=amd64 signed-by={DOCKER_KEYRING}]" in sources
        assert "jammy stable" in sources
        assert host.ran("env", "DEBIAN_FRONTEND=noninteractive", "NEEDRESTART_MODE=a", "apt-get", "update")

    def test_daemon_restarted_only_on_change(self, ctx, host, step):
        """Test docker restarts when daemon.json changes and not on re-apply."""
        daemon = step("configure_container_daemon")
        daemon.apply(ctx)
        daemon.apply(ctx)

        assert json.loads(host.files["/etc/docker/daemon.json"])["icc"] is False
        assert host.count("systemctl", "restart", "docker") == 1
        assert daemon.is_applied(ctx)

    def test_container_access(self, ctx, host, step):
        """Test group membership is read with id."""
        grant = step("grant_container_access")
        host.on("id", "-nG", "ubuntu", stdout="ubuntu sudo\n")
        assert not grant.is_applied(ctx)

        host.on("id", "-nG", "ubuntu", stdout="ubuntu sudo docker\n")
        assert grant.is_applied(ctx)

    def test_base_packages(self, ctx, host, step):
        """Test only missing packages are installed."""
        host.on("dpkg-query", returncode=1)
        step("install_base_packages").apply(ctx)

        install = next(argv for argv in host.commands if "install" in argv and "apt-get" in argv)
        assert install[-len(ctx.config.base_packages) :] == ctx.config.base_packages


class TestDeploySteps:
    """Tests for the deploy steps."""

    def test_start_services_check(self, ctx, host, step):
        """Test the stack counts as started when every container runs."""
        host.files["/home/ubuntu/nextcloud-servercore/docker/docker-compose.yml"] = b""
        entries = [{"Service": name, "State": "running"} for name in ctx.topology.names]
        host.on("docker", "compose", stdout="\n".join(json.dumps(e) for e in entries))
        start = step("start_services")
        assert start.is_applied(ctx)

        entries[0]["State"] = "exited"
        host.on("docker", "compose", stdout="\n".join(json.dumps(e) for e in entries))
        assert not start.is_applied(ctx)

    def test_start_services_apply(self, ctx, host, step):
        """Test starting runs compose up."""
        step("start_services").apply(ctx)
        assert host.commands[-1][-3:] == ["up", "-d", "--remove-orphans"]
