"""Unit tests for host command execution and target parsing."""

from __future__ import annotations

import stat
import subprocess
from unittest.mock import patch

import pytest

from servercore_cli.errors import CommandError, TransientError, classify_command_error
from servercore_cli.provisioning.host import LocalHost, SshHost, Target, make_host, parse_target


class TestParseTarget:
    """Tests for parse_target."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("localhost", Target("localhost")),
            ("cloud.example.net", Target("cloud.example.net")),
            ("ubuntu@cloud.example.net", Target("cloud.example.net", user="ubuntu")),
            ("ubuntu@10.0.0.5:7392", Target("10.0.0.5", user="ubuntu", port=7392)),
            ("[fe80::1]:22", Target("fe80::1", port=22)),
        ],
    )
    def test_valid_targets(self, value, expected):
        """Test the accepted target forms."""
        assert parse_target(value) == expected

    @pytest.mark.parametrize("value", ["", "host:port", "a@b@c:22:1", "[fe80::1"])
    def test_invalid_targets(self, value):
        """Test malformed targets are rejected."""
        with pytest.raises(ValueError):
            parse_target(value)

    def test_is_local(self):
        """Test only bare local names run locally."""
        assert parse_target("localhost").is_local
        assert parse_target("127.0.0.1").is_local
        assert not parse_target("ubuntu@localhost").is_local
        assert not parse_target("localhost:2222").is_local
        assert not parse_target("cloud.example.net").is_local

    def test_make_host(self):
        """Test the Host class follows the target."""
        assert isinstance(make_host(parse_target("localhost")), LocalHost)
        remote = make_host(parse_target("ubuntu@cloud.example.net:7392"), sudo=True)
        assert isinstance(remote, SshHost)
        assert remote.destination == "ubuntu@cloud.example.net"
        assert remote.port == 7392
        assert remote.sudo


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestSshHost:
    """Tests for SshHost."""

    def test_ssh_argv(self):
        """Test commands run in batch mode with the remote argv quoted."""
        host = SshHost("cloud.example.net", user="ubuntu", port=7392)
        argv = host.ssh_argv(["echo", "hello world"])

        assert argv[0] == "ssh"
        assert "-oBatchMode=yes" in argv
        assert argv[argv.index("-p") + 1] == "7392"
        assert argv[-3:] == ["ubuntu@cloud.example.net", "--", "echo 'hello world'"]

    def test_run_with_sudo(self):
        """Test privileged hosts prefix commands with non-interactive sudo."""
        host = SshHost("cloud.example.net", sudo=True)
        with patch("servercore_cli.provisioning.host.subprocess.run", return_value=_completed(stdout=b"ok\n")) as run:
            result = host.run(["ufw", "status"])

        assert result.stdout == "ok\n"
        assert result.argv == ["sudo", "-n", "ufw", "status"]
        assert run.call_args.args[0][-1] == "sudo -n ufw status"

    def test_connection_failure_is_transient(self):
        """Test ssh's own exit code classifies as retryable."""
        host = SshHost("cloud.example.net")
        failed = _completed(returncode=255, stderr=b"ssh: connect to host cloud.example.net port 22: No route\n")
        with patch("servercore_cli.provisioning.host.subprocess.run", return_value=failed):
            with pytest.raises(CommandError) as exc_info:
                host.run(["true"])

        assert isinstance(classify_command_error(exc_info.value), TransientError)

    def test_timeout(self):
        """Test a hung command raises a timed-out CommandError."""
        host = SshHost("cloud.example.net")
        with patch(
            "servercore_cli.provisioning.host.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="ssh", timeout=1),
        ):
            with pytest.raises(CommandError) as exc_info:
                host.run(["apt-get", "update"], timeout=1)

        assert exc_info.value.timed_out

    def test_put_secret_file(self):
        """Test secret uploads go through stdin with a restricted mode."""
        host = SshHost("cloud.example.net")
        with patch("servercore_cli.provisioning.host.subprocess.run", return_value=_completed()) as run:
            host.put_file("/home/ubuntu/nextcloud/docker/.env", b"A=1\n", mode=0o644, owner="ubuntu", secret=True)

        remote = run.call_args.args[0][-1]
        assert "install -D -m 640 -o ubuntu -g ubuntu /dev/stdin" in remote
        assert "mv -f" in remote
        assert run.call_args.kwargs["input"] == b"A=1\n"

    def test_read_missing_file(self):
        """Test a missing file reads as None."""
        host = SshHost("cloud.example.net")
        with patch("servercore_cli.provisioning.host.subprocess.run", return_value=_completed(returncode=1)):
            assert host.read_file("/etc/ssh/sshd_config") is None

    def test_file_mode(self):
        """Test permissions are read with stat."""
        host = SshHost("cloud.example.net")
        with patch("servercore_cli.provisioning.host.subprocess.run", return_value=_completed(stdout=b"600\n")):
            assert host.file_mode("/etc/ssh/sshd_config") == 0o600


class TestLocalHost:
    """Tests for LocalHost."""

    def test_put_and_read_file(self, tmp_path, renderer):
        """Test files are written atomically with their mode."""
        host = LocalHost(renderer=renderer)
        path = tmp_path / "conf" / "app.conf"
        host.put_file(path, b"x=1\n", mode=0o600)

        assert host.read_file(path) == b"x=1\n"
        assert host.file_mode(path) == 0o600
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_file(self, tmp_path):
        """Test a missing file has no content and no mode."""
        host = LocalHost()
        assert host.read_file(tmp_path / "missing") is None
        assert host.file_mode(tmp_path / "missing") is None

    def test_failing_command(self):
        """Test a non-zero exit raises CommandError with the output."""
        host = LocalHost()
        with pytest.raises(CommandError) as exc_info:
            host.run(["sh", "-c", "echo broken >&2; exit 3"])

        assert exc_info.value.returncode == 3
        assert "broken" in exc_info.value.stderr
        assert "exited with 3: broken" in str(exc_info.value)

    def test_unchecked_command(self):
        """Test check=False returns the failed result."""
        result = LocalHost().run(["sh", "-c", "exit 2"], check=False)
        assert not result.ok
        assert result.returncode == 2

    def test_missing_executable(self):
        """Test an unknown program reads as exit code 127."""
        result = LocalHost().run(["servercore-no-such-program"], check=False)
        assert result.returncode == 127

    def test_stdin_input(self):
        """Test input bytes are passed on stdin."""
        result = LocalHost().run(["cat"], input=b"hello")
        assert result.stdout == "hello"
