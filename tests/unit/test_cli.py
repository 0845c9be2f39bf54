"""Unit tests for the servercore command line."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from servercore_cli.errors import LockHeldError
from servercore_cli.main import cli
from servercore_cli.provisioning.orchestrator import DeploymentReport, ReportStatus
from servercore_cli.provisioning.secrets import SecretStore
from servercore_cli.shared.paths import get_secrets_file

PROVISION = "servercore_cli.provisioning.orchestrator.Orchestrator.provision"


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "deployments"


@pytest.fixture
def config_file(tmp_path, state_dir):
    path = tmp_path / "servercore.yaml"
    path.write_text(f"domain: cloud.test\nstate_dir: {state_dir}\n")
    return str(path)


@pytest.mark.cli_unit
class TestCliBasics:
    """Tests for the command group."""

    def test_help(self, runner):
        """Test the top-level help lists the commands."""
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("provision", "plan", "status", "secrets", "stack", "config"):
            assert command in result.output

    def test_invalid_phase(self, runner, config_file):
        """Test an unknown phase is a usage error."""
        result = runner.invoke(cli, ["-c", config_file, "plan", "--phases", "install,bogus"])

        assert result.exit_code == 2
        assert "bogus" in result.output

    def test_invalid_target(self, runner, config_file):
        """Test an unparseable target is a usage error."""
        result = runner.invoke(cli, ["-c", config_file, "plan", "--target", "host:port"])

        assert result.exit_code == 2
        assert "--target" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        """Test a missing explicit config file is fatal."""
        result = runner.invoke(cli, ["-c", str(tmp_path / "missing.yaml"), "plan"])

        assert result.exit_code == 1
        assert "not found" in result.output


@pytest.mark.cli_unit
class TestPlanAndStatus:
    """Tests for plan and status."""

    def test_plan_json(self, runner, config_file):
        """Test the plan lists every step in phase order."""
        result = runner.invoke(cli, ["-c", config_file, "--json", "plan"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["identity"] == "localhost"
        assert data["phases"] == ["install", "configure", "deploy"]
        steps = [row["step"] for row in data["steps"]]
        assert steps[0] == "update_package_index"
        assert steps[-1] == "start_services"
        assert all(row["recorded"] == "pending" for row in data["steps"])

    def test_plan_single_phase(self, runner, config_file):
        """Test the plan can be limited to one phase."""
        result = runner.invoke(cli, ["-c", config_file, "--json", "plan", "--phases", "deploy"])

        data = json.loads(result.output)
        assert [row["step"] for row in data["steps"]] == ["pull_images", "start_services"]

    def test_plan_table(self, runner, config_file):
        """Test the human-readable plan."""
        result = runner.invoke(cli, ["-c", config_file, "plan", "--phases", "install"])

        assert result.exit_code == 0
        assert "Plan for localhost" in result.output

    def test_status_json(self, runner, config_file, state_dir):
        """Test status reads the identity's execution record."""
        result = runner.invoke(cli, ["-c", config_file, "--json", "status"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["record"] == str(state_dir / "localhost" / "record.json")
        assert data["steps"]["harden_ssh"]["status"] == "pending"


@pytest.mark.cli_unit
class TestProvision:
    """Tests for the provision command with a stubbed orchestrator."""

    @pytest.mark.parametrize(
        "status,exit_code",
        [
            (ReportStatus.SUCCESS, 0),
            (ReportStatus.FATAL, 1),
            (ReportStatus.PARTIAL_FAILURE, 3),
            (ReportStatus.DEGRADED, 4),
            (ReportStatus.INTERRUPTED, 130),
        ],
    )
    def test_exit_codes(self, runner, config_file, status, exit_code):
        """Test the exit code follows the report status."""
        report = DeploymentReport(identity="localhost", status=status)
        with patch(PROVISION, return_value=report):
            result = runner.invoke(cli, ["-c", config_file, "provision"])

        assert result.exit_code == exit_code
        assert f"Result: {status.value}" in result.output

    def test_partial_failure_hint(self, runner, config_file):
        """Test a partial failure tells the operator how to resume."""
        report = DeploymentReport(identity="localhost", status=ReportStatus.PARTIAL_FAILURE)
        with patch(PROVISION, return_value=report):
            result = runner.invoke(cli, ["-c", config_file, "provision"])

        assert "Re-run the same command" in result.output

    def test_arguments_passed(self, runner, config_file):
        """Test phases, forced steps and dry run reach the orchestrator."""
        report = DeploymentReport(identity="localhost", status=ReportStatus.SUCCESS, dry_run=True)
        with patch(PROVISION, return_value=report) as provision:
            result = runner.invoke(
                cli,
                [
                    "-c",
                    config_file,
                    "provision",
                    "--phases",
                    "configure",
                    "--force-step",
                    "write_env_file",
                    "--dry-run",
                ],
            )

        assert result.exit_code == 0
        args, kwargs = provision.call_args
        assert [phase.value for phase in args[0]] == ["configure"]
        assert kwargs["force_steps"] == ("write_env_file",)
        assert kwargs["dry_run"] is True

    def test_json_report(self, runner, config_file):
        """Test --json prints the report dict."""
        report = DeploymentReport(
            identity="localhost", status=ReportStatus.SUCCESS, credentials={"db_root": "********"}
        )
        with patch(PROVISION, return_value=report):
            result = runner.invoke(cli, ["-c", config_file, "--json", "provision"])

        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["credentials"] == {"db_root": "********"}

    def test_lock_held(self, runner, config_file):
        """Test a concurrent run exits with the lock code."""
        error = LockHeldError(message="Another provisioning run holds /tmp/.lock", lock_path="/tmp/.lock")
        with patch(PROVISION, side_effect=error):
            result = runner.invoke(cli, ["-c", config_file, "provision"])

        assert result.exit_code == 75
        assert "Another provisioning run" in result.output


@pytest.mark.cli_unit
class TestSecretsShow:
    """Tests for secrets show."""

    @pytest.fixture
    def secret_value(self, state_dir):
        store = SecretStore("localhost", get_secrets_file("localhost", state_dir))
        return store.get_or_generate("db_root").reveal()

    def test_masked_by_default(self, runner, config_file, secret_value):
        """Test values are masked without --reveal."""
        result = runner.invoke(cli, ["-c", config_file, "secrets", "show"])

        assert result.exit_code == 0
        assert "db_root: ********" in result.output
        assert secret_value not in result.output

    def test_reveal(self, runner, config_file, secret_value):
        """Test --reveal prints clear values."""
        result = runner.invoke(cli, ["-c", config_file, "--json", "secrets", "show", "--reveal"])

        assert result.exit_code == 0
        assert secret_value in result.output

    def test_no_secrets(self, runner, config_file):
        """Test a target without secrets."""
        result = runner.invoke(cli, ["-c", config_file, "secrets", "show"])

        assert result.exit_code == 0
        assert "No secrets stored for localhost" in result.output


@pytest.mark.cli_unit
class TestStackCommands:
    """Tests for stack status, down and logs."""

    def test_down_with_volumes_requires_confirmation(self, runner, config_file):
        """Test declining the prompt leaves the stack alone."""
        with patch("servercore_cli.provisioning.adapters.ComposeRuntime.down") as down:
            result = runner.invoke(cli, ["-c", config_file, "stack", "down", "--volumes"], input="n\n")

        assert result.exit_code == 1
        down.assert_not_called()

    def test_down(self, runner, config_file):
        """Test down without volumes keeps data."""
        with patch("servercore_cli.provisioning.adapters.ComposeRuntime.down") as down:
            result = runner.invoke(cli, ["-c", config_file, "stack", "down"])

        assert result.exit_code == 0
        down.assert_called_once_with(remove_volumes=False)
        assert "Stack stopped" in result.output

    def test_status_without_containers(self, runner, config_file):
        """Test an empty project."""
        with patch("servercore_cli.provisioning.adapters.ComposeRuntime.ps", return_value=[]):
            result = runner.invoke(cli, ["-c", config_file, "stack", "status"])

        assert result.exit_code == 0
        assert "No containers found." in result.output

    def test_status_json(self, runner, config_file):
        """Test container entries are printed as JSON."""
        entries = [{"Service": "redis", "State": "running", "Health": "healthy"}]
        with patch("servercore_cli.provisioning.adapters.ComposeRuntime.ps", return_value=entries):
            result = runner.invoke(cli, ["-c", config_file, "--json", "stack", "status"])

        assert json.loads(result.output) == entries

    def test_logs(self, runner, config_file):
        """Test logs of one service are printed."""
        with patch(
            "servercore_cli.provisioning.adapters.ComposeRuntime.logs", return_value="redis | Ready\n"
        ) as logs:
            result = runner.invoke(cli, ["-c", config_file, "stack", "logs", "-s", "redis", "--tail", "5"])

        assert result.exit_code == 0
        assert result.output == "redis | Ready\n"
        logs.assert_called_once_with("redis", 5)


@pytest.mark.cli_unit
class TestConfigShow:
    """Tests for config show."""

    def test_config_show_json(self, runner, config_file, state_dir):
        """Test JSON output includes file values and the project directory."""
        result = runner.invoke(cli, ["-c", config_file, "--json", "config", "show"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["domain"] == "cloud.test"
        assert data["state_dir"] == str(state_dir)
        assert data["project_dir"] == "/home/ubuntu/nextcloud-servercore/docker"

    def test_config_show_sources(self, runner, config_file):
        """Test each value is listed with its source."""
        result = runner.invoke(cli, ["-c", config_file, "config", "show"])

        assert result.exit_code == 0
        assert "domain: cloud.test  [config file]" in result.output
        assert "ssh_port: 7392  [default]" in result.output
