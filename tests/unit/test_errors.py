"""Unit tests for error classification."""

from __future__ import annotations

import pytest

from servercore_cli.errors import (
    CommandError,
    CyclicDependencyError,
    PermanentError,
    TransientError,
    classify_command_error,
)


class TestClassifyCommandError:
    """Tests for classify_command_error."""

    @pytest.mark.parametrize(
        "stderr",
        [
            "E: Could not get lock /var/lib/dpkg/lock-frontend. It is held by process 1234",
            "Temporary failure resolving 'archive.ubuntu.com'",
            "curl: (6) Could not resolve host: download.docker.com",
            "Error response from daemon: toomanyrequests: You have reached your pull rate limit",
            "E: Failed to fetch http://archive.ubuntu.com/pool/main/c/curl.deb  503  Service Unavailable",
        ],
    )
    def test_transient_output(self, stderr):
        """Test known transient conditions are retryable."""
        error = classify_command_error(CommandError(argv=["apt-get"], returncode=100, stderr=stderr), "install")

        assert isinstance(error, TransientError)
        assert error.retryable
        assert error.step_id == "install"

    def test_timeout_is_transient(self):
        """Test a timed-out command is retryable."""
        assert isinstance(classify_command_error(CommandError(argv=["curl"], timed_out=True)), TransientError)

    def test_other_failures_are_permanent(self):
        """Test unknown failures are not retried."""
        error = classify_command_error(
            CommandError(argv=["apt-get", "install", "nope"], returncode=100, stderr="E: Unable to locate package nope")
        )

        assert isinstance(error, PermanentError)
        assert not error.retryable
        assert error.kind == "permanent"
        assert "Unable to locate package nope" in error.message


class TestDescribe:
    """Tests for ProvisioningError.describe."""

    def test_describe(self):
        """Test the report form of an error."""
        error = TransientError(message="mirror down", step_id="update_package_index")
        assert error.describe() == {
            "kind": "transient",
            "message": "mirror down",
            "retryable": True,
            "step": "update_package_index",
        }

    def test_describe_without_step(self):
        """Test errors outside a step omit the step key."""
        error = CyclicDependencyError(message="cycle: a -> b -> a", cycle=("a", "b", "a"))
        assert error.describe() == {"kind": "cyclic_dependency", "message": "cycle: a -> b -> a", "retryable": False}
        assert str(error) == "cycle: a -> b -> a"

    def test_command_error_str(self):
        """Test command errors name the command and the last stderr line."""
        error = CommandError(argv=["ufw", "enable"], returncode=1, stderr="warning\nERROR: bad rule\n")
        assert str(error) == "ufw enable exited with 1: ERROR: bad rule"
