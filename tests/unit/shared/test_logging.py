"""Unit tests for servercore_cli.shared.logging module."""

import pytest

from servercore_cli.shared.logging import REDACTED, SecretRedactor


@pytest.mark.cli_unit
class TestSecretRedactor:
    """Tests for SecretRedactor."""

    def test_registered_values_are_masked(self):
        """Test string fields of an event lose registered values."""
        redactor = SecretRedactor()
        redactor.register("s3cr3t-value")

        event = redactor(None, "info", {"event": "step.failed", "error": "auth s3cr3t-value rejected", "attempt": 2})

        assert event == {"event": "step.failed", "error": f"auth {REDACTED} rejected", "attempt": 2}

    def test_longest_value_first(self):
        """Test a value containing another is masked whole."""
        redactor = SecretRedactor()
        redactor.register("abc", "abcdef")

        assert redactor.redact("x abcdef y") == f"x {REDACTED} y"

    def test_empty_values_ignored(self):
        """Test registering an empty string does not mask everything."""
        redactor = SecretRedactor()
        redactor.register("")

        assert redactor.redact("nothing secret") == "nothing secret"
