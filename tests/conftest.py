"""Shared test fixtures for servercore-cli tests.

This module provides:
- FakeHost: an in-memory Host that records commands and lets tests script
  their results
- ScriptedStep: a provisioning step whose apply/check behavior is set by the
  test
- ctx: a StepContext wired to a FakeHost and an in-memory secret store
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any

import pytest

from servercore_cli.config import ServercoreConfig
from servercore_cli.provisioning.adapters import (
    AptPackageManager,
    ComposeRuntime,
    Fail2banJails,
    SystemdServices,
    UfwFirewall,
)
from servercore_cli.provisioning.host import CommandResult, Host
from servercore_cli.provisioning.renderer import ConfigRenderer, restrict_mode
from servercore_cli.provisioning.secrets import SecretStore
from servercore_cli.provisioning.steps import Phase, ProvisioningStep, StepContext
from servercore_cli.stack.services import build_topology

# =============================================================================
# FakeHost - in-memory target host
# =============================================================================


class FakeHost(Host):
    """Host whose files live in dicts and whose commands are scripted.

    Unscripted commands succeed with empty output, except a few builtins
    (test -e/-d, install -d, touch) that act on the in-memory file system.
    """

    def __init__(self, identity: str = "test-host"):
        super().__init__(identity)
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.owners: dict[str, str | None] = {}
        self.dirs: set[str] = set()
        self.commands: list[list[str]] = []
        self.timeouts: list[float] = []
        self._rules: list[tuple[list[str], Any]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Callable[[list[str]], CommandResult] | None = None,
    ) -> None:
        """Script commands starting with prefix. Later rules win."""
        response = handler or CommandResult([], returncode, stdout, stderr)
        self._rules.append((list(prefix), response))

    def ran(self, *prefix: str) -> bool:
        return any(argv[: len(prefix)] == list(prefix) for argv in self.commands)

    def count(self, *prefix: str) -> int:
        return sum(1 for argv in self.commands if argv[: len(prefix)] == list(prefix))

    def _execute(self, argv: list[str], input: bytes | None, timeout: float) -> CommandResult:
        self.commands.append(list(argv))
        self.timeouts.append(timeout)
        for prefix, response in reversed(self._rules):
            if argv[: len(prefix)] == prefix:
                if callable(response):
                    return response(argv)
                return CommandResult(argv, response.returncode, response.stdout, response.stderr)
        return self._builtin(argv)

    def _builtin(self, argv: list[str]) -> CommandResult:
        if argv[:2] == ["test", "-e"]:
            found = argv[2] in self.files or argv[2] in self.dirs
            return CommandResult(argv, 0 if found else 1)
        if argv[:2] == ["test", "-d"]:
            return CommandResult(argv, 0 if argv[2] in self.dirs else 1)
        if argv[:2] == ["install", "-d"]:
            self.dirs.update(arg for arg in argv[2:] if arg.startswith("/"))
        elif argv[:1] == ["touch"]:
            for path in argv[1:]:
                self.files.setdefault(path, b"")
        return CommandResult(argv, 0)

    def read_file(self, path: PurePosixPath | str) -> bytes | None:
        return self.files.get(str(path))

    def file_mode(self, path: PurePosixPath | str) -> int | None:
        return self.modes.get(str(path), 0o644) if str(path) in self.files else None

    def put_file(
        self,
        path: PurePosixPath | str,
        data: bytes,
        mode: int = 0o644,
        owner: str | None = None,
        secret: bool = False,
    ) -> None:
        key = str(path)
        self.files[key] = bytes(data)
        self.modes[key] = restrict_mode(mode) if secret else mode
        self.owners[key] = owner


# =============================================================================
# ScriptedStep - step with test-controlled behavior
# =============================================================================


class ScriptedStep(ProvisioningStep):
    """Step that raises queued errors, then marks itself applied.

    Args:
        errors: Exceptions raised by successive apply calls.
        fail_with: Exception raised by every apply call.
        applied: Initial result of is_applied.
        settles: Whether a successful apply makes is_applied true.
        journal: Shared list the step appends its id to on every apply.
    """

    def __init__(
        self,
        step_id: str,
        phase: Phase = Phase.INSTALL,
        depends_on: tuple[str, ...] = (),
        errors: list[Exception] | None = None,
        fail_with: Exception | None = None,
        applied: bool = False,
        settles: bool = True,
        journal: list[str] | None = None,
        on_apply: Callable[[StepContext], None] | None = None,
    ):
        super().__init__(step_id, phase, depends_on)
        self.errors = list(errors or [])
        self.fail_with = fail_with
        self.applied = applied
        self.settles = settles
        self.journal = journal
        self.on_apply = on_apply
        self.apply_calls = 0

    def apply(self, ctx: StepContext) -> None:
        self.apply_calls += 1
        if self.journal is not None:
            self.journal.append(self.id)
        if self.on_apply:
            self.on_apply(ctx)
        if self.fail_with is not None:
            raise self.fail_with
        if self.errors:
            raise self.errors.pop(0)
        if self.settles:
            self.applied = True

    def is_applied(self, ctx: StepContext) -> bool:
        return self.applied


# =============================================================================
# Fixtures
# =============================================================================


def make_context(
    host: Host,
    config: ServercoreConfig,
    renderer: ConfigRenderer,
    secrets: SecretStore | None = None,
) -> StepContext:
    return StepContext(
        host=host,
        config=config,
        secrets=secrets or SecretStore(host.identity),
        renderer=renderer,
        topology=build_topology(config),
        packages=AptPackageManager(host),
        runtime=ComposeRuntime(host, config.project_dir),
        firewall=UfwFirewall(host),
        jails=Fail2banJails(host, renderer),
        services=SystemdServices(host),
    )


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def config(tmp_path) -> ServercoreConfig:
    return ServercoreConfig(state_dir=tmp_path / "deployments", domain="cloud.test")


@pytest.fixture
def renderer() -> ConfigRenderer:
    return ConfigRenderer(sleep=lambda seconds: None)


@pytest.fixture
def ctx(host, config, renderer) -> StepContext:
    return make_context(host, config, renderer)


@pytest.fixture
def step_factory() -> type[ScriptedStep]:
    """The ScriptedStep class, for tests that build their own plans."""
    return ScriptedStep


@pytest.fixture
def context_factory() -> Callable[..., StepContext]:
    return make_context
