"""Command execution on the target host.

A Host runs argv lists and moves files. ``LocalHost`` runs commands with
subprocess; ``SshHost`` wraps them in ``ssh`` in batch mode (execution fails
instead of prompting). Failed commands raise ``CommandError``; the engine
classifies them as transient or permanent.
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
import subprocess
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from ..errors import CommandError
from ..shared.logging import get_logger
from .renderer import ConfigRenderer, restrict_mode

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 1800.0
LOCAL_NAMES = ("localhost", "127.0.0.1", "::1", "local")


@dataclass
class CommandResult:
    """Result of a command run on a host."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Host(metaclass=ABCMeta):
    """Target of provisioning commands."""

    def __init__(self, identity: str, sudo: bool = False, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.identity = identity
        self.sudo = sudo
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.identity!r}>"

    @abstractmethod
    def _execute(self, argv: list[str], input: bytes | None, timeout: float) -> CommandResult:
        pass

    @abstractmethod
    def put_file(
        self,
        path: PurePosixPath | str,
        data: bytes,
        mode: int = 0o644,
        owner: str | None = None,
        secret: bool = False,
    ) -> None:
        """Atomically place a file on the host."""

    def _privileged(self, argv: list[str]) -> list[str]:
        return ["sudo", "-n", *argv] if self.sudo else list(argv)

    def run(
        self,
        argv: list[str],
        *,
        input: bytes | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command.

        Raises:
            CommandError: Non-zero exit (when check is true), timeout, or
                missing executable.
        """
        argv = self._privileged([str(a) for a in argv])
        logger.debug("host.run", host=self.identity, command=shlex.join(argv))
        result = self._execute(argv, input, timeout or self.timeout)
        if check and not result.ok:
            raise CommandError(
                argv=argv, returncode=result.returncode, stderr=result.stderr, stdout=result.stdout
            )
        return result

    def test(self, argv: list[str], timeout: float | None = None) -> bool:
        """Run a check command; True on exit code 0."""
        return self.run(argv, timeout=timeout, check=False).ok

    def shell(self, script: str, *, input: bytes | None = None, check: bool = True) -> CommandResult:
        """Run a POSIX shell snippet (pipes, redirections)."""
        return self.run(["sh", "-c", script], input=input, check=check)

    def exists(self, path: PurePosixPath | str, timeout: float | None = None) -> bool:
        return self.test(["test", "-e", str(path)], timeout=timeout)

    def read_file(self, path: PurePosixPath | str) -> bytes | None:
        """File content, or None when the file does not exist."""
        if not self.exists(path):
            return None
        result = self.run(["cat", str(path)])
        return result.stdout.encode("utf-8", "surrogateescape")

    def file_mode(self, path: PurePosixPath | str) -> int | None:
        """Permission bits, or None when the file does not exist."""
        result = self.run(["stat", "-c", "%a", str(path)], check=False)
        if not result.ok:
            return None
        return int(result.stdout.strip(), 8)


def _completed(argv: list[str], completed: subprocess.CompletedProcess) -> CommandResult:
    return CommandResult(
        argv=argv,
        returncode=completed.returncode,
        stdout=completed.stdout.decode("utf-8", "surrogateescape"),
        stderr=completed.stderr.decode("utf-8", "replace"),
    )


class LocalHost(Host):
    """The machine the CLI runs on."""

    def __init__(
        self,
        identity: str = "localhost",
        sudo: bool = False,
        renderer: ConfigRenderer | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        super().__init__(identity, sudo=sudo, timeout=timeout)
        self.renderer = renderer or ConfigRenderer()

    def _execute(self, argv: list[str], input: bytes | None, timeout: float) -> CommandResult:
        try:
            completed = subprocess.run(
                argv,
                input=input,
                stdin=None if input is not None else subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=argv, returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            raise CommandError(argv=argv, timed_out=True) from None
        return _completed(argv, completed)

    def read_file(self, path: PurePosixPath | str) -> bytes | None:
        if self.sudo:
            return super().read_file(path)
        try:
            return Path(path).read_bytes()
        except FileNotFoundError:
            return None

    def file_mode(self, path: PurePosixPath | str) -> int | None:
        try:
            return os.stat(path).st_mode & 0o7777
        except FileNotFoundError:
            return None

    def put_file(
        self,
        path: PurePosixPath | str,
        data: bytes,
        mode: int = 0o644,
        owner: str | None = None,
        secret: bool = False,
    ) -> None:
        if self.sudo:
            _install_via_command(self, path, data, restrict_mode(mode) if secret else mode, owner)
            return
        self.renderer.write(Path(path), data, mode=mode, secret=secret)
        if owner:
            try:
                shutil.chown(path, user=owner, group=owner)
            except (LookupError, PermissionError, OSError) as e:
                raise CommandError(argv=["chown", owner, str(path)], returncode=1, stderr=str(e)) from e


class SshHost(Host):
    """A machine reached with the ssh client."""

    def __init__(
        self,
        hostname: str,
        user: str | None = None,
        port: int | None = None,
        sudo: bool = False,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        ssh_options: tuple[str, ...] = ("-oBatchMode=yes", "-oConnectTimeout=15"),
    ):
        super().__init__(hostname, sudo=sudo, timeout=timeout)
        self.hostname = hostname
        self.user = user
        self.port = port
        self.ssh_options = ssh_options

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.hostname}" if self.user else self.hostname

    def ssh_argv(self, remote_argv: list[str]) -> list[str]:
        argv = ["ssh", *self.ssh_options]
        if self.port:
            argv += ["-p", str(self.port)]
        return [*argv, self.destination, "--", shlex.join(remote_argv)]

    def _execute(self, argv: list[str], input: bytes | None, timeout: float) -> CommandResult:
        full_argv = self.ssh_argv(argv)
        try:
            completed = subprocess.run(
                full_argv,
                input=input,
                stdin=None if input is not None else subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            return CommandResult(argv=argv, returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            raise CommandError(argv=argv, timed_out=True) from None
        return _completed(argv, completed)

    def put_file(
        self,
        path: PurePosixPath | str,
        data: bytes,
        mode: int = 0o644,
        owner: str | None = None,
        secret: bool = False,
    ) -> None:
        if secret:
            mode = restrict_mode(mode)
        _install_via_command(self, path, data, mode, owner)


def _install_via_command(
    host: Host, path: PurePosixPath | str, data: bytes, mode: int, owner: str | None
) -> None:
    """Upload through stdin with install(1), then rename into place.

    install applies mode and owner when it creates the temporary file, and
    mv within one directory is an atomic rename.
    """
    target = PurePosixPath(path)
    tmp = target.with_name(f".{target.name}.servercore-tmp")
    install = ["install", "-D", "-m", format(mode, "o")]
    if owner:
        install += ["-o", owner, "-g", owner]
    install += ["/dev/stdin", str(tmp)]
    script = f"{shlex.join(install)} && mv -f {shlex.quote(str(tmp))} {shlex.quote(str(target))}"
    host.shell(script, input=data)


_TARGET_RE = re.compile(r"^(?:(?P<user>[^@]+)@)?(?:\[(?P<ipv6>[^\]]+)\]|(?P<host>[^:]+))(?::(?P<port>\d+))?$")


@dataclass(frozen=True)
class Target:
    """Parsed ``[user@]host[:port]`` target."""

    hostname: str
    user: str | None = None
    port: int | None = None

    @property
    def identity(self) -> str:
        return self.hostname

    @property
    def is_local(self) -> bool:
        return self.hostname in LOCAL_NAMES and self.user is None and self.port is None


def parse_target(value: str) -> Target:
    """Parse a target string.

    >>> parse_target("ubuntu@cloud.example.net:7392")
    Target(hostname='cloud.example.net', user='ubuntu', port=7392)
    >>> parse_target("[fe80::1]:22").hostname
    'fe80::1'
    """
    match = _TARGET_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid target {value!r}, expected [user@]host[:port]")
    hostname = match.group("ipv6") or match.group("host")
    port = int(match.group("port")) if match.group("port") else None
    return Target(hostname=hostname, user=match.group("user"), port=port)


def make_host(target: Target, sudo: bool = False, renderer: ConfigRenderer | None = None) -> Host:
    """Create the Host implementation for a target."""
    if target.is_local:
        return LocalHost(identity=target.identity, sudo=sudo, renderer=renderer)
    return SshHost(target.hostname, user=target.user, port=target.port, sudo=sudo)
