"""Reusable step types for the stack catalogue."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

from ..provisioning.renderer import restrict_mode
from ..provisioning.steps import Phase, ProvisioningStep, StepContext

PathFn = Callable[[StepContext], PurePosixPath]
BindingsFn = Callable[[StepContext], dict[str, Any]]


def owner_of(ctx: StepContext) -> str | None:
    """Owner for project files: the admin user, or None when that is root."""
    user = ctx.config.admin_user
    return None if user == "root" else user


@dataclass
class RenderedFile:
    """A file rendered from a template onto the host."""

    path: PathFn
    template_id: str
    bindings: BindingsFn = field(default=lambda ctx: {})
    mode: int = 0o644
    secret: bool = False
    owned: bool = False  # Owned by the admin user instead of root

    def target(self, ctx: StepContext) -> PurePosixPath:
        return self.path(ctx)

    def render(self, ctx: StepContext) -> bytes:
        return ctx.renderer.render(self.template_id, self.bindings(ctx))

    @property
    def final_mode(self) -> int:
        return restrict_mode(self.mode) if self.secret else self.mode

    def is_current(self, ctx: StepContext) -> bool:
        path = self.target(ctx)
        if ctx.host.read_file(path) != self.render(ctx):
            return False
        return ctx.host.file_mode(path) == self.final_mode

    def write(self, ctx: StepContext) -> bool:
        """Place the file when it differs. Returns True when it changed."""
        if self.is_current(ctx):
            return False
        ctx.host.put_file(
            self.target(ctx),
            self.render(ctx),
            mode=self.mode,
            owner=owner_of(ctx) if self.owned else None,
            secret=self.secret,
        )
        return True


class RenderFilesStep(ProvisioningStep):
    """Render one or more templates to files on the host."""

    def __init__(
        self,
        step_id: str,
        phase: Phase,
        files: Sequence[RenderedFile],
        depends_on: Iterable[str] = (),
        description: str = "",
        on_change: Callable[[StepContext], None] | None = None,
    ):
        super().__init__(step_id, phase, depends_on, description)
        self.files = list(files)
        self.on_change = on_change

    def apply(self, ctx: StepContext) -> None:
        changed = [f.write(ctx) for f in self.files]
        if any(changed) and self.on_change:
            self.on_change(ctx)

    def is_applied(self, ctx: StepContext) -> bool:
        return all(f.is_current(ctx) for f in self.files)


class PackagesStep(ProvisioningStep):
    """Install apt packages."""

    def __init__(
        self,
        step_id: str,
        phase: Phase,
        packages: Callable[[StepContext], list[str]],
        depends_on: Iterable[str] = (),
        description: str = "",
    ):
        super().__init__(step_id, phase, depends_on, description)
        self.packages = packages

    def apply(self, ctx: StepContext) -> None:
        missing = ctx.packages.missing(self.packages(ctx))
        ctx.packages.install(missing)

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.packages.is_installed(self.packages(ctx))


class DirectoriesStep(ProvisioningStep):
    """Create directories, and empty files that other tools expect to exist."""

    def __init__(
        self,
        step_id: str,
        phase: Phase,
        directories: Callable[[StepContext], list[PurePosixPath]],
        files: Callable[[StepContext], list[PurePosixPath]] = lambda ctx: [],
        depends_on: Iterable[str] = (),
        description: str = "",
        mode: int = 0o755,
    ):
        super().__init__(step_id, phase, depends_on, description)
        self.directories = directories
        self.files = files
        self.mode = mode

    def apply(self, ctx: StepContext) -> None:
        owner = owner_of(ctx)
        argv = ["install", "-d", "-m", format(self.mode, "o")]
        if owner:
            argv += ["-o", owner, "-g", owner]
        ctx.host.run([*argv, *(str(d) for d in self.directories(ctx))])

        missing = [str(f) for f in self.files(ctx) if not ctx.host.exists(f)]
        if missing:
            ctx.host.run(["touch", *missing])
            if owner:
                ctx.host.run(["chown", f"{owner}:{owner}", *missing])

    def is_applied(self, ctx: StepContext) -> bool:
        return all(ctx.host.test(["test", "-d", str(d)]) for d in self.directories(ctx)) and all(
            ctx.host.exists(f) for f in self.files(ctx)
        )
