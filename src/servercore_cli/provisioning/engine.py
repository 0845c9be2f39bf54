"""Plan execution.

The engine walks a plan phase by phase and step by step, persisting the
execution record after every transition:

    pending -> running -> succeeded | failed
    pending -> skipped (a dependency did not succeed)

Transient errors are retried with bounded exponential backoff, permanent
errors fail the step, fatal errors abort the run. A failed phase stops the
run; succeeded steps stay recorded so the next run resumes from the first
step that did not succeed.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import (
    CommandError,
    FatalError,
    PermanentError,
    PostconditionViolation,
    ProvisioningError,
    TransientError,
    classify_command_error,
)
from ..shared.logging import get_logger
from .record import ExecutionRecord, StepStatus
from .steps import Phase, ProvisioningPlan, ProvisioningStep, StepContext

logger = get_logger(__name__)


class OutcomeStatus(Enum):
    """What happened to a step during one run."""

    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"  # Recorded succeeded and still applied
    FAILED = "failed"
    SKIPPED = "skipped"
    WOULD_APPLY = "would_apply"  # Dry run
    NOT_STARTED = "not_started"


class PhaseStatus(Enum):
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"
    NOT_STARTED = "not_started"


class RunStatus(Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"


@dataclass
class StepOutcome:
    """Result of one step in one run."""

    step_id: str
    status: OutcomeStatus
    attempts: int = 0
    error: str | None = None
    error_kind: str | None = None
    drift: bool = False

    @property
    def retried_on_resume(self) -> bool:
        """Failed and skipped steps run again on the next invocation."""
        return self.status in (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED, OutcomeStatus.NOT_STARTED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"step": self.step_id, "status": self.status.value}
        if self.attempts:
            data["attempts"] = self.attempts
        if self.error:
            data["error"] = self.error
            data["error_kind"] = self.error_kind
            data["retried_on_resume"] = self.retried_on_resume
        if self.drift:
            data["drift"] = True
        return data


@dataclass
class PhaseResult:
    phase: Phase
    status: PhaseStatus
    outcomes: list[StepOutcome] = field(default_factory=list)

    def outcome(self, step_id: str) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.step_id == step_id:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "steps": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass
class RunResult:
    status: RunStatus
    phases: list[PhaseResult] = field(default_factory=list)
    error: ProvisioningError | None = None

    def phase(self, phase: Phase) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == phase:
                return result
        return None

    def outcome(self, step_id: str) -> StepOutcome | None:
        for result in self.phases:
            outcome = result.outcome(step_id)
            if outcome:
                return outcome
        return None

    def phase_succeeded(self, phase: Phase) -> bool:
        result = self.phase(phase)
        return result is not None and result.status == PhaseStatus.SUCCEEDED


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient errors."""

    attempts: int = 4
    base_delay: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: Any) -> RetryPolicy:
        return cls(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )


class _StepFailed(Exception):
    def __init__(self, outcome: StepOutcome, error: ProvisioningError):
        super().__init__(outcome.error)
        self.outcome = outcome
        self.error = error


class ExecutionEngine:
    """Execute provisioning plans against a step context."""

    def __init__(
        self,
        ctx: StepContext,
        record: ExecutionRecord,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        redact: Callable[[str], str] | None = None,
    ):
        """Initialize execution engine.

        Args:
            ctx: Context handed to every step.
            record: Execution record, loaded by the caller.
            retry: Backoff policy for transient errors.
            sleep: Sleep used between retries (injectable for tests).
            redact: Scrubber for error text; defaults to the secret store's.
        """
        self.ctx = ctx
        self.record = record
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self.redact = redact or ctx.secrets.redact

    def run(
        self,
        plan: ProvisioningPlan,
        force: Iterable[str] = (),
        dry_run: bool = False,
        cancel: threading.Event | None = None,
    ) -> RunResult:
        """Execute a plan.

        Args:
            plan: Ordered steps to run.
            force: Step ids to re-apply even when recorded succeeded.
            dry_run: Decide what would run without applying or persisting.
            cancel: Checked between steps; when set, the run stops.

        Returns:
            RunResult with one PhaseResult per requested phase.

        Raises:
            Exception: Any error that is not a ProvisioningError, after the
                step has been recorded failed.
        """
        forced = set(force)
        would_succeed: set[str] = set()
        result = RunResult(status=RunStatus.SUCCESS)

        for phase in plan.phases:
            if result.status != RunStatus.SUCCESS:
                result.phases.append(self._not_started(plan, phase))
                continue

            phase_result = PhaseResult(phase=phase, status=PhaseStatus.SUCCEEDED)
            result.phases.append(phase_result)
            logger.info("phase.started", phase=phase.value, steps=len(plan.steps_for(phase)), dry_run=dry_run)

            for step in plan.steps_for(phase):
                if result.status != RunStatus.SUCCESS:
                    phase_result.outcomes.append(StepOutcome(step.id, OutcomeStatus.NOT_STARTED))
                    continue
                if cancel is not None and cancel.is_set():
                    logger.warning("run.cancelled", before_step=step.id)
                    phase_result.status = PhaseStatus.INTERRUPTED
                    result.status = RunStatus.INTERRUPTED
                    phase_result.outcomes.append(StepOutcome(step.id, OutcomeStatus.NOT_STARTED))
                    continue

                try:
                    outcome = self._run_step(step, step.id in forced, dry_run, would_succeed)
                except _StepFailed as failure:
                    phase_result.outcomes.append(failure.outcome)
                    phase_result.status = PhaseStatus.FATAL
                    result.status = RunStatus.FATAL
                    result.error = failure.error
                    continue

                phase_result.outcomes.append(outcome)
                if outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.SKIPPED):
                    phase_result.status = PhaseStatus.PARTIAL_FAILURE
                elif outcome.status == OutcomeStatus.WOULD_APPLY:
                    would_succeed.add(step.id)

            if phase_result.status == PhaseStatus.PARTIAL_FAILURE:
                result.status = RunStatus.PARTIAL_FAILURE
            logger.info("phase.completed", phase=phase.value, status=phase_result.status.value)

        return result

    def _not_started(self, plan: ProvisioningPlan, phase: Phase) -> PhaseResult:
        return PhaseResult(
            phase=phase,
            status=PhaseStatus.NOT_STARTED,
            outcomes=[StepOutcome(step.id, OutcomeStatus.NOT_STARTED) for step in plan.steps_for(phase)],
        )

    def _mark(self, step_id: str, status: StepStatus, **kwargs: Any) -> None:
        self.record.mark(step_id, status, **kwargs)
        self.record.save()

    def _check(self, step: ProvisioningStep) -> bool:
        try:
            return bool(step.is_applied(self.ctx))
        except CommandError as e:
            raise classify_command_error(e, step.id) from e

    def _run_step(
        self,
        step: ProvisioningStep,
        forced: bool,
        dry_run: bool,
        would_succeed: set[str],
    ) -> StepOutcome:
        log = logger.bind(step=step.id, phase=step.phase.value)
        drift = False

        if self.record.succeeded(step.id) and not forced:
            try:
                still_applied = self._check(step)
            except ProvisioningError as e:
                log.warning("step.check_failed", error=self.redact(e.message))
                still_applied = False
            if still_applied:
                log.debug("step.unchanged")
                return StepOutcome(step.id, OutcomeStatus.UNCHANGED)
            log.warning("step.drift", description=step.description)
            drift = True

        unmet = [
            dep
            for dep in sorted(step.depends_on)
            if not self.record.succeeded(dep) and dep not in would_succeed
        ]
        if unmet:
            message = f"Dependencies not satisfied: {', '.join(unmet)}"
            log.warning("step.skipped", unmet=unmet)
            if not dry_run:
                self._mark(step.id, StepStatus.SKIPPED, error=message, error_kind="dependency")
            return StepOutcome(step.id, OutcomeStatus.SKIPPED, error=message, error_kind="dependency")

        if dry_run:
            log.info("step.would_apply", forced=forced, drift=drift)
            return StepOutcome(step.id, OutcomeStatus.WOULD_APPLY, drift=drift)

        return self._apply(step, drift, log)

    def _apply(self, step: ProvisioningStep, drift: bool, log: Any) -> StepOutcome:
        attempts = 0

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "step.retrying",
                attempt=retry_state.attempt_number,
                max_attempts=self.retry.attempts,
                delay=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
                error=self.redact(str(error)),
            )

        retrying_kwargs: dict[str, Any] = {
            "retry": retry_if_exception_type(TransientError),
            "stop": stop_after_attempt(max(self.retry.attempts, 1)),
            "wait": wait_exponential(multiplier=self.retry.base_delay, max=self.retry.max_delay),
            "before_sleep": before_sleep,
            "reraise": True,
        }
        if self._sleep is not None:
            retrying_kwargs["sleep"] = self._sleep

        log.info("step.started", description=step.description, drift=drift)
        self._mark(step.id, StepStatus.RUNNING)

        try:
            for attempt in Retrying(**retrying_kwargs):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        step.apply(self.ctx)
                    except CommandError as e:
                        raise classify_command_error(e, step.id) from e

            if not self._check(step):
                raise PostconditionViolation(
                    message=f"Step {step.id!r} applied without error but its check still fails",
                    step_id=step.id,
                )
        except (TransientError, PermanentError) as e:
            message = self.redact(e.message)
            log.error("step.failed", error=message, kind=e.kind, attempts=attempts)
            self._mark(step.id, StepStatus.FAILED, error=message, error_kind=e.kind, attempts=attempts)
            return StepOutcome(step.id, OutcomeStatus.FAILED, attempts, message, e.kind, drift)
        except FatalError as e:
            message = self.redact(e.message)
            log.error("step.fatal", error=message, kind=e.kind)
            self._mark(step.id, StepStatus.FAILED, error=message, error_kind=e.kind, attempts=attempts)
            if e.step_id is None:
                e.step_id = step.id
            outcome = StepOutcome(step.id, OutcomeStatus.FAILED, attempts, message, e.kind, drift)
            raise _StepFailed(outcome, e) from e
        except Exception as e:
            message = self.redact(f"{type(e).__name__}: {e}")
            log.error("step.crashed", error=message)
            self._mark(step.id, StepStatus.FAILED, error=message, error_kind="internal", attempts=attempts)
            raise

        self._mark(step.id, StepStatus.SUCCEEDED, attempts=attempts)
        log.info("step.succeeded", attempts=attempts)
        return StepOutcome(step.id, OutcomeStatus.SUCCEEDED, attempts, drift=drift)
