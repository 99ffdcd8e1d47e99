"""Ordered step runner with reverse-order cleanup.

A build is a fixed list of steps. Each step has a forward action (``run``)
and a compensating action (``cleanup``). The runner executes the forward
actions in order until one halts or the build is cancelled, then calls
``cleanup`` on every step whose forward action began, newest first.

Example:
    result = Runner([StepA(), StepB()]).run(state)
    if result.status is PipelineStatus.HALTED:
        raise result.error
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Protocol

from loguru import logger

if TYPE_CHECKING:
    from cvmforge.state import BuildState

log = logger.bind(component="pipeline")


class StepAction(Enum):
    CONTINUE = "continue"
    HALT = "halt"


class StepStatus(StrEnum):
    NOT_RUN = "not-run"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"
    CANCELLED = "cancelled"


class Step(Protocol):
    """One stage of the build.

    ``cleanup`` is called during unwind whether or not ``run`` succeeded, so
    it must only touch resources the step itself recorded as created.
    """

    name: str

    def run(self, state: BuildState) -> StepAction: ...

    def cleanup(self, state: BuildState) -> None: ...


@dataclass(slots=True)
class StepRecord:
    name: str
    status: StepStatus = StepStatus.NOT_RUN


@dataclass(frozen=True, slots=True)
class RunResult:
    status: PipelineStatus
    steps: tuple[StepRecord, ...]
    error: BaseException | None = None
    cleanup_errors: tuple[BaseException, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.status is PipelineStatus.COMPLETED


class Runner:
    """Runs steps strictly in declared order and unwinds in reverse."""

    def __init__(self, steps: Sequence[Step]) -> None:
        self._steps = tuple(steps)
        self._status = PipelineStatus.RUNNING

    @property
    def status(self) -> PipelineStatus:
        return self._status

    def run(self, state: BuildState) -> RunResult:
        """Run every step, then unwind.

        A ``KeyboardInterrupt`` or ``SystemExit`` escaping a step sets the
        cancellation latch, unwinds the started steps, and is re-raised.
        """
        records = [StepRecord(step.name) for step in self._steps]
        started: list[tuple[Step, StepRecord]] = []
        self._status = PipelineStatus.RUNNING

        try:
            self._forward(state, records, started)
        except BaseException as e:
            log.warning("Interrupted by {err!r}, cleaning up", err=e)
            state.cancellation.cancel()
            state.halted = True
            self._status = PipelineStatus.CANCELLED
            if started and started[-1][1].status is StepStatus.RUNNING:
                started[-1][1].status = StepStatus.CANCELLED
            self._unwind(state, started)
            raise

        self._unwind(state, started)

        return RunResult(
            status=self._status,
            steps=tuple(records),
            error=state.error,
            cleanup_errors=tuple(state.cleanup_errors),
        )

    def _forward(
        self,
        state: BuildState,
        records: list[StepRecord],
        started: list[tuple[Step, StepRecord]],
    ) -> None:
        for step, record in zip(self._steps, records, strict=True):
            if state.cancelled:
                log.info("Cancelled before step {name}", name=step.name)
                self._status = PipelineStatus.CANCELLED
                return

            record.status = StepStatus.RUNNING
            started.append((step, record))
            log.debug("Running step {name}", name=step.name)

            try:
                action = step.run(state)
            except Exception as e:
                log.error("Step {name} raised {err}", name=step.name, err=e)
                action = state.halt(e)

            if action is StepAction.HALT:
                state.halted = True
                if state.cancelled:
                    record.status = StepStatus.CANCELLED
                    self._status = PipelineStatus.CANCELLED
                else:
                    record.status = StepStatus.FAILED
                    self._status = PipelineStatus.HALTED
                return

            record.status = StepStatus.COMPLETED

        self._status = PipelineStatus.CANCELLED if state.cancelled else PipelineStatus.COMPLETED

    def _unwind(self, state: BuildState, started: list[tuple[Step, StepRecord]]) -> None:
        for step, _ in reversed(started):
            log.debug("Cleaning up step {name}", name=step.name)
            try:
                step.cleanup(state)
            except Exception as e:
                log.warning("Cleanup of {name} failed: {err}", name=step.name, err=e)
                state.cleanup_failed(f"cleanup of {step.name} failed: {e}", e)
