"""Sequential step runner with reverse-order cleanup."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional

from vmbuilder.constants import HOOK_STEP_COMPLETE
from vmbuilder.exceptions import BuildError, CancellationRequested, StepFailure
from vmbuilder.state import BuildState
from vmbuilder.utils import log


class StepAction(Enum):
    CONTINUE = "continue"
    HALT = "halt"


class Step(ABC):
    name: str

    @abstractmethod
    def run(self, state: BuildState) -> StepAction:  # pragma: no cover - runtime behaviour
        """Execute the step."""

    def cleanup(self, state: BuildState) -> None:
        """Undo the step's side effects; called for every step that ran."""
        return None


class BasicRunner:
    """Run steps one after another against a single BuildState.

    Cancellation is checked before each step; long-running steps watch
    ``state.cancel`` themselves. Every step that started gets its cleanup
    called in reverse order, whatever the outcome.
    """

    def __init__(self, steps: Iterable[Step]) -> None:
        self.steps: List[Step] = list(steps)
        self._lock = threading.RLock()
        self._state: Optional[BuildState] = None

    def run(self, state: BuildState) -> BuildState:
        with self._lock:
            if self._state is not None:
                raise BuildError("Runner is already running")
            self._state = state

        executed: List[Step] = []
        try:
            for step in self.steps:
                if state.cancel.is_set():
                    state.cancelled = True
                    log("INFO", "Build cancelled; skipping remaining steps")
                    break
                executed.append(step)
                if self._run_step(step, state) is StepAction.HALT:
                    state.halted = True
                    break
        finally:
            self._cleanup(executed, state)
            with self._lock:
                self._state = None
        return state

    def cancel(self) -> None:
        """Ask the active run to stop; safe to call at any time."""
        with self._lock:
            state = self._state
        if state is not None and not state.cancel.is_set():
            log("INFO", "Cancelling the step runner...")
            state.cancel.set()

    def _run_step(self, step: Step, state: BuildState) -> StepAction:
        log("DEBUG", f"Running step {step.name}")
        start = time.perf_counter()
        try:
            action = step.run(state)
            if action is StepAction.CONTINUE:
                state.hook.run(HOOK_STEP_COMPLETE, state.ui, step.name)
        except CancellationRequested:
            state.cancelled = True
            log("INFO", f"Step {step.name} interrupted by cancellation")
            return StepAction.HALT
        except StepFailure as exc:
            self._fail(state, exc)
            return StepAction.HALT
        except Exception as exc:  # noqa: BLE001
            log("ERROR", f"Unexpected failure in step {step.name}: {exc}")
            self._fail(state, StepFailure(step.name, str(exc), cause=exc))
            return StepAction.HALT

        if action is StepAction.HALT:
            if state.cancel.is_set():
                state.cancelled = True
            elif state.error is None:
                self._fail(state, StepFailure(step.name, "step halted without reporting an error"))
        log("DEBUG", f"Step {step.name} finished in {time.perf_counter() - start:.2f}s ({action.value})")
        return action

    @staticmethod
    def _fail(state: BuildState, error: StepFailure) -> None:
        state.error = error
        if state.cancel.is_set():
            state.cancelled = True
        state.ui.error(str(error))

    @staticmethod
    def _cleanup(executed: List[Step], state: BuildState) -> None:
        for step in reversed(executed):
            try:
                step.cleanup(state)
            except Exception as exc:  # noqa: BLE001
                log("WARN", f"Cleanup of step {step.name} failed: {exc}")
                state.ui.error(f"Cleanup of step '{step.name}' failed: {exc}")
