"""Step indicator driven by the progress events of a submission."""

from __future__ import annotations

from dataclasses import dataclass, field

from .. import progress
from ..progress import ProgressEvent

TRACKED_STEPS = (progress.STEP_VALIDATION, progress.STEP_UPLOAD, progress.STEP_BUILD)

PENDING = "pending"
IN_PROGRESS = "progress"
SUCCEEDED = "success"
FAILED = "error"


@dataclass
class StepState:
    name: str
    status: str = PENDING
    message: str = ""


@dataclass
class ProgressTracker:
    steps: dict[str, StepState] = field(default_factory=lambda: {name: StepState(name) for name in TRACKED_STEPS})
    final_url: str | None = None
    finished: bool = False
    failed: bool = False
    messages: list[str] = field(default_factory=list)

    @property
    def can_close(self) -> bool:
        return self.finished or self.failed

    def status_of(self, step: str) -> str:
        return self.steps[step].status

    def _current_step(self) -> StepState:
        for state in self.steps.values():
            if state.status in {PENDING, IN_PROGRESS}:
                return state
        return self.steps[TRACKED_STEPS[-1]]

    def _advance_to(self, step: str) -> StepState:
        # Reaching a step means every step before it went through.
        for name in TRACKED_STEPS:
            if name == step:
                break
            if self.steps[name].status in {PENDING, IN_PROGRESS}:
                self.steps[name].status = SUCCEEDED
        return self.steps[step]

    def apply(self, event: ProgressEvent) -> None:
        self.messages.append(event.message)
        if event.step == progress.STEP_COMPLETE:
            if event.is_error:
                self._fail(self._current_step(), event.message)
                return
            for state in self.steps.values():
                state.status = SUCCEEDED
            self.final_url = event.url or self.final_url
            self.finished = True
            return

        if event.step in self.steps:
            state = self._advance_to(event.step)
        else:
            state = self._current_step()

        if event.is_error:
            self._fail(state, event.message)
        elif event.step in self.steps:
            if state.status != FAILED:
                state.status = SUCCEEDED if event.type == "success" else IN_PROGRESS
            state.message = event.message
        if event.url and event.type == "success":
            self.final_url = event.url

    def _fail(self, state: StepState, message: str) -> None:
        state.status = FAILED
        state.message = message
        self.failed = True

    def reset(self) -> None:
        for state in self.steps.values():
            state.status = PENDING
            state.message = ""
        self.final_url = None
        self.finished = False
        self.failed = False
        self.messages.clear()
