"""
Thinking trace for a pipeline run

Five fixed stages, each ending at a fixed overall progress milestone:

    Query Understanding     0 -> 20
    Search Planning        20 -> 40
    Iterative Search       40 -> 70
    Information Synthesis  70 -> 85
    Citation & Formatting  85 -> 100

Progress only moves forward. Once finish() or fail() is called the trace
is sealed and further updates are ignored.
"""

import logging
from typing import Awaitable, Callable, Optional, Union

from .models import (
    ReasoningStep,
    StageProgress,
    StepStatus,
    StepType,
    ThinkingProcess,
    ThinkingStep,
)

logger = logging.getLogger("deepsearch.trace")

STAGES = (
    ("Query Understanding", 0, 20),
    ("Search Planning", 20, 40),
    ("Iterative Search", 40, 70),
    ("Information Synthesis", 70, 85),
    ("Citation & Formatting", 85, 100),
)

ProgressCallback = Callable[[ThinkingProcess], Union[None, Awaitable[None]]]


class ThinkingTracker:
    """Mutates a ThinkingProcess in place as the pipeline advances"""

    def __init__(self, on_update: Optional[ProgressCallback] = None):
        self.process = ThinkingProcess()
        self._on_update = on_update
        self._sealed = False
        self._stage_index = -1

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def stage_number(self) -> int:
        return self._stage_index + 1

    def _set_progress(self, value: int) -> None:
        self.process.progress = max(self.process.progress, min(100, int(value)))

    def start_stage(self, stage_number: int, detail: str = "") -> Optional[ThinkingStep]:
        """Open a stage (1-based). Opening an earlier stage than the current one is ignored."""
        if self._sealed or stage_number - 1 < self._stage_index:
            return None

        # Close any stage that was skipped or left open
        for index in range(max(self._stage_index, 0), stage_number - 1):
            self._complete_open_steps()
            self._set_progress(STAGES[index][2])

        self._stage_index = stage_number - 1
        name, start, _ = STAGES[self._stage_index]
        self._set_progress(start)
        self.process.active_step = name
        self.process.stage_progress = StageProgress(
            current_stage=name,
            stage_number=stage_number,
            total_stages=len(STAGES),
            percent_complete=self.process.progress,
            detail=detail,
        )
        return self.add_step(f"Stage {stage_number}: {name}" + (f" - {detail}" if detail else ""))

    def advance(self, percent: int, detail: str = "") -> None:
        """Move overall progress forward within the current stage"""
        if self._sealed or self._stage_index < 0:
            return
        _, start, end = STAGES[self._stage_index]
        self._set_progress(max(start, min(end, percent)))
        self.process.stage_progress.percent_complete = self.process.progress
        if detail:
            self.process.stage_progress.detail = detail

    def complete_stage(self, detail: str = "") -> None:
        if self._sealed or self._stage_index < 0:
            return
        self._complete_open_steps()
        self._set_progress(STAGES[self._stage_index][2])
        self.process.stage_progress.percent_complete = self.process.progress
        if detail:
            self.process.stage_progress.detail = detail

    def add_step(
        self,
        content: str,
        step_type: StepType = StepType.THINKING,
        status: StepStatus = StepStatus.IN_PROGRESS
    ) -> Optional[ThinkingStep]:
        if self._sealed:
            return None
        step = ThinkingStep(type=step_type, content=content, status=status)
        self.process.steps.append(step)
        return step

    def add_search_step(self, query: str, result_count: int, failed: bool = False) -> None:
        content = (
            f"Search failed: {query}" if failed
            else f"Searched: {query} ({result_count} results)"
        )
        self.add_step(content, StepType.SEARCH, StepStatus.ERROR if failed else StepStatus.COMPLETE)

    def add_reasoning(self, thought: str, action: str = "", outcome: str = "") -> None:
        if self._sealed:
            return
        self.process.reasoning_path.append(ReasoningStep(thought=thought, action=action, outcome=outcome))

    def _complete_open_steps(self) -> None:
        for step in self.process.steps:
            if step.status == StepStatus.IN_PROGRESS:
                step.status = StepStatus.COMPLETE

    def finish(self) -> ThinkingProcess:
        """Complete every stage and seal the trace"""
        if not self._sealed:
            if self._stage_index < len(STAGES) - 1:
                self.start_stage(len(STAGES))
            self.complete_stage()
            self.process.active_step = None
            self._sealed = True
        return self.process

    def fail(self, message: str) -> ThinkingProcess:
        """Record a single terminal error step and seal the trace"""
        if not self._sealed:
            for step in self.process.steps:
                if step.status == StepStatus.IN_PROGRESS:
                    step.status = StepStatus.ERROR
            self.process.steps.append(ThinkingStep(
                type=StepType.ERROR,
                content=message,
                status=StepStatus.ERROR,
            ))
            self.process.active_step = None
            self.process.stage_progress = StageProgress(
                current_stage="Error",
                stage_number=self.process.stage_progress.stage_number,
                total_stages=len(STAGES),
                percent_complete=self.process.progress,
                detail=message,
            )
            self._sealed = True
        return self.process

    async def notify(self) -> None:
        """Invoke the progress callback, if any. Callback errors are logged and ignored."""
        if self._on_update is None:
            return
        try:
            outcome = self._on_update(self.process)
            if outcome is not None and hasattr(outcome, "__await__"):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")
