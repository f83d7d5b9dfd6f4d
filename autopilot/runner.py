"""Phase state machine: task execution, review, and analysis."""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from autopilot.errors import (
    AutopilotError,
    ConfigurationError,
    ExecutionError,
    IterationLimitExceeded,
    SignalFailure,
)
from autopilot.executor import Executor
from autopilot.progress import Phase
from autopilot.prompts import (
    build_analysis_prompt,
    build_continue_prompt,
    build_first_review_prompt,
    build_second_review_prompt,
    build_task_prompt,
)
from autopilot.signals import FAILED, is_analysis_done, is_review_done, is_terminal

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    FULL = "full"  # task -> review -> analysis -> review
    REVIEW = "review"  # review -> analysis -> review
    ANALYSIS = "analysis"  # analysis -> review


class Log(Protocol):
    def set_phase(self, phase: Phase) -> None: ...
    def print(self, fmt: str, *args) -> None: ...


@dataclass
class RunnerConfig:
    plan_file: str | Path | None = None
    mode: Mode = Mode.FULL
    max_iterations: int = 50
    max_review_iterations: int = 10
    analysis_enabled: bool = True


class Runner:
    """Drives one session's pipeline, one agent invocation at a time."""

    def __init__(self, config: RunnerConfig, log: Log, task_executor: Executor, analysis_executor: Executor):
        self.config = config
        self.log = log
        self.task_executor = task_executor
        self.analysis_executor = analysis_executor

    async def run(self) -> None:
        mode = Mode(self.config.mode)
        if mode == Mode.FULL:
            if not self.config.plan_file:
                raise ConfigurationError("plan file required for full mode")
            if not Path(self.config.plan_file).is_file():
                raise ConfigurationError(f"plan file not found: {self.config.plan_file}")

            self._enter(Phase.TASK, "starting task execution phase")
            await self.run_task_phase()

        if mode in (Mode.FULL, Mode.REVIEW):
            self._enter(Phase.REVIEW, "starting first review phase")
            await self.run_review_phase(build_first_review_prompt())

        findings = await self.run_analysis_phase()
        if findings:
            self._enter(Phase.REVIEW, "starting second review phase (addressing analysis findings)")
            await self.run_review_phase(build_second_review_prompt(findings))

        self.log.print("all phases completed successfully (mode: %s)", mode.value)

    def _enter(self, phase: Phase, message: str) -> None:
        self.log.set_phase(phase)
        self.log.print(message)
        logger.info("%s phase: %s", phase.value, message)

    async def _invoke(self, executor: Executor, prompt: str, phase: Phase, iteration: int, limit: int):
        result = await executor.run(prompt)
        error = result.error
        if error is None:
            return result
        if not isinstance(error, AutopilotError):
            error = ExecutionError(str(error) or type(error).__name__)
        raise error.in_phase(phase.value, iteration, limit) from result.error

    async def run_task_phase(self) -> None:
        """Iterate until COMPLETED, FAILED, or the iteration cap."""
        limit = self.config.max_iterations
        last_output = ""
        for i in range(1, limit + 1):
            self.log.print("task iteration %d/%d", i, limit)
            if i == 1:
                prompt = build_task_prompt(self.config.plan_file, i)
            else:
                prompt = build_continue_prompt(last_output, Phase.TASK)

            result = await self._invoke(self.task_executor, prompt, Phase.TASK, i, limit)
            last_output = result.output

            if is_terminal(result.signal):
                if result.signal == FAILED:
                    raise SignalFailure(
                        f"task execution failed (FAILED signal received): {_explanation(result.output)}",
                    ).in_phase(Phase.TASK.value, i, limit)
                self.log.print("task phase completed (COMPLETED signal received)")
                return

        raise IterationLimitExceeded(
            f"max iterations ({limit}) reached without completion"
        ).in_phase(Phase.TASK.value, limit, limit)

    async def run_review_phase(self, prompt: str) -> None:
        """Iterate a review prompt until REVIEW_DONE, FAILED, or the review cap."""
        limit = self.config.max_review_iterations
        for i in range(1, limit + 1):
            self.log.print("review iteration %d/%d", i, limit)
            result = await self._invoke(self.task_executor, prompt, Phase.REVIEW, i, limit)

            if result.signal == FAILED:
                raise SignalFailure(
                    f"review failed (FAILED signal received): {_explanation(result.output)}",
                ).in_phase(Phase.REVIEW.value, i, limit)
            if is_review_done(result.signal):
                self.log.print("review completed (REVIEW_DONE signal received)")
                return

            prompt = build_continue_prompt(result.output, Phase.REVIEW)

        raise IterationLimitExceeded(
            f"max review iterations ({limit}) reached"
        ).in_phase(Phase.REVIEW.value, limit, limit)

    async def run_analysis_phase(self) -> str:
        """Run the analysis agent once; return its findings ("" when none)."""
        if not self.config.analysis_enabled:
            self.log.print("analysis disabled, skipping analysis and follow-up review")
            return ""

        self._enter(Phase.ANALYSIS, "starting analysis phase")
        result = await self._invoke(self.analysis_executor, build_analysis_prompt(), Phase.ANALYSIS, 1, 1)

        if result.signal == FAILED:
            raise SignalFailure(
                f"analysis failed (FAILED signal received): {_explanation(result.output)}",
            ).in_phase(Phase.ANALYSIS.value)

        if not result.output.strip():
            self.log.print("analysis found no issues")
            return ""

        if is_analysis_done(result.signal):
            self.log.print("analysis complete (CODEX_DONE signal received), found issues to review")
        else:
            self.log.print("analysis complete, found issues to review")
        return result.output


def _explanation(output: str, limit: int = 500) -> str:
    """The agent's own words around a failure, trimmed for error messages."""
    text = output.strip()
    if not text:
        return "no explanation given"
    return text[-limit:]
