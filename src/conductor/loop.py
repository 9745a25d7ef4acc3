from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from conductor.errors import EvaluatorTimeout
from conductor.models import EvaluationVerdict, Task

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


class Generator(Protocol):
    async def generate(self, task: Task, feedback: FeedbackWindow | None) -> str: ...


class Evaluator(Protocol):
    async def evaluate(self, task: Task, artifact: str) -> EvaluationVerdict: ...


class LoopState(StrEnum):
    GENERATE = "generate"
    EVALUATE = "evaluate"
    IMPROVE = "improve"
    PASSED = "passed"
    MAX_ITERATIONS = "max_iterations"
    REGRESSED = "regressed"
    EVALUATOR_TIMEOUT = "evaluator_timeout"
    TIME_BUDGET_EXCEEDED = "time_budget_exceeded"


TERMINAL_STATES = frozenset(
    {
        LoopState.PASSED,
        LoopState.MAX_ITERATIONS,
        LoopState.REGRESSED,
        LoopState.EVALUATOR_TIMEOUT,
        LoopState.TIME_BUDGET_EXCEEDED,
    }
)


def _one_line(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    if len(flat) > limit:
        return flat[: limit - 3] + "..."
    return flat


@dataclass(slots=True, frozen=True)
class Attempt:
    iteration: int
    artifact: str
    verdict: EvaluationVerdict | None
    regressed: bool = False

    @property
    def score(self) -> float | None:
        return None if self.verdict is None else self.verdict.score

    def summary_line(self, limit: int = 160) -> str:
        if self.verdict is None:
            return f"#{self.iteration} not evaluated"
        score = "n/a" if self.verdict.score is None else f"{self.verdict.score:g}"
        feedback = _one_line(self.verdict.feedback, limit) or "no feedback"
        return f"#{self.iteration} score={score} {self.verdict.outcome.value}: {feedback}"


@dataclass(slots=True, frozen=True)
class FeedbackWindow:
    """What the next generation sees: latest critique, latest attempt, older one-liners."""

    iteration: int
    feedback: str
    last_artifact: str
    earlier_summaries: tuple[str, ...] = ()

    def render(self) -> str:
        sections = [f"Attempt {self.iteration} feedback:\n{self.feedback}"]
        sections.append(f"Previous attempt:\n{self.last_artifact}")
        if self.earlier_summaries:
            sections.append("Earlier attempts:\n" + "\n".join(self.earlier_summaries))
        return "\n\n".join(sections)


@dataclass(slots=True)
class LoopResult:
    final_artifact: str
    history: list[Attempt]
    outcome: LoopState
    best_iteration: int | None = None
    transitions: list[LoopState] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.outcome is LoopState.PASSED

    def history_entries(self) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for attempt in self.history:
            entry: dict[str, Any] = {"iteration": attempt.iteration, "regressed": attempt.regressed}
            if attempt.verdict is not None:
                entry.update(attempt.verdict.to_dict())
            entries.append(entry)
        return entries


class EvaluatorOptimizerLoop:
    """Generate, evaluate and regenerate until a pass verdict or the iteration ceiling."""

    def __init__(
        self,
        max_iterations: int = 5,
        *,
        history_window: int = 3,
        max_feedback_chars: int = 4000,
        stop_on_regression: bool = False,
        evaluator_timeout_seconds: float = 0.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.max_iterations = max_iterations
        self.history_window = max(0, history_window)
        self.max_feedback_chars = max(200, max_feedback_chars)
        self.stop_on_regression = stop_on_regression
        self.evaluator_timeout_seconds = evaluator_timeout_seconds
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def best_attempt(history: list[Attempt]) -> Attempt | None:
        best: Attempt | None = None
        best_score = 0.0
        for attempt in history:
            if attempt.score is None:
                continue
            if best is None or attempt.score > best_score:
                best, best_score = attempt, attempt.score
        if best is None and history:
            return history[-1]
        return best

    def _window(self, history: list[Attempt]) -> FeedbackWindow:
        last = history[-1]
        feedback = "" if last.verdict is None else last.verdict.feedback
        earlier = history[:-1]
        if self.history_window:
            earlier = earlier[-self.history_window :]
        else:
            earlier = []
        return FeedbackWindow(
            iteration=last.iteration,
            feedback=feedback[: self.max_feedback_chars // 2],
            last_artifact=last.artifact[: self.max_feedback_chars],
            earlier_summaries=tuple(attempt.summary_line() for attempt in earlier),
        )

    async def _evaluate(self, evaluator: Evaluator, task: Task, artifact: str) -> EvaluationVerdict:
        if self.evaluator_timeout_seconds <= 0:
            return await evaluator.evaluate(task, artifact)
        try:
            async with asyncio.timeout(self.evaluator_timeout_seconds):
                return await evaluator.evaluate(task, artifact)
        except TimeoutError as exc:
            raise EvaluatorTimeout(
                f"Evaluator exceeded {self.evaluator_timeout_seconds:.1f}s"
            ) from exc

    def _finish(
        self,
        history: list[Attempt],
        outcome: LoopState,
        transitions: list[LoopState],
        chosen: Attempt | None = None,
    ) -> LoopResult:
        chosen = chosen or self.best_attempt(history)
        transitions.append(outcome)
        self._emit(
            {
                "event": "loop_finished",
                "outcome": outcome.value,
                "iterations": len(history),
                "best_iteration": chosen.iteration if chosen else None,
            }
        )
        return LoopResult(
            final_artifact=chosen.artifact if chosen else "",
            history=history,
            outcome=outcome,
            best_iteration=chosen.iteration if chosen else None,
            transitions=transitions,
        )

    async def run(
        self,
        task: Task,
        generator: Generator,
        evaluator: Evaluator,
        max_iterations: int | None = None,
        *,
        time_budget_seconds: float | None = None,
    ) -> LoopResult:
        limit = self.max_iterations if max_iterations is None else max_iterations
        if limit < 1:
            raise ValueError("max_iterations must be at least 1.")

        history: list[Attempt] = []
        transitions: list[LoopState] = []
        if time_budget_seconds is None:
            return await self._iterate(task, generator, evaluator, limit, history, transitions)
        try:
            async with asyncio.timeout(time_budget_seconds):
                return await self._iterate(task, generator, evaluator, limit, history, transitions)
        except TimeoutError:
            logger.warning("%s exceeded time budget of %.1fs", task.id, time_budget_seconds)
            return self._finish(history, LoopState.TIME_BUDGET_EXCEEDED, transitions)

    async def _iterate(
        self,
        task: Task,
        generator: Generator,
        evaluator: Evaluator,
        limit: int,
        history: list[Attempt],
        transitions: list[LoopState],
    ) -> LoopResult:
        feedback: FeedbackWindow | None = None

        for iteration in range(1, limit + 1):
            transitions.append(LoopState.GENERATE)
            artifact = await generator.generate(task, feedback)

            transitions.append(LoopState.EVALUATE)
            try:
                verdict = await self._evaluate(evaluator, task, artifact)
            except EvaluatorTimeout as exc:
                logger.warning("iteration %d of %s: %s", iteration, task.id, exc)
                history.append(Attempt(iteration=iteration, artifact=artifact, verdict=None))
                return self._finish(history, LoopState.EVALUATOR_TIMEOUT, transitions)

            prior_best = self.best_attempt(history)
            regressed = (
                verdict.score is not None
                and prior_best is not None
                and prior_best.score is not None
                and verdict.score < prior_best.score
            )
            attempt = Attempt(
                iteration=iteration, artifact=artifact, verdict=verdict, regressed=regressed
            )
            history.append(attempt)
            self._emit(
                {
                    "event": "loop_iteration",
                    "task_id": task.id,
                    "iteration": iteration,
                    "outcome": verdict.outcome.value,
                    "score": verdict.score,
                    "regressed": regressed,
                }
            )

            if verdict.passed:
                return self._finish(history, LoopState.PASSED, transitions, chosen=attempt)
            if regressed and self.stop_on_regression:
                return self._finish(history, LoopState.REGRESSED, transitions, chosen=prior_best)
            if iteration < limit:
                transitions.append(LoopState.IMPROVE)
                feedback = self._window(history)

        return self._finish(history, LoopState.MAX_ITERATIONS, transitions)
