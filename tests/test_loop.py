import asyncio
from typing import Any

import pytest

from conductor.loop import (
    TERMINAL_STATES,
    Attempt,
    EvaluatorOptimizerLoop,
    FeedbackWindow,
    LoopState,
)
from conductor.models import EvaluationVerdict, Task, VerdictOutcome


class CountingGenerator:
    def __init__(self) -> None:
        self.windows: list[FeedbackWindow | None] = []

    async def generate(self, task: Task, feedback: FeedbackWindow | None) -> str:
        self.windows.append(feedback)
        return f"artifact-{len(self.windows)}"


class ScoreEvaluator:
    def __init__(self, scores: list[float | None], pass_at: float = 90.0) -> None:
        self.scores = list(scores)
        self.pass_at = pass_at
        self.calls = 0

    async def evaluate(self, task: Task, artifact: str) -> EvaluationVerdict:
        score = self.scores[self.calls]
        self.calls += 1
        passed = score is not None and score >= self.pass_at
        return EvaluationVerdict(
            outcome=VerdictOutcome.PASS if passed else VerdictOutcome.NEEDS_IMPROVEMENT,
            feedback=f"feedback for {artifact}: " + "x" * 50,
            score=score,
        )


def _verdict(score: float | None) -> EvaluationVerdict:
    return EvaluationVerdict(VerdictOutcome.NEEDS_IMPROVEMENT, "meh", score)


def test_never_passing_evaluator_stops_at_max_iterations() -> None:
    generator = CountingGenerator()
    evaluator = ScoreEvaluator([30, 70, 50, 60, 40])
    events: list[dict[str, Any]] = []
    loop = EvaluatorOptimizerLoop(5, event_hook=events.append)

    result = asyncio.run(loop.run(Task(goal="write release notes"), generator, evaluator))

    assert result.outcome is LoopState.MAX_ITERATIONS
    assert not result.passed
    assert len(result.history) == 5
    assert evaluator.calls == 5
    assert result.final_artifact == "artifact-2"
    assert result.best_iteration == 2
    assert events[-1] == {
        "event": "loop_finished",
        "outcome": "max_iterations",
        "iterations": 5,
        "best_iteration": 2,
    }


def test_pass_verdict_stops_early() -> None:
    generator = CountingGenerator()
    loop = EvaluatorOptimizerLoop(5)

    result = asyncio.run(loop.run(Task(goal="x"), generator, ScoreEvaluator([40, 95])))

    assert result.passed
    assert result.final_artifact == "artifact-2"
    assert result.transitions == [
        LoopState.GENERATE,
        LoopState.EVALUATE,
        LoopState.IMPROVE,
        LoopState.GENERATE,
        LoopState.EVALUATE,
        LoopState.PASSED,
    ]
    assert result.transitions[-1] in TERMINAL_STATES


def test_feedback_window_carries_latest_critique_and_bounded_history() -> None:
    generator = CountingGenerator()
    loop = EvaluatorOptimizerLoop(5, history_window=2, max_feedback_chars=200)

    asyncio.run(loop.run(Task(goal="x"), generator, ScoreEvaluator([10, 20, 30, 40, 50])))

    assert generator.windows[0] is None
    last_window = generator.windows[-1]
    assert last_window.iteration == 4
    assert last_window.last_artifact == "artifact-4"
    assert last_window.feedback.startswith("feedback for artifact-4")
    assert len(last_window.feedback) <= 100
    assert [line.split()[0] for line in last_window.earlier_summaries] == ["#2", "#3"]
    rendered = last_window.render()
    assert "Attempt 4 feedback" in rendered
    assert "Earlier attempts" in rendered


def test_regressed_attempt_kept_in_history_but_never_selected() -> None:
    loop = EvaluatorOptimizerLoop(3)

    result = asyncio.run(loop.run(Task(goal="x"), CountingGenerator(), ScoreEvaluator([60, 40, 50])))

    assert [attempt.regressed for attempt in result.history] == [False, True, True]
    assert result.final_artifact == "artifact-1"
    assert result.history_entries()[1]["regressed"] is True


def test_stop_on_regression_returns_best_prior_attempt() -> None:
    loop = EvaluatorOptimizerLoop(5, stop_on_regression=True)
    evaluator = ScoreEvaluator([50, 70, 65, 99, 99])

    result = asyncio.run(loop.run(Task(goal="x"), CountingGenerator(), evaluator))

    assert result.outcome is LoopState.REGRESSED
    assert evaluator.calls == 3
    assert result.final_artifact == "artifact-2"
    assert len(result.history) == 3


def test_evaluator_timeout_is_a_terminal_state() -> None:
    class HangingEvaluator:
        def __init__(self) -> None:
            self.calls = 0

        async def evaluate(self, task: Task, artifact: str) -> EvaluationVerdict:
            self.calls += 1
            if self.calls == 2:
                await asyncio.sleep(5)
            return _verdict(55)

    loop = EvaluatorOptimizerLoop(5, evaluator_timeout_seconds=0.01)

    result = asyncio.run(loop.run(Task(goal="x"), CountingGenerator(), HangingEvaluator()))

    assert result.outcome is LoopState.EVALUATOR_TIMEOUT
    assert len(result.history) == 2
    assert result.history[-1].verdict is None
    assert result.final_artifact == "artifact-1"


def test_time_budget_ends_loop_with_best_so_far() -> None:
    class SlowGenerator(CountingGenerator):
        async def generate(self, task: Task, feedback: FeedbackWindow | None) -> str:
            if self.windows:
                await asyncio.sleep(5)
            return await super().generate(task, feedback)

    loop = EvaluatorOptimizerLoop(5)

    result = asyncio.run(
        loop.run(Task(goal="x"), SlowGenerator(), ScoreEvaluator([45]), time_budget_seconds=0.05)
    )

    assert result.outcome is LoopState.TIME_BUDGET_EXCEEDED
    assert result.final_artifact == "artifact-1"


def test_per_call_max_iterations_override_and_validation() -> None:
    loop = EvaluatorOptimizerLoop(5)

    result = asyncio.run(
        loop.run(Task(goal="x"), CountingGenerator(), ScoreEvaluator([1, 2, 3]), 2)
    )

    assert len(result.history) == 2
    with pytest.raises(ValueError):
        asyncio.run(loop.run(Task(goal="x"), CountingGenerator(), ScoreEvaluator([1]), 0))


def test_best_attempt_rules() -> None:
    unscored = [Attempt(1, "a", _verdict(None)), Attempt(2, "b", _verdict(None))]
    tied = [Attempt(1, "a", _verdict(70)), Attempt(2, "b", _verdict(70))]

    assert EvaluatorOptimizerLoop.best_attempt([]) is None
    assert EvaluatorOptimizerLoop.best_attempt(unscored).iteration == 2
    assert EvaluatorOptimizerLoop.best_attempt(tied).iteration == 1
