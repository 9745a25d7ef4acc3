import asyncio
from typing import Any

import pytest

from conductor.errors import WorkerFailure
from conductor.gateway import (
    FunctionTool,
    HookEvent,
    HookRegistry,
    RuleTable,
    ToolGateway,
    ToolRegistry,
)
from conductor.loop import EvaluatorOptimizerLoop
from conductor.models import (
    EvaluationVerdict,
    MemoryScope,
    Subtask,
    VerdictOutcome,
    WorkerResult,
    WorkerStatus,
)
from conductor.session import SessionContext
from conductor.worker import ArtifactWriter, EvaluatedWorker, WorkerContext, WorkerUnit


def _gateway(written: list[str] | None = None, **kwargs: Any) -> ToolGateway:
    def write_file(path: str, content: str = "") -> str:
        if written is not None:
            written.append(path)
        return "ok"

    registry = ToolRegistry([FunctionTool("write_file", write_file, resource_key_field="path")])
    kwargs.setdefault(
        "rules", RuleTable.from_patterns(allow=["write_file"], deny=["write_file(.env)"])
    )
    return ToolGateway(registry, **kwargs)


def _subtask(**kwargs: Any) -> Subtask:
    values: dict[str, Any] = {
        "id": "subtask-001",
        "type": "edit",
        "description": "Update config",
        "resource_claims": frozenset({"config.yaml", ".env"}),
    }
    values.update(kwargs)
    return Subtask(**values)


def test_denied_tool_call_does_not_crash_worker() -> None:
    written: list[str] = []

    async def handler(context: WorkerContext) -> dict[str, Any]:
        denied = await context.tools.call("write_file", path=".env", content="SECRET=1")
        allowed = await context.tools.call("write_file", path="config.yaml", content="a: 1")
        return {"env_written": not denied.refused, "config_written": allowed.ok}

    worker = WorkerUnit({"edit": handler})

    result = asyncio.run(worker.run(_subtask(), _gateway(written), SessionContext()))

    assert result.status is WorkerStatus.COMPLETED
    assert result.artifacts == {"env_written": False, "config_written": True}
    assert written == ["config.yaml"]
    assert [record.decision["kind"] for record in result.tool_call_log] == ["deny", "allow"]


def test_unclaimed_resource_is_refused_before_the_gateway() -> None:
    written: list[str] = []

    async def handler(context: WorkerContext) -> dict[str, Any]:
        outcome = await context.tools.call("write_file", path="secrets.yaml", content="x")
        return {"reason": outcome.decision.reason, "stage": outcome.decision.stage}

    worker = WorkerUnit({"edit": handler})
    gateway = _gateway(written)

    result = asyncio.run(worker.run(_subtask(), gateway, SessionContext()))

    assert result.artifacts == {"reason": "unclaimed-resource: secrets.yaml", "stage": "worker"}
    assert written == []
    assert len(gateway.audit) == 0
    assert len(result.tool_call_log) == 1


def test_claimed_path_matches_other_spellings_of_the_same_file() -> None:
    written: list[str] = []

    async def handler(context: WorkerContext) -> dict[str, Any]:
        outcome = await context.tools.call("write_file", path="./src//app.py", content="x")
        return {"ok": outcome.ok}

    subtask = _subtask(resource_claims=frozenset({"src/app.py"}))

    result = asyncio.run(
        WorkerUnit({"edit": handler}).run(subtask, _gateway(written), SessionContext())
    )

    assert result.artifacts == {"ok": True}
    assert written == ["./src//app.py"]


def test_handler_exceptions_become_failed_results() -> None:
    async def crash(context: WorkerContext) -> dict[str, Any]:
        raise KeyError("missing field")

    async def give_up(context: WorkerContext) -> dict[str, Any]:
        raise WorkerFailure("schema mismatch", retriable=False)

    worker = WorkerUnit({"edit": crash, "migrate": give_up})
    session = SessionContext()

    crashed = asyncio.run(worker.run(_subtask(), _gateway(), session, attempt=2))
    gave_up = asyncio.run(worker.run(_subtask(type="migrate"), _gateway(), session))

    assert crashed.status is WorkerStatus.FAILED
    assert crashed.error_detail.startswith("KeyError")
    assert crashed.retriable is True
    assert crashed.attempts == 2
    assert gave_up.error_detail == "WorkerFailure: schema mismatch"
    assert gave_up.retriable is False


def test_missing_handler_fails_without_retry() -> None:
    worker = WorkerUnit()

    result = asyncio.run(worker.run(_subtask(type="unknown"), _gateway(), SessionContext()))

    assert result.status is WorkerStatus.FAILED
    assert "no handler" in result.error_detail
    assert result.retriable is False


def test_gateway_unavailable_aborts_the_subtask() -> None:
    hooks = HookRegistry()

    def broken(context: Any) -> None:
        raise RuntimeError("policy engine offline")

    hooks.register(HookEvent.PRE_TOOL_USE, broken)

    async def handler(context: WorkerContext) -> dict[str, Any]:
        await context.tools.call("write_file", path="config.yaml")
        return {"unreachable": True}

    worker = WorkerUnit(default_handler=handler)

    result = asyncio.run(worker.run(_subtask(), _gateway(hooks=hooks), SessionContext()))

    assert result.status is WorkerStatus.FAILED
    assert result.error_detail.startswith("gateway-unavailable")
    assert result.retriable is False


def test_worker_cancellation_propagates() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        await asyncio.sleep(10)
        return {}

    worker = WorkerUnit(default_handler=handler)

    async def _run() -> None:
        task = asyncio.create_task(worker.run(_subtask(), _gateway(), SessionContext()))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())


def test_worker_reads_upstream_artifacts_and_writes_memory() -> None:
    session = SessionContext()
    session.record_result(
        WorkerResult(
            subtask_id="subtask-001",
            status=WorkerStatus.COMPLETED,
            artifacts={"schema": "v2"},
        )
    )
    session.record_result(WorkerResult(subtask_id="subtask-000", status=WorkerStatus.FAILED))
    seen: dict[str, Any] = {}

    async def handler(context: WorkerContext) -> dict[str, Any]:
        seen.update({key: dict(value) for key, value in context.upstream.items()})
        await context.memory.set("schema_version", "v2", MemoryScope.PERSISTENT)
        context.memory.note("applied schema v2")
        return {"done": True}

    dependent = _subtask(id="subtask-002", depends_on=frozenset({"subtask-001", "subtask-000"}))

    result = asyncio.run(WorkerUnit(default_handler=handler).run(dependent, _gateway(), session))

    assert result.status is WorkerStatus.COMPLETED
    assert seen == {"subtask-001": {"schema": "v2"}}
    assert session.history("schema_version")[0].writer == "worker-subtask-002"
    assert session.transcript[-1]["role"] == "worker-subtask-002"


class ScriptedGenerator:
    def __init__(self) -> None:
        self.feedback: list[Any] = []

    async def generate(self, task: Any, feedback: Any) -> str:
        self.feedback.append(feedback)
        return f"draft {len(self.feedback)} for {task.goal}"


class ThresholdEvaluator:
    def __init__(self, scores: list[float]) -> None:
        self.scores = list(scores)

    async def evaluate(self, task: Any, artifact: str) -> EvaluationVerdict:
        score = self.scores.pop(0)
        outcome = VerdictOutcome.PASS if score >= 80 else VerdictOutcome.NEEDS_IMPROVEMENT
        return EvaluationVerdict(outcome=outcome, feedback=f"score {score}", score=score)


def test_evaluated_worker_refines_artifact() -> None:
    handler = EvaluatedWorker(
        EvaluatorOptimizerLoop(3),
        lambda context: ScriptedGenerator(),
        ThresholdEvaluator([50, 85]),
    )
    worker = WorkerUnit(default_handler=handler)

    result = asyncio.run(worker.run(_subtask(), _gateway(), SessionContext()))

    assert result.status is WorkerStatus.COMPLETED
    assert result.artifacts["artifact"] == "draft 2 for Update config"
    assert result.artifacts["loop_outcome"] == "passed"
    assert result.artifacts["best_iteration"] == 2
    assert len(result.artifacts["history"]) == 2


def test_evaluated_worker_can_require_a_pass() -> None:
    handler = EvaluatedWorker(
        EvaluatorOptimizerLoop(2),
        lambda context: ScriptedGenerator(),
        ThresholdEvaluator([10, 20]),
        require_pass=True,
    )

    result = asyncio.run(
        WorkerUnit(default_handler=handler).run(_subtask(), _gateway(), SessionContext())
    )

    assert result.status is WorkerStatus.FAILED
    assert "max_iterations" in result.error_detail
    assert result.retriable is False


async def _draft(context: WorkerContext) -> dict[str, Any]:
    return {"artifact": f"draft for {context.subtask.id}"}


def test_artifact_writer_writes_claimed_files_through_the_gateway() -> None:
    written: list[str] = []
    gateway = _gateway(written)
    subtask = _subtask(type="modify", resource_claims=frozenset({"./docs/guide.md", "billing"}))

    result = asyncio.run(
        WorkerUnit({"modify": ArtifactWriter(_draft)}).run(subtask, gateway, SessionContext())
    )

    assert result.status is WorkerStatus.COMPLETED
    assert result.artifacts["written"] == ["docs/guide.md"]
    assert written == ["docs/guide.md"]
    assert [record.input["path"] for record in gateway.audit.records()] == ["docs/guide.md"]


def test_artifact_writer_fails_when_the_write_is_refused() -> None:
    written: list[str] = []
    gateway = _gateway(written, rules=RuleTable.from_patterns(allow=[], deny=["write_file"]))
    subtask = _subtask(type="modify", resource_claims=frozenset({"config.yaml"}))

    result = asyncio.run(
        WorkerUnit({"modify": ArtifactWriter(_draft)}).run(subtask, gateway, SessionContext())
    )

    assert result.status is WorkerStatus.FAILED
    assert result.retriable is False
    assert "write to config.yaml refused" in result.error_detail
    assert written == []
