import asyncio
from typing import Any

import pytest

from conductor.dispatch import (
    BatchResult,
    DispatchScheduler,
    count_parallelizable,
    find_claim_conflicts,
    plan_waves,
    validate_isolation,
)
from conductor.errors import DecompositionError, IsolationViolation, WorkerFailure
from conductor.gateway import HookEvent, HookRegistry, ToolGateway, ToolRegistry
from conductor.models import RunStatus, Subtask, WorkerResult, WorkerStatus
from conductor.session import SessionContext
from conductor.worker import WorkerContext, WorkerUnit


def _subtask(
    subtask_id: str,
    claims: set[str] | None = None,
    depends_on: set[str] | None = None,
    subtask_type: str = "edit",
) -> Subtask:
    return Subtask(
        id=subtask_id,
        type=subtask_type,
        description=f"work on {subtask_id}",
        resource_claims=frozenset(claims or set()),
        depends_on=frozenset(depends_on or set()),
    )


def _scheduler(worker: WorkerUnit, **kwargs: Any) -> DispatchScheduler:
    return DispatchScheduler(worker, ToolGateway(ToolRegistry()), **kwargs)


class ClaimWatcher:
    """Handler that records which claims are held at the same time."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.active: dict[str, str] = {}
        self.overlaps: list[tuple[str, str, str]] = []
        self.max_running = 0
        self.running = 0
        self.order: list[str] = []

    async def __call__(self, context: WorkerContext) -> dict[str, Any]:
        subtask = context.subtask
        for key in subtask.resource_claims:
            if key in self.active:
                self.overlaps.append((key, self.active[key], subtask.id))
            self.active[key] = subtask.id
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.order.append(subtask.id)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
            for key in subtask.resource_claims:
                if self.active.get(key) == subtask.id:
                    del self.active[key]
        return {"done": subtask.id}


def test_plan_waves_orders_by_dependency() -> None:
    subtasks = [
        _subtask("c", depends_on={"a", "b"}),
        _subtask("a"),
        _subtask("b", depends_on={"a"}),
        _subtask("d"),
    ]

    waves = plan_waves(subtasks)

    assert [[s.id for s in wave] for wave in waves] == [["a", "d"], ["b"], ["c"]]


@pytest.mark.parametrize(
    ("subtasks", "reason"),
    [
        ([_subtask("a"), _subtask("a")], "malformed-task"),
        ([_subtask("a", depends_on={"ghost"})], "unknown-dependency"),
        ([_subtask("a", depends_on={"b"}), _subtask("b", depends_on={"a"})], "dependency-cycle"),
    ],
)
def test_plan_waves_rejects_bad_graphs(subtasks: list[Subtask], reason: str) -> None:
    with pytest.raises(DecompositionError) as exc_info:
        plan_waves(subtasks)

    assert exc_info.value.reason == reason


def test_shared_claims_need_a_dependency_path() -> None:
    unordered = [_subtask("x", {"fileA"}), _subtask("y", {"fileA"})]
    transitively_ordered = [
        _subtask("x", {"fileA"}),
        _subtask("m", {"fileB"}, {"x"}),
        _subtask("y", {"fileA"}, {"m"}),
    ]

    assert find_claim_conflicts(unordered) == [("fileA", "x", "y")]
    assert find_claim_conflicts(transitively_ordered) == []
    with pytest.raises(IsolationViolation) as exc_info:
        validate_isolation(unordered)
    assert exc_info.value.reason == "unresolvable-conflict"
    assert exc_info.value.conflicts == [("fileA", "x", "y")]


def test_path_spellings_of_one_file_conflict() -> None:
    subtasks = [_subtask("x", {"src/a.py"}), _subtask("y", {"./src/a.py"})]

    assert find_claim_conflicts(subtasks) == [("src/a.py", "x", "y")]
    assert count_parallelizable(subtasks) == 0


def test_count_parallelizable() -> None:
    subtasks = [
        _subtask("a", {"one"}),
        _subtask("b", {"two"}),
        _subtask("c", {"two"}, {"b"}),
        _subtask("d", {"three"}, {"a"}),
    ]

    assert count_parallelizable(subtasks) == 1


def test_disjoint_subtasks_run_in_one_wave_and_complete() -> None:
    watcher = ClaimWatcher()
    scheduler = _scheduler(WorkerUnit(default_handler=watcher))
    session = SessionContext()
    subtasks = [
        _subtask("subtask-001", {"config.yaml"}),
        _subtask("subtask-002", {"secrets.yaml"}),
    ]

    batch = asyncio.run(scheduler.dispatch(subtasks, session))
    outcome = batch.outcome()

    assert batch.waves == [["subtask-001", "subtask-002"]]
    assert outcome.status is RunStatus.COMPLETED
    assert watcher.max_running == 2
    assert session.claims.peak_concurrency == 2
    assert session.claims.violations == []
    assert session.claims.active() == {}


def test_no_two_running_subtasks_share_claims() -> None:
    watcher = ClaimWatcher(delay=0.005)
    scheduler = _scheduler(WorkerUnit(default_handler=watcher), max_parallel=8)
    session = SessionContext()
    subtasks = [
        _subtask("a", {"users"}),
        _subtask("b", {"orders"}),
        _subtask("c", {"users", "audit"}, {"a"}),
        _subtask("d", {"orders", "audit"}, {"b", "c"}),
        _subtask("e", {"reports"}),
        _subtask("f", {"users"}, {"c"}),
    ]

    batch = asyncio.run(scheduler.dispatch(subtasks, session))

    assert batch.outcome().status is RunStatus.COMPLETED
    assert watcher.overlaps == []
    assert session.claims.violations == []
    assert watcher.order.index("a") < watcher.order.index("c") < watcher.order.index("d")


def test_one_failure_in_wave_gives_partial_completion() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        if context.subtask.id == "bad":
            raise WorkerFailure("upstream API returned 500")
        await asyncio.sleep(0.01)
        return {"artifact": context.subtask.id}

    scheduler = _scheduler(WorkerUnit(default_handler=handler))
    subtasks = [_subtask("good-1", {"a"}), _subtask("bad", {"b"}), _subtask("good-2", {"c"})]

    outcome = asyncio.run(scheduler.dispatch(subtasks, SessionContext())).outcome()

    assert outcome.status is RunStatus.PARTIALLY_COMPLETED
    assert outcome.blocked_subtasks == []
    assert "upstream API returned 500" in outcome.result_for("bad").error_detail
    assert outcome.result_for("good-1").artifacts == {"artifact": "good-1"}
    assert outcome.result_for("good-2").artifacts == {"artifact": "good-2"}


def test_dependents_of_failed_subtask_are_blocked_with_cause() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        if context.subtask.id == "schema":
            raise WorkerFailure("migration syntax error", retriable=False)
        return {"ok": True}

    scheduler = _scheduler(WorkerUnit(default_handler=handler))
    subtasks = [
        _subtask("schema", {"db"}),
        _subtask("api", {"api.py"}, {"schema"}),
        _subtask("docs", {"README.md"}, {"api"}),
        _subtask("lint", {"setup.cfg"}),
    ]

    outcome = asyncio.run(scheduler.dispatch(subtasks, SessionContext())).outcome()

    assert outcome.status is RunStatus.PARTIALLY_COMPLETED
    assert outcome.blocked_subtasks == ["api", "docs"]
    api = outcome.result_for("api")
    assert api.blocked_by == ("schema",)
    assert "migration syntax error" in api.error_detail
    assert "api blocked" in outcome.result_for("docs").error_detail


def test_all_failed_batch_is_failed() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        raise WorkerFailure("nope", retriable=False)

    scheduler = _scheduler(WorkerUnit(default_handler=handler))

    outcome = asyncio.run(
        scheduler.dispatch([_subtask("a", {"x"}), _subtask("b", {"y"})], SessionContext())
    ).outcome()

    assert outcome.status is RunStatus.FAILED
    assert outcome.reason.startswith("a:")


def test_fail_fast_cancels_siblings_and_blocks_later_waves() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        if context.subtask.id == "fast-fail":
            raise WorkerFailure("bad input", retriable=False)
        await asyncio.sleep(5)
        return {}

    scheduler = _scheduler(WorkerUnit(default_handler=handler), fail_fast=True)
    subtasks = [
        _subtask("fast-fail", {"a"}),
        _subtask("slow", {"b"}),
        _subtask("later", {"c"}, {"slow"}),
    ]

    batch = asyncio.run(asyncio.wait_for(scheduler.dispatch(subtasks, SessionContext()), 2))
    results = batch.by_id()

    assert results["slow"].status is WorkerStatus.FAILED
    assert "fail-fast after fast-fail" in results["slow"].error_detail
    assert results["later"].status is WorkerStatus.BLOCKED


def test_retriable_failures_are_retried_with_backoff_events() -> None:
    attempts: list[int] = []
    events: list[dict[str, Any]] = []

    async def flaky(context: WorkerContext) -> dict[str, Any]:
        attempts.append(context.attempt)
        if context.attempt < 3:
            raise ConnectionError("transient")
        return {"attempt": context.attempt}

    scheduler = _scheduler(
        WorkerUnit(default_handler=flaky),
        max_attempts=3,
        retry_backoff_seconds=0.0,
        event_hook=events.append,
    )

    result = asyncio.run(scheduler.dispatch([_subtask("a", {"x"})], SessionContext())).results[0]

    assert result.status is WorkerStatus.COMPLETED
    assert result.attempts == 3
    assert attempts == [1, 2, 3]
    assert [e["attempt"] for e in events if e["event"] == "worker_retry"] == [2, 3]


def test_non_retriable_failure_is_not_retried() -> None:
    attempts: list[int] = []

    async def handler(context: WorkerContext) -> dict[str, Any]:
        attempts.append(context.attempt)
        raise WorkerFailure("bad request", retriable=False)

    scheduler = _scheduler(WorkerUnit(default_handler=handler), max_attempts=4)

    asyncio.run(scheduler.dispatch([_subtask("a")], SessionContext()))

    assert attempts == [1]


def test_worker_timeout_becomes_failed_result() -> None:
    async def handler(context: WorkerContext) -> dict[str, Any]:
        await asyncio.sleep(5)
        return {}

    scheduler = _scheduler(WorkerUnit(default_handler=handler), worker_timeout_seconds=0.01)

    result = asyncio.run(scheduler.dispatch([_subtask("a")], SessionContext())).results[0]

    assert result.status is WorkerStatus.FAILED
    assert result.error_detail.startswith("timeout after")


def test_dispatch_refuses_overlapping_claims() -> None:
    watcher = ClaimWatcher()
    scheduler = _scheduler(WorkerUnit(default_handler=watcher))

    with pytest.raises(IsolationViolation):
        asyncio.run(
            scheduler.dispatch(
                [_subtask("x", {"fileA"}), _subtask("y", {"fileA"})], SessionContext()
            )
        )

    assert watcher.order == []


def test_semaphore_bounds_parallelism() -> None:
    watcher = ClaimWatcher()
    scheduler = _scheduler(WorkerUnit(default_handler=watcher), max_parallel=2)
    subtasks = [_subtask(f"s{index}", {f"r{index}"}) for index in range(5)]

    asyncio.run(scheduler.dispatch(subtasks, SessionContext()))

    assert watcher.max_running == 2


def test_subtask_lifecycle_hooks_fire() -> None:
    seen: list[tuple[str, Any]] = []
    hooks = HookRegistry()
    hooks.register(
        HookEvent.SUBTASK_START, lambda ctx: seen.append(("start", ctx.data["subtask"]["id"]))
    )
    hooks.register(
        HookEvent.SUBTASK_STOP, lambda ctx: seen.append(("stop", ctx.data["status"]))
    )
    scheduler = DispatchScheduler(
        WorkerUnit(default_handler=ClaimWatcher(delay=0)),
        ToolGateway(ToolRegistry(), hooks=hooks),
    )

    asyncio.run(scheduler.dispatch([_subtask("only")], SessionContext()))

    assert seen == [("start", "only"), ("stop", "completed")]


def test_empty_dispatch_and_cancelled_batch_outcome() -> None:
    empty = asyncio.run(_scheduler(WorkerUnit()).dispatch([], SessionContext()))
    cancelled = BatchResult(
        results=[WorkerResult(subtask_id="a", status=WorkerStatus.COMPLETED)], cancelled=True
    )

    assert empty.results == []
    assert cancelled.outcome().status is RunStatus.CANCELLED
