from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from conductor.errors import DecompositionError, IsolationViolation
from conductor.gateway.gateway import ToolGateway
from conductor.gateway.hooks import HookEvent
from conductor.models import RunOutcome, RunStatus, Subtask, WorkerResult, WorkerStatus
from conductor.session import SessionContext
from conductor.worker import WorkerUnit

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


def plan_waves(subtasks: list[Subtask]) -> list[list[Subtask]]:
    """Group subtasks into dependency levels, preserving input order inside a level."""
    by_id: dict[str, Subtask] = {}
    for subtask in subtasks:
        if subtask.id in by_id:
            raise DecompositionError("malformed-task", f"duplicate subtask id {subtask.id}")
        by_id[subtask.id] = subtask
    for subtask in subtasks:
        unknown = sorted(dep for dep in subtask.depends_on if dep not in by_id)
        if unknown:
            raise DecompositionError(
                "unknown-dependency", f"{subtask.id} depends on {', '.join(unknown)}"
            )

    placed: set[str] = set()
    waves: list[list[Subtask]] = []
    remaining = list(subtasks)
    while remaining:
        wave = [subtask for subtask in remaining if subtask.depends_on <= placed]
        if not wave:
            stuck = ", ".join(subtask.id for subtask in remaining)
            raise DecompositionError("dependency-cycle", f"cycle among {stuck}")
        waves.append(wave)
        placed.update(subtask.id for subtask in wave)
        remaining = [subtask for subtask in remaining if subtask.id not in placed]
    return waves


def ancestors(subtasks: list[Subtask]) -> dict[str, set[str]]:
    by_id = {subtask.id: subtask for subtask in subtasks}
    resolved: dict[str, set[str]] = {}

    def _visit(subtask_id: str, trail: frozenset[str]) -> set[str]:
        if subtask_id in resolved:
            return resolved[subtask_id]
        if subtask_id in trail:
            raise DecompositionError("dependency-cycle", f"cycle through {subtask_id}")
        found: set[str] = set()
        subtask = by_id.get(subtask_id)
        if subtask is not None:
            for dep in subtask.depends_on:
                found.add(dep)
                found |= _visit(dep, trail | {subtask_id})
        resolved[subtask_id] = found
        return found

    for subtask in subtasks:
        _visit(subtask.id, frozenset())
    return resolved


def find_claim_conflicts(subtasks: list[Subtask]) -> list[tuple[str, str, str]]:
    """Pairs sharing a resource key with no dependency path between them."""
    lineage = ancestors(subtasks)
    conflicts: list[tuple[str, str, str]] = []
    for index, first in enumerate(subtasks):
        for second in subtasks[index + 1 :]:
            shared = first.resource_claims & second.resource_claims
            if not shared:
                continue
            if first.id in lineage[second.id] or second.id in lineage[first.id]:
                continue
            conflicts.extend((key, first.id, second.id) for key in sorted(shared))
    return conflicts


def validate_isolation(subtasks: list[Subtask]) -> None:
    conflicts = find_claim_conflicts(subtasks)
    if conflicts:
        detail = "; ".join(f"{key} claimed by {a} and {b}" for key, a, b in conflicts)
        raise IsolationViolation(detail, conflicts=conflicts)


def count_parallelizable(subtasks: list[Subtask]) -> int:
    """Subtasks with no dependencies whose claims are disjoint from every other subtask."""
    count = 0
    for subtask in subtasks:
        if subtask.depends_on:
            continue
        if any(
            subtask.resource_claims & other.resource_claims
            for other in subtasks
            if other.id != subtask.id
        ):
            continue
        count += 1
    return count


@dataclass(slots=True)
class BatchResult:
    results: list[WorkerResult]
    waves: list[list[str]] = field(default_factory=list)
    cancelled: bool = False

    def by_id(self) -> dict[str, WorkerResult]:
        return {result.subtask_id: result for result in self.results}

    def outcome(self) -> RunOutcome:
        blocked = [r.subtask_id for r in self.results if r.status is WorkerStatus.BLOCKED]
        completed = [r for r in self.results if r.status is WorkerStatus.COMPLETED]
        failed = [r for r in self.results if r.status is WorkerStatus.FAILED]
        if self.cancelled:
            return RunOutcome(
                status=RunStatus.CANCELLED,
                results=list(self.results),
                blocked_subtasks=blocked,
                reason="cancelled",
            )
        if len(completed) == len(self.results):
            return RunOutcome(status=RunStatus.COMPLETED, results=list(self.results))
        if not completed:
            first = failed[0] if failed else self.results[0]
            return RunOutcome(
                status=RunStatus.FAILED,
                results=list(self.results),
                blocked_subtasks=blocked,
                reason=f"{first.subtask_id}: {first.error_detail or first.status.value}",
            )
        return RunOutcome(
            status=RunStatus.PARTIALLY_COMPLETED,
            results=list(self.results),
            blocked_subtasks=blocked,
            reason=f"{len(failed)} failed, {len(blocked)} blocked",
        )


class DispatchScheduler:
    """Runs subtasks wave by wave; coordination only, no business logic."""

    def __init__(
        self,
        worker: WorkerUnit,
        gateway: ToolGateway,
        *,
        max_parallel: int = 4,
        fail_fast: bool = False,
        worker_timeout_seconds: float = 0.0,
        max_attempts: int = 1,
        retry_backoff_seconds: float = 0.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.worker = worker
        self.gateway = gateway
        self.max_parallel = max(1, max_parallel)
        self.fail_fast = fail_fast
        self.worker_timeout_seconds = worker_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _blocked(
        subtask: Subtask, unmet: list[str], results: dict[str, WorkerResult]
    ) -> WorkerResult:
        causes = []
        for dep_id in unmet:
            upstream = results[dep_id]
            causes.append(f"{dep_id} {upstream.status.value}: {upstream.error_detail or 'no detail'}")
        return WorkerResult(
            subtask_id=subtask.id,
            status=WorkerStatus.BLOCKED,
            error_detail="blocked by " + "; ".join(causes),
            blocked_by=tuple(unmet),
        )

    async def _run_with_timeout(
        self, subtask: Subtask, session: SessionContext, attempt: int
    ) -> WorkerResult:
        if self.worker_timeout_seconds <= 0:
            return await self.worker.run(subtask, self.gateway, session, attempt=attempt)
        try:
            async with asyncio.timeout(self.worker_timeout_seconds):
                return await self.worker.run(subtask, self.gateway, session, attempt=attempt)
        except TimeoutError:
            return WorkerResult(
                subtask_id=subtask.id,
                status=WorkerStatus.FAILED,
                error_detail=f"timeout after {self.worker_timeout_seconds:.1f}s",
                attempts=attempt,
                retriable=True,
            )

    async def _run_attempts(self, subtask: Subtask, session: SessionContext) -> WorkerResult:
        result: WorkerResult | None = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.retry_backoff_seconds * (2 ** (attempt - 2))
                self._emit(
                    {
                        "event": "worker_retry",
                        "subtask_id": subtask.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                if delay > 0:
                    await asyncio.sleep(delay)
            result = await self._run_with_timeout(subtask, session, attempt)
            if result.status is WorkerStatus.COMPLETED or not result.retriable:
                return result
        assert result is not None
        return result

    async def _run_one(
        self, subtask: Subtask, session: SessionContext, semaphore: asyncio.Semaphore
    ) -> WorkerResult:
        async with semaphore:
            holder = self.worker.worker_id_for(subtask)
            await self.gateway.hooks.emit(
                HookEvent.SUBTASK_START,
                {"subtask": subtask.to_record(), "session_id": session.session_id},
            )
            session.claims.acquire(holder, subtask.resource_claims)
            try:
                result = await self._run_attempts(subtask, session)
            finally:
                session.claims.release(holder)
            session.record_result(result)
            await self.gateway.hooks.emit(
                HookEvent.SUBTASK_STOP,
                {"subtask_id": subtask.id, "status": result.status.value},
            )
            self._emit(
                {
                    "event": "subtask_finished",
                    "subtask_id": subtask.id,
                    "status": result.status.value,
                    "attempts": result.attempts,
                }
            )
            return result

    async def _run_wave(
        self, runnable: list[Subtask], session: SessionContext, semaphore: asyncio.Semaphore
    ) -> list[WorkerResult]:
        tasks = {
            asyncio.create_task(self._run_one(subtask, session, semaphore)): subtask
            for subtask in runnable
        }
        results: dict[str, WorkerResult] = {}
        pending = set(tasks)
        failed_by: str | None = None
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    subtask = tasks[task]
                    if task.cancelled():
                        continue
                    result = task.result()
                    results[subtask.id] = result
                    if (
                        self.fail_fast
                        and failed_by is None
                        and result.status is WorkerStatus.FAILED
                    ):
                        failed_by = subtask.id
                if failed_by is not None and pending:
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for task in pending:
                        subtask = tasks[task]
                        if task.cancelled() or task.exception() is not None:
                            results[subtask.id] = WorkerResult(
                                subtask_id=subtask.id,
                                status=WorkerStatus.FAILED,
                                error_detail=f"cancelled: fail-fast after {failed_by} failed",
                            )
                        else:
                            results[subtask.id] = task.result()
                        session.record_result(results[subtask.id])
                    pending = set()
        except BaseException:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        return [results[subtask.id] for subtask in runnable]

    async def dispatch(self, subtasks: list[Subtask], session: SessionContext) -> BatchResult:
        if not subtasks:
            return BatchResult(results=[])
        waves = plan_waves(subtasks)
        validate_isolation(subtasks)
        session.record_subtasks(subtasks)
        semaphore = asyncio.Semaphore(self.max_parallel)
        self._emit(
            {"event": "dispatch_started", "subtasks": len(subtasks), "waves": len(waves)}
        )

        results: dict[str, WorkerResult] = {}
        aborted_by: str | None = None
        for wave_index, wave in enumerate(waves):
            runnable: list[Subtask] = []
            for subtask in wave:
                if aborted_by is not None:
                    results[subtask.id] = WorkerResult(
                        subtask_id=subtask.id,
                        status=WorkerStatus.BLOCKED,
                        error_detail=f"blocked by fail-fast after {aborted_by} failed",
                        blocked_by=(aborted_by,),
                    )
                    session.record_result(results[subtask.id])
                    continue
                unmet = sorted(
                    dep
                    for dep in subtask.depends_on
                    if results[dep].status is not WorkerStatus.COMPLETED
                )
                if unmet:
                    results[subtask.id] = self._blocked(subtask, unmet, results)
                    session.record_result(results[subtask.id])
                    continue
                runnable.append(subtask)

            if runnable:
                self._emit(
                    {
                        "event": "wave_started",
                        "wave": wave_index,
                        "subtasks": [subtask.id for subtask in runnable],
                    }
                )
                for result in await self._run_wave(runnable, session, semaphore):
                    results[result.subtask_id] = result
                    if (
                        self.fail_fast
                        and aborted_by is None
                        and result.status is WorkerStatus.FAILED
                    ):
                        aborted_by = result.subtask_id
            logger.info("wave %d of %d finished", wave_index + 1, len(waves))

        return BatchResult(
            results=[results[subtask.id] for wave in waves for subtask in wave],
            waves=[[subtask.id for subtask in wave] for wave in waves],
        )
