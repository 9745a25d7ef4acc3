from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from conductor.decomposer import TaskDecomposer
from conductor.dispatch import BatchResult, DispatchScheduler
from conductor.errors import DecompositionError
from conductor.gateway.hooks import HookEvent, HookRegistry
from conductor.loop import Evaluator, EvaluatorOptimizerLoop, Generator, LoopResult
from conductor.models import RunOutcome, RunStatus, Task, WorkerStatus, utcnow_iso
from conductor.session import SessionContext
from conductor.state.memory import PersistentMemory
from conductor.state.store import StateStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


class Orchestrator:
    """Drives one task from decomposition to an aggregated ``RunOutcome``.

    ``run`` owns the session for the whole batch: it opens it, hands it to the
    decomposer and scheduler, and tears it down on every exit path so persistent
    memory only ever receives a complete delta. ``cancel`` aborts the active run;
    results recorded before the abort are returned with a ``cancelled`` status.
    """

    def __init__(
        self,
        decomposer: TaskDecomposer,
        scheduler: DispatchScheduler,
        loop: EvaluatorOptimizerLoop | None = None,
        *,
        state: StateStore | None = None,
        persistent: PersistentMemory | None = None,
        max_transcript_items: int = 50,
        summarize_on_teardown: bool = True,
        event_hook: EventHook | None = None,
    ) -> None:
        self.decomposer = decomposer
        self.scheduler = scheduler
        self.loop = loop if loop is not None else EvaluatorOptimizerLoop()
        self.state = state
        self.persistent = persistent
        self.max_transcript_items = max_transcript_items
        self.summarize_on_teardown = summarize_on_teardown
        self.event_hook = event_hook
        self._active: asyncio.Task[BatchResult] | None = None
        self._abort_requested = False

    @property
    def hooks(self) -> HookRegistry:
        return self.scheduler.gateway.hooks

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _record_run(self, run_id: str, updates: dict[str, Any]) -> None:
        if self.state is not None:
            self.state.upsert_run(run_id, updates)

    def new_session(self) -> SessionContext:
        return SessionContext(
            persistent=self.persistent,
            max_transcript_items=self.max_transcript_items,
            summarize_on_teardown=self.summarize_on_teardown,
        )

    def cancel(self) -> bool:
        """Abort the active run. Returns False when nothing is running."""
        if self._active is None or self._active.done():
            return False
        self._abort_requested = True
        self._active.cancel()
        return True

    @staticmethod
    def _partial(session: SessionContext, reason: str) -> RunOutcome:
        results = [
            session.results[subtask_id]
            for subtask_id in session.subtasks
            if subtask_id in session.results
        ]
        return RunOutcome(
            status=RunStatus.CANCELLED,
            results=results,
            blocked_subtasks=[r.subtask_id for r in results if r.status is WorkerStatus.BLOCKED],
            reason=reason,
        )

    async def _execute(self, task: Task, session: SessionContext) -> BatchResult:
        subtasks = await self.decomposer.decompose(task, session)
        return await self.scheduler.dispatch(subtasks, session)

    async def run(self, task: Task) -> RunOutcome:
        if self._active is not None and not self._active.done():
            raise RuntimeError("Orchestrator is already running a task.")

        session = self.new_session()
        run_id = session.session_id
        self._abort_requested = False
        self._record_run(
            run_id,
            {
                "run_id": run_id,
                "task_id": task.id,
                "goal": task.goal,
                "status": "in_progress",
                "started_at": session.started_at,
            },
        )
        await self.hooks.emit(
            HookEvent.SESSION_START,
            {"session_id": run_id, "task_id": task.id, "goal": task.goal},
        )
        self._emit({"event": "run_started", "run_id": run_id, "task_id": task.id})

        self._active = asyncio.create_task(self._execute(task, session))
        try:
            try:
                if task.time_budget_seconds is not None:
                    async with asyncio.timeout(task.time_budget_seconds):
                        batch = await self._active
                else:
                    batch = await self._active
                outcome = batch.outcome()
            except DecompositionError as exc:
                logger.info("run %s failed before completion: %s", run_id, exc)
                outcome = RunOutcome(status=RunStatus.FAILED, reason=str(exc))
            except TimeoutError:
                logger.warning(
                    "run %s exceeded time budget of %.1fs", run_id, task.time_budget_seconds
                )
                outcome = self._partial(
                    session, f"time budget of {task.time_budget_seconds:.1f}s exceeded"
                )
            except asyncio.CancelledError:
                if not self._abort_requested:
                    raise
                outcome = self._partial(session, "aborted")
        finally:
            self._active = None
            if not session.closed:
                delta = session.teardown()
                logger.debug("session %s persisted %d entries", run_id, len(delta))
            await self.hooks.emit(
                HookEvent.SESSION_END, {"session_id": run_id, "task_id": task.id}
            )

        self._record_run(
            run_id,
            {
                "status": outcome.status.value,
                "reason": outcome.reason,
                "ended_at": utcnow_iso(),
                "total_subtasks": len(outcome.results),
                "completed_subtasks": sum(
                    1 for result in outcome.results if result.status is WorkerStatus.COMPLETED
                ),
                "blocked_subtasks": list(outcome.blocked_subtasks),
            },
        )
        self._emit(
            {
                "event": "run_finished",
                "run_id": run_id,
                "status": outcome.status.value,
                "reason": outcome.reason,
            }
        )
        return outcome

    async def refine(self, task: Task, generator: Generator, evaluator: Evaluator) -> LoopResult:
        """Refine a single artifact, bounded by the task's iteration ceiling and time budget."""
        result = await self.loop.run(
            task,
            generator,
            evaluator,
            task.max_iterations,
            time_budget_seconds=task.time_budget_seconds,
        )
        self._emit(
            {
                "event": "refine_finished",
                "task_id": task.id,
                "outcome": result.outcome.value,
                "iterations": len(result.history),
            }
        )
        return result
