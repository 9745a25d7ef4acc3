from __future__ import annotations

import logging
import posixpath
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from conductor.errors import GatewayUnavailable, WorkerFailure
from conductor.gateway.gateway import GATEWAY_UNAVAILABLE, ToolCallOutcome, ToolGateway
from conductor.loop import EvaluatorOptimizerLoop, Evaluator, Generator
from conductor.models import (
    DecisionKind,
    Subtask,
    Task,
    ToolCallDecision,
    ToolCallRecord,
    ToolCallRequest,
    WorkerResult,
    WorkerStatus,
    utcnow_iso,
)
from conductor.session import SessionContext, SessionView

logger = logging.getLogger(__name__)


class ToolAccess:
    """The only path from worker business logic to external effects."""

    def __init__(self, gateway: ToolGateway, subtask: Subtask, worker_id: str) -> None:
        self._gateway = gateway
        self._subtask = subtask
        self.worker_id = worker_id
        self._log: list[ToolCallRecord] = []

    @property
    def log(self) -> tuple[ToolCallRecord, ...]:
        return tuple(self._log)

    def _refuse_locally(self, request: ToolCallRequest, reason: str) -> ToolCallOutcome:
        decision = ToolCallDecision.deny(reason, stage="worker")
        record = ToolCallRecord(
            timestamp=utcnow_iso(),
            worker_id=self.worker_id,
            tool_name=request.tool_name,
            input=dict(request.input),
            decision=decision.to_dict(),
        )
        self._log.append(record)
        return ToolCallOutcome(decision=decision, record=record)

    async def call(self, tool_name: str, **tool_input: Any) -> ToolCallOutcome:
        request = ToolCallRequest(
            tool_name=tool_name,
            input=dict(tool_input),
            requesting_worker_id=self.worker_id,
        )
        tool = self._gateway.registry.get(tool_name)
        if tool is not None:
            unclaimed = tool.resource_keys(request.input) - self._subtask.resource_claims
            if unclaimed:
                return self._refuse_locally(
                    request, "unclaimed-resource: " + ", ".join(sorted(unclaimed))
                )

        outcome = await self._gateway.call(request)
        if outcome.record is not None:
            self._log.append(outcome.record)
        decision = outcome.decision
        if decision.kind is DecisionKind.DENY and decision.reason == GATEWAY_UNAVAILABLE:
            raise GatewayUnavailable(
                f"Tool gateway unavailable for {tool_name} ({decision.stage})",
                tool_name=tool_name,
            )
        return outcome


@dataclass(slots=True, frozen=True)
class WorkerContext:
    subtask: Subtask
    worker_id: str
    attempt: int
    upstream: Mapping[str, Mapping[str, Any]]
    tools: ToolAccess
    memory: SessionView


WorkerHandler = Callable[[WorkerContext], Awaitable[dict[str, Any] | None]]


class WorkerUnit:
    """Runs one subtask through the handler registered for its type.

    ``run`` converts every failure into a ``failed`` result; only cancellation
    propagates to the caller.
    """

    def __init__(
        self,
        handlers: dict[str, WorkerHandler] | None = None,
        *,
        default_handler: WorkerHandler | None = None,
    ) -> None:
        self.handlers: dict[str, WorkerHandler] = dict(handlers or {})
        self.default_handler = default_handler

    def register(self, subtask_type: str, handler: WorkerHandler) -> None:
        self.handlers[subtask_type] = handler

    def handler_for(self, subtask: Subtask) -> WorkerHandler | None:
        return self.handlers.get(subtask.type, self.default_handler)

    @staticmethod
    def worker_id_for(subtask: Subtask) -> str:
        return f"worker-{subtask.id}"

    async def run(
        self,
        subtask: Subtask,
        gateway: ToolGateway,
        session: SessionContext,
        *,
        attempt: int = 1,
    ) -> WorkerResult:
        worker_id = self.worker_id_for(subtask)
        tools = ToolAccess(gateway, subtask, worker_id)

        def _failed(detail: str, *, retriable: bool) -> WorkerResult:
            return WorkerResult(
                subtask_id=subtask.id,
                status=WorkerStatus.FAILED,
                tool_call_log=tools.log,
                error_detail=detail,
                attempts=attempt,
                retriable=retriable,
            )

        handler = self.handler_for(subtask)
        if handler is None:
            return _failed(f"no handler registered for subtask type '{subtask.type}'", retriable=False)

        upstream = {
            dep_id: MappingProxyType(artifacts)
            for dep_id, artifacts in session.upstream_artifacts(subtask).items()
        }
        context = WorkerContext(
            subtask=subtask,
            worker_id=worker_id,
            attempt=attempt,
            upstream=MappingProxyType(upstream),
            tools=tools,
            memory=SessionView(session, worker_id),
        )

        started = time.perf_counter()
        try:
            artifacts = await handler(context)
        except WorkerFailure as exc:
            logger.info("subtask %s failed: %s", subtask.id, exc)
            return _failed(f"WorkerFailure: {exc}", retriable=exc.retriable)
        except GatewayUnavailable as exc:
            logger.error("subtask %s aborted: %s", subtask.id, exc)
            return _failed(f"{GATEWAY_UNAVAILABLE}: {exc}", retriable=False)
        except Exception as exc:
            logger.exception("subtask %s crashed", subtask.id)
            return _failed(f"{type(exc).__name__}: {exc}", retriable=True)

        logger.debug(
            "subtask %s completed in %.1fms", subtask.id, (time.perf_counter() - started) * 1000
        )
        return WorkerResult(
            subtask_id=subtask.id,
            status=WorkerStatus.COMPLETED,
            artifacts=dict(artifacts or {}),
            tool_call_log=tools.log,
            attempts=attempt,
        )


class EvaluatedWorker:
    """Worker handler that refines the subtask's artifact with the evaluator-optimizer loop."""

    def __init__(
        self,
        loop: EvaluatorOptimizerLoop,
        make_generator: Callable[[WorkerContext], Generator],
        evaluator: Evaluator,
        *,
        artifact_key: str = "artifact",
        require_pass: bool = False,
    ) -> None:
        self.loop = loop
        self.make_generator = make_generator
        self.evaluator = evaluator
        self.artifact_key = artifact_key
        self.require_pass = require_pass

    async def __call__(self, context: WorkerContext) -> dict[str, Any]:
        task = Task(
            goal=context.subtask.description,
            constraints={
                "subtask_id": context.subtask.id,
                "resource_claims": sorted(context.subtask.resource_claims),
                "upstream": {key: dict(value) for key, value in context.upstream.items()},
            },
            max_iterations=self.loop.max_iterations,
            id=context.subtask.id,
        )
        result = await self.loop.run(task, self.make_generator(context), self.evaluator)
        if self.require_pass and not result.passed:
            raise WorkerFailure(
                f"artifact did not pass evaluation ({result.outcome.value})", retriable=False
            )
        return {
            self.artifact_key: result.final_artifact,
            "loop_outcome": result.outcome.value,
            "best_iteration": result.best_iteration,
            "history": result.history_entries(),
        }


class ArtifactWriter:
    """Wraps a handler and writes its artifact to every file the subtask claims.

    Writes go through ``context.tools`` so the gateway rules, hooks and audit
    log see them. A refused or failed write fails the subtask without retry.
    """

    def __init__(
        self,
        inner: WorkerHandler,
        *,
        tool_name: str = "write_file",
        artifact_key: str = "artifact",
    ) -> None:
        self.inner = inner
        self.tool_name = tool_name
        self.artifact_key = artifact_key

    @staticmethod
    def file_claims(subtask: Subtask) -> list[str]:
        return sorted(key for key in subtask.resource_claims if posixpath.splitext(key)[1])

    async def __call__(self, context: WorkerContext) -> dict[str, Any]:
        artifacts = dict(await self.inner(context) or {})
        content = artifacts.get(self.artifact_key)
        if not isinstance(content, str):
            return artifacts
        written: list[str] = []
        for path in self.file_claims(context.subtask):
            outcome = await context.tools.call(self.tool_name, path=path, content=content)
            if outcome.refused:
                raise WorkerFailure(
                    f"write to {path} refused: {outcome.decision.reason}", retriable=False
                )
            if not outcome.ok:
                error = outcome.result.error if outcome.result is not None else "no result"
                raise WorkerFailure(f"write to {path} failed: {error}", retriable=False)
            written.append(path)
        artifacts["written"] = written
        return artifacts
