from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from conductor.gateway.audit import AuditLog
from conductor.gateway.deciders import PermissionDecider
from conductor.gateway.hooks import HookFailure, HookRegistry
from conductor.gateway.rules import PermissionMode, RuleTable
from conductor.gateway.tools import Tool, ToolRegistry
from conductor.models import (
    ToolCallDecision,
    ToolCallRecord,
    ToolCallRequest,
    ToolResult,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

GATEWAY_UNAVAILABLE = "gateway-unavailable"

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True, frozen=True)
class ToolCallOutcome:
    decision: ToolCallDecision
    result: ToolResult | None = None
    record: ToolCallRecord | None = None

    @property
    def refused(self) -> bool:
        return not self.decision.allowed

    @property
    def ok(self) -> bool:
        return self.decision.allowed and self.result is not None and self.result.ok


class ToolGateway:
    """Single mediation point for every side-effecting tool call.

    ``invoke`` evaluates the permission pipeline in a fixed order and returns on
    the first stage that decides: pre-hooks, deny rules, allow rules, permission
    mode, runtime callback. It reads configuration only, so identical requests
    against identical rules always produce identical decisions. ``execute`` runs
    an allowed call, then post-hooks, and writes the audit record.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        rules: RuleTable | None = None,
        mode: PermissionMode | str = PermissionMode.DEFAULT,
        decider: PermissionDecider | None = None,
        hooks: HookRegistry | None = None,
        audit: AuditLog | None = None,
        callback_timeout_seconds: float = 0.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.registry = registry
        self.rules = rules if rules is not None else RuleTable()
        self.mode = PermissionMode(mode)
        self.decider = decider
        self.hooks = hooks if hooks is not None else HookRegistry()
        self.audit = audit if audit is not None else AuditLog()
        self.callback_timeout_seconds = callback_timeout_seconds
        self.event_hook = event_hook
        self._late_audits: set[asyncio.Task[ToolCallRecord]] = set()

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _approval_prompt(request: ToolCallRequest) -> str:
        rendered = json.dumps(request.input, ensure_ascii=False, sort_keys=True, default=str)
        return (
            f"Worker {request.requesting_worker_id} wants to run "
            f"{request.tool_name} with {rendered[:500]}. Allow?"
        )

    async def invoke(self, request: ToolCallRequest) -> ToolCallDecision:
        try:
            denial = await self.hooks.run_pre_tool_use(request)
        except HookFailure as exc:
            logger.error("pre-hook failure for %s: %s", request.tool_name, exc)
            return ToolCallDecision.deny(GATEWAY_UNAVAILABLE, stage="pre_hook")
        if denial is not None:
            return denial

        try:
            decision = self._evaluate_rules(request)
        except Exception as exc:
            logger.error("rule evaluation failed for %s: %s", request.tool_name, exc)
            return ToolCallDecision.deny(GATEWAY_UNAVAILABLE, stage="rules")
        if decision is not None:
            return decision

        if self.decider is None:
            return ToolCallDecision.ask(self._approval_prompt(request), stage="callback")
        return await self._run_decider(request)

    def _evaluate_rules(self, request: ToolCallRequest) -> ToolCallDecision | None:
        rule = self.rules.first_deny(request)
        if rule is not None:
            return ToolCallDecision.deny(f"denied by rule {rule.pattern}", stage="deny_rule")

        rule = self.rules.first_allow(request)
        if rule is not None:
            return ToolCallDecision.allow(stage="allow_rule")

        if self.mode is PermissionMode.BYPASS:
            return ToolCallDecision.allow(stage="mode")
        if self.mode is PermissionMode.DONT_ASK:
            return ToolCallDecision.deny("not pre-approved by an allow rule", stage="mode")
        return None

    async def _run_decider(self, request: ToolCallRequest) -> ToolCallDecision:
        assert self.decider is not None
        try:
            outcome: Any = self.decider.decide(request)
            if inspect.isawaitable(outcome):
                if self.callback_timeout_seconds > 0:
                    async with asyncio.timeout(self.callback_timeout_seconds):
                        outcome = await outcome
                else:
                    outcome = await outcome
        except TimeoutError:
            return ToolCallDecision.deny("permission callback timed out", stage="callback")
        except Exception as exc:
            logger.error("permission callback failed for %s: %s", request.tool_name, exc)
            return ToolCallDecision.deny(GATEWAY_UNAVAILABLE, stage="callback")
        if not isinstance(outcome, ToolCallDecision):
            logger.error("permission callback returned %r", type(outcome).__name__)
            return ToolCallDecision.deny(GATEWAY_UNAVAILABLE, stage="callback")
        return outcome.with_stage("callback")

    @staticmethod
    async def _run_tool(tool: Tool, tool_input: dict[str, Any]) -> ToolResult:
        try:
            result = await tool.run(tool_input)
        except Exception as exc:
            return ToolResult(error=f"{type(exc).__name__}: {exc}")
        if not isinstance(result, ToolResult):
            return ToolResult(output=result)
        return result

    async def _record(
        self,
        request: ToolCallRequest,
        decision: ToolCallDecision,
        started: float,
        *,
        tool_input: dict[str, Any] | None = None,
        result: ToolResult | None = None,
        error: str | None = None,
        flagged: bool = False,
        flag_reason: str = "",
        discarded: bool = False,
    ) -> ToolCallRecord:
        if error is None and result is not None:
            error = result.error
        record = ToolCallRecord(
            timestamp=utcnow_iso(),
            worker_id=request.requesting_worker_id,
            tool_name=request.tool_name,
            input=dict(tool_input if tool_input is not None else request.input),
            decision=decision.to_dict(),
            result=result.output if result is not None and error is None else None,
            error=error,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            flagged=flagged,
            flag_reason=flag_reason,
            discarded=discarded,
        )
        await self.audit.append(record)
        self._emit(
            {
                "event": "tool_call",
                "tool": request.tool_name,
                "worker_id": request.requesting_worker_id,
                "decision": decision.kind.value,
                "stage": decision.stage,
                "flagged": flagged,
                "discarded": discarded,
            }
        )
        return record

    def _audit_late_result(
        self,
        request: ToolCallRequest,
        decision: ToolCallDecision,
        tool_input: dict[str, Any],
        started: float,
        task: asyncio.Task[ToolResult],
    ) -> None:
        if task.cancelled():
            result = ToolResult(error="cancelled")
        else:
            result = task.result()
        logger.warning(
            "discarding late result of %s for cancelled worker %s",
            request.tool_name,
            request.requesting_worker_id,
        )
        late = asyncio.ensure_future(
            self._record(
                request,
                decision,
                started,
                tool_input=tool_input,
                result=result,
                discarded=True,
            )
        )
        self._late_audits.add(late)
        late.add_done_callback(self._late_audits.discard)

    async def execute(
        self,
        request: ToolCallRequest,
        decision: ToolCallDecision,
        *,
        started: float | None = None,
    ) -> tuple[ToolResult, ToolCallRecord]:
        if not decision.allowed:
            raise ValueError(f"Refusing to execute {request.tool_name} without an allow decision.")
        started = time.perf_counter() if started is None else started
        tool = self.registry.get(request.tool_name)
        if tool is None:
            raise KeyError(f"Tool {request.tool_name} not registered")
        tool_input = decision.updated_input if decision.updated_input is not None else request.input

        if tool.cancellable:
            try:
                result = await self._run_tool(tool, dict(tool_input))
            except asyncio.CancelledError:
                await self._record(
                    request, decision, started, tool_input=tool_input, error="cancelled"
                )
                raise
        else:
            task = asyncio.ensure_future(self._run_tool(tool, dict(tool_input)))
            try:
                result = await asyncio.shield(task)
            except asyncio.CancelledError:
                task.add_done_callback(
                    lambda done: self._audit_late_result(
                        request, decision, tool_input, started, done
                    )
                )
                raise

        verdict = await self.hooks.run_post_tool_use(request, decision, result)
        if verdict.flag:
            logger.warning("post-hook flagged %s: %s", request.tool_name, verdict.reason)
        record = await self._record(
            request,
            decision,
            started,
            tool_input=tool_input,
            result=result,
            flagged=verdict.flag,
            flag_reason=verdict.reason,
        )
        return result, record

    async def call(self, request: ToolCallRequest) -> ToolCallOutcome:
        started = time.perf_counter()
        decision = await self.invoke(request)
        if decision.allowed and request.tool_name not in self.registry:
            decision = ToolCallDecision.deny("unknown-tool", stage="registry")
        if not decision.allowed:
            record = await self._record(request, decision, started)
            return ToolCallOutcome(decision=decision, record=record)
        result, record = await self.execute(request, decision, started=started)
        return ToolCallOutcome(decision=decision, result=result, record=record)
