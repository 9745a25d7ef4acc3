from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conductor.errors import ConductorError
from conductor.models import DecisionKind, ToolCallDecision, ToolCallRequest, ToolResult

logger = logging.getLogger(__name__)


class HookEvent(StrEnum):
    PRE_TOOL_USE = "pre_tool_use"
    POST_TOOL_USE = "post_tool_use"
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    SUBTASK_START = "subtask_start"
    SUBTASK_STOP = "subtask_stop"


class HookFailure(ConductorError):
    """A hook raised or exceeded its time limit."""


@dataclass(slots=True, frozen=True)
class HookContext:
    event: HookEvent
    request: ToolCallRequest | None = None
    decision: ToolCallDecision | None = None
    result: ToolResult | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class PostHookVerdict:
    """What a post-hook may say about an effect that has already happened."""

    flag: bool = False
    reason: str = ""


HookHandler = Callable[[HookContext], Any]


class HookRegistry:
    """Ordered handler lists per event, each call bounded by ``timeout_seconds``."""

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._handlers: dict[HookEvent, list[HookHandler]] = {event: [] for event in HookEvent}

    def register(self, event: HookEvent, handler: HookHandler) -> None:
        self._handlers[HookEvent(event)].append(handler)

    def handlers(self, event: HookEvent) -> tuple[HookHandler, ...]:
        return tuple(self._handlers[HookEvent(event)])

    async def _call(self, handler: HookHandler, context: HookContext) -> Any:
        name = getattr(handler, "__name__", repr(handler))
        try:
            outcome = handler(context)
            if inspect.isawaitable(outcome):
                if self.timeout_seconds > 0:
                    async with asyncio.timeout(self.timeout_seconds):
                        outcome = await outcome
                else:
                    outcome = await outcome
        except TimeoutError as exc:
            raise HookFailure(
                f"{context.event.value} hook {name} timed out after {self.timeout_seconds:.1f}s"
            ) from exc
        except Exception as exc:
            raise HookFailure(f"{context.event.value} hook {name} failed: {exc}") from exc
        return outcome

    async def run_pre_tool_use(self, request: ToolCallRequest) -> ToolCallDecision | None:
        context = HookContext(event=HookEvent.PRE_TOOL_USE, request=request)
        for handler in self._handlers[HookEvent.PRE_TOOL_USE]:
            outcome = await self._call(handler, context)
            if isinstance(outcome, ToolCallDecision) and outcome.kind is DecisionKind.DENY:
                return outcome.with_stage("pre_hook")
        return None

    async def run_post_tool_use(
        self,
        request: ToolCallRequest,
        decision: ToolCallDecision,
        result: ToolResult,
    ) -> PostHookVerdict:
        context = HookContext(
            event=HookEvent.POST_TOOL_USE, request=request, decision=decision, result=result
        )
        reasons: list[str] = []
        for handler in self._handlers[HookEvent.POST_TOOL_USE]:
            try:
                outcome = await self._call(handler, context)
            except HookFailure as exc:
                logger.warning("%s", exc)
                reasons.append(str(exc))
                continue
            if isinstance(outcome, PostHookVerdict) and outcome.flag:
                reasons.append(outcome.reason or "flagged")
        if reasons:
            return PostHookVerdict(flag=True, reason="; ".join(reasons))
        return PostHookVerdict()

    async def emit(self, event: HookEvent, data: dict[str, Any] | None = None) -> list[str]:
        """Run lifecycle handlers; failures are logged and returned, never raised."""
        context = HookContext(event=HookEvent(event), data=dict(data or {}))
        failures: list[str] = []
        for handler in self._handlers[context.event]:
            try:
                await self._call(handler, context)
            except HookFailure as exc:
                logger.warning("%s", exc)
                failures.append(str(exc))
        return failures
