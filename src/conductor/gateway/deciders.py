from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from conductor.models import ToolCallDecision, ToolCallRequest


@runtime_checkable
class PermissionDecider(Protocol):
    """Host-supplied runtime permission callback.

    ``decide`` may answer synchronously or return an awaitable that suspends
    until someone decides; the gateway cancels it when the caller is cancelled.
    """

    def decide(
        self, request: ToolCallRequest
    ) -> ToolCallDecision | Awaitable[ToolCallDecision]: ...


@dataclass(slots=True, frozen=True)
class StaticDecider:
    decision: ToolCallDecision

    def decide(self, request: ToolCallRequest) -> ToolCallDecision:
        return self.decision


class ApprovalQueue:
    """Parks each request on a future until ``resolve`` is called for it."""

    def __init__(self) -> None:
        self._pending: dict[str, tuple[ToolCallRequest, asyncio.Future[ToolCallDecision]]] = {}
        self._arrived = asyncio.Event()

    def pending(self) -> list[ToolCallRequest]:
        return [request for request, _future in self._pending.values()]

    async def wait_for_request(self) -> ToolCallRequest:
        while not self._pending:
            self._arrived.clear()
            await self._arrived.wait()
        return next(iter(self._pending.values()))[0]

    async def decide(self, request: ToolCallRequest) -> ToolCallDecision:
        future: asyncio.Future[ToolCallDecision] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = (request, future)
        self._arrived.set()
        try:
            return await future
        finally:
            self._pending.pop(request.request_id, None)

    def resolve(self, request_id: str, decision: ToolCallDecision) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        _request, future = entry
        if future.done():
            return False
        future.set_result(decision)
        return True

    def approve(self, request_id: str) -> bool:
        return self.resolve(request_id, ToolCallDecision.allow())

    def reject(self, request_id: str, reason: str = "rejected by reviewer") -> bool:
        return self.resolve(request_id, ToolCallDecision.deny(reason))
