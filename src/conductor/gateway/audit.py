from __future__ import annotations

import asyncio
import logging

from conductor.models import ToolCallRecord
from conductor.state.store import StateStore

logger = logging.getLogger(__name__)


class AuditLog:
    """Tool invocation records, kept in memory and mirrored to the ``audit`` namespace.

    The in-memory list is updated before ``append`` first yields, so callers see
    the record immediately; the file write runs in a worker thread to keep the
    store lock off the event loop.
    """

    def __init__(self, store: StateStore | None = None, *, limit: int = 1000) -> None:
        self.store = store
        self.limit = limit
        self._records: list[ToolCallRecord] = []

    async def append(self, record: ToolCallRecord) -> None:
        self._records.append(record)
        if self.limit > 0 and len(self._records) > self.limit:
            self._records = self._records[-self.limit :]
        logger.debug(
            "tool %s by %s: %s", record.tool_name, record.worker_id, record.decision.get("kind")
        )
        if self.store is not None:
            await asyncio.to_thread(
                self.store.append_records, "audit", "records", [record.to_dict()], self.limit
            )

    def records(self, worker_id: str | None = None) -> list[ToolCallRecord]:
        if worker_id is None:
            return list(self._records)
        return [record for record in self._records if record.worker_id == worker_id]

    def __len__(self) -> int:
        return len(self._records)
