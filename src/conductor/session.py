"""Session-scoped memory, transcript and dispatch bookkeeping.

Writes to a key are serialized through a per-key lock; the last writer wins,
and every write is appended to ``write_log`` so overlapping writes from
parallel workers stay inspectable through ``conflicts()``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from conductor.errors import ConductorError, IsolationViolation
from conductor.models import (
    MemoryEntry,
    MemoryScope,
    Subtask,
    WorkerResult,
    WorkerStatus,
    utcnow_iso,
)
from conductor.state.memory import PersistentMemory

logger = logging.getLogger(__name__)

SUMMARY_LINE_CHARS = 120


@dataclass(slots=True, frozen=True)
class WriteRecord:
    sequence: int
    key: str
    value: Any
    scope: MemoryScope
    writer: str
    at: str
    previous_writer: str | None = None


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    session_id: str
    started_at: str
    summary: str
    session_keys: tuple[str, ...] = ()
    persistent_keys: tuple[str, ...] = ()
    transcript_summary: tuple[str, ...] = ()
    recent_transcript: tuple[dict[str, str], ...] = ()
    result_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "summary": self.summary,
            "session_keys": list(self.session_keys),
            "persistent_keys": list(self.persistent_keys),
            "transcript_summary": list(self.transcript_summary),
            "recent_transcript": [dict(item) for item in self.recent_transcript],
            "result_counts": dict(self.result_counts),
        }


class ClaimTable:
    """Resource keys held by running workers during one dispatch batch."""

    def __init__(self) -> None:
        self._active: dict[str, str] = {}
        self._holders: set[str] = set()
        self.violations: list[tuple[str, str, str]] = []
        self.peak_concurrency = 0

    def acquire(self, holder: str, keys: frozenset[str] | set[str]) -> None:
        overlaps = [(key, self._active[key], holder) for key in sorted(keys) if key in self._active]
        if overlaps:
            self.violations.extend(overlaps)
            detail = ", ".join(f"{key} held by {owner}" for key, owner, _ in overlaps)
            raise IsolationViolation(f"{holder} overlaps running claims: {detail}", conflicts=overlaps)
        for key in keys:
            self._active[key] = holder
        self._holders.add(holder)
        self.peak_concurrency = max(self.peak_concurrency, len(self._holders))

    def release(self, holder: str) -> None:
        self._active = {key: owner for key, owner in self._active.items() if owner != holder}
        self._holders.discard(holder)

    def active(self) -> dict[str, str]:
        return dict(self._active)

    def reset(self) -> None:
        self._active.clear()
        self._holders.clear()
        self.peak_concurrency = 0


class SessionContext:
    def __init__(
        self,
        session_id: str | None = None,
        *,
        persistent: PersistentMemory | None = None,
        max_transcript_items: int = 50,
        summarize_on_teardown: bool = True,
    ) -> None:
        self.session_id = session_id or f"session-{uuid4().hex[:8]}"
        self.started_at = utcnow_iso()
        self.persistent = persistent
        self.max_transcript_items = max(1, max_transcript_items)
        self.summarize_on_teardown = summarize_on_teardown
        self.claims = ClaimTable()
        self.subtasks: dict[str, Subtask] = {}
        self.results: dict[str, WorkerResult] = {}
        self.transcript: list[dict[str, str]] = []
        self.compacted: list[str] = []
        self.write_log: list[WriteRecord] = []
        self._entries: dict[str, MemoryEntry] = {}
        self._writers: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConductorError(f"Session {self.session_id} has been torn down.")

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is not None:
            return entry.value
        if self.persistent is not None:
            value = self.persistent.get(key)
            if value is not None:
                return value
        return default

    def entry(self, key: str) -> MemoryEntry | None:
        return self._entries.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        scope: MemoryScope | str = MemoryScope.SESSION,
        *,
        writer: str = "session",
    ) -> WriteRecord:
        self._ensure_open()
        scope = MemoryScope(scope)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            previous_writer = self._writers.get(key)
            record = WriteRecord(
                sequence=len(self.write_log) + 1,
                key=key,
                value=value,
                scope=scope,
                writer=writer,
                at=utcnow_iso(),
                previous_writer=previous_writer,
            )
            self.write_log.append(record)
            self._entries[key] = MemoryEntry(key=key, value=value, scope=scope)
            self._writers[key] = writer
        if previous_writer is not None and previous_writer != writer:
            logger.info("memory key %s overwritten: %s -> %s", key, previous_writer, writer)
        return record

    def history(self, key: str) -> list[WriteRecord]:
        return [record for record in self.write_log if record.key == key]

    def conflicts(self, key: str | None = None) -> list[WriteRecord]:
        """Writes that replaced a value recorded by a different writer."""
        return [
            record
            for record in self.write_log
            if (key is None or record.key == key)
            and record.previous_writer is not None
            and record.previous_writer != record.writer
        ]

    def append_transcript(self, role: str, content: str) -> None:
        self._ensure_open()
        self.transcript.append({"role": role, "content": content, "at": utcnow_iso()})
        overflow = len(self.transcript) - self.max_transcript_items
        if overflow > 0:
            for item in self.transcript[:overflow]:
                self.compacted.append(self._summarize_line(item))
            del self.transcript[:overflow]
            if len(self.compacted) > self.max_transcript_items:
                self.compacted = self.compacted[-self.max_transcript_items :]

    @staticmethod
    def _summarize_line(item: dict[str, str]) -> str:
        text = " ".join(str(item.get("content", "")).split())
        if len(text) > SUMMARY_LINE_CHARS:
            text = text[: SUMMARY_LINE_CHARS - 3] + "..."
        return f"{item.get('role', 'note')}: {text}"

    def record_subtasks(self, subtasks: list[Subtask]) -> None:
        for subtask in subtasks:
            self.subtasks[subtask.id] = subtask

    def record_result(self, result: WorkerResult) -> None:
        self.results[result.subtask_id] = result

    def upstream_artifacts(self, subtask: Subtask) -> dict[str, dict[str, Any]]:
        return {
            dep_id: dict(self.results[dep_id].artifacts)
            for dep_id in sorted(subtask.depends_on)
            if dep_id in self.results and self.results[dep_id].status is WorkerStatus.COMPLETED
        }

    def snapshot(self) -> SessionSnapshot:
        session_keys = sorted(
            key for key, entry in self._entries.items() if entry.scope is MemoryScope.SESSION
        )
        persistent_keys = set(
            key for key, entry in self._entries.items() if entry.scope is MemoryScope.PERSISTENT
        )
        if self.persistent is not None:
            persistent_keys.update(self.persistent.all())
        counts: dict[str, int] = {}
        for result in self.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        count_text = ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
        summary = (
            f"Session {self.session_id}: {len(self.subtasks)} subtasks"
            + (f" ({count_text})" if count_text else "")
            + f", {len(self._entries)} memory keys, {len(self.write_log)} writes"
        )
        recent = tuple(
            {"role": item["role"], "content": item["content"]} for item in self.transcript[-5:]
        )
        return SessionSnapshot(
            session_id=self.session_id,
            started_at=self.started_at,
            summary=summary,
            session_keys=tuple(session_keys),
            persistent_keys=tuple(sorted(persistent_keys)),
            transcript_summary=tuple(self.compacted),
            recent_transcript=recent,
            result_counts=counts,
        )

    def teardown(self) -> dict[str, Any]:
        """Close the session and return the persistent entries it produced."""
        self._ensure_open()
        delta = {
            key: entry.value
            for key, entry in self._entries.items()
            if entry.scope is MemoryScope.PERSISTENT
        }
        if self.summarize_on_teardown:
            delta[f"session:{self.session_id}:summary"] = self.snapshot().summary
        if self.persistent is not None:
            self.persistent.merge(delta)
        self.claims.reset()
        self._closed = True
        return delta


class SessionView:
    """A worker's window on the session; writes are attributed to the worker."""

    def __init__(self, session: SessionContext, worker_id: str) -> None:
        self._session = session
        self.worker_id = worker_id

    def get(self, key: str, default: Any = None) -> Any:
        return self._session.get(key, default)

    async def set(
        self, key: str, value: Any, scope: MemoryScope | str = MemoryScope.SESSION
    ) -> WriteRecord:
        return await self._session.set(key, value, scope, writer=self.worker_id)

    def note(self, content: str) -> None:
        self._session.append_transcript(self.worker_id, content)
