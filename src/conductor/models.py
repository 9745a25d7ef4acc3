from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:8]}"


def normalize_resource_key(key: str) -> str:
    """Collapse spellings of the same workspace path (`./a.py`, `src//a.py`) to one key."""
    text = str(key).strip().replace("\\", "/")
    if text.startswith("#") or ("/" not in text and not text.startswith(".")):
        return text
    return posixpath.normpath(text)


@dataclass(slots=True, frozen=True)
class Task:
    goal: str
    constraints: dict[str, Any] = field(default_factory=dict)
    max_iterations: int = 5
    time_budget_seconds: float | None = None
    id: str = field(default_factory=lambda: _short_id("task"))


@dataclass(slots=True, frozen=True)
class Subtask:
    id: str
    type: str
    description: str
    resource_claims: frozenset[str] = frozenset()
    depends_on: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        claims = frozenset(normalize_resource_key(key) for key in self.resource_claims)
        object.__setattr__(self, "resource_claims", claims)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "resourceClaims": sorted(self.resource_claims),
            "dependsOn": sorted(self.depends_on),
        }


class WorkerStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class DecisionKind(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    tool_name: str
    input: dict[str, Any]
    requesting_worker_id: str
    request_id: str = field(default_factory=lambda: _short_id("call"))


@dataclass(slots=True, frozen=True)
class ToolCallDecision:
    kind: DecisionKind
    updated_input: dict[str, Any] | None = None
    reason: str = ""
    prompt: str = ""
    stage: str = ""

    @classmethod
    def allow(
        cls, updated_input: dict[str, Any] | None = None, *, stage: str = ""
    ) -> ToolCallDecision:
        return cls(kind=DecisionKind.ALLOW, updated_input=updated_input, stage=stage)

    @classmethod
    def deny(cls, reason: str, *, stage: str = "") -> ToolCallDecision:
        return cls(kind=DecisionKind.DENY, reason=reason, stage=stage)

    @classmethod
    def ask(cls, prompt: str, *, stage: str = "") -> ToolCallDecision:
        return cls(kind=DecisionKind.ASK, prompt=prompt, stage=stage)

    @property
    def allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOW

    def with_stage(self, stage: str) -> ToolCallDecision:
        if self.stage:
            return self
        return ToolCallDecision(
            kind=self.kind,
            updated_input=self.updated_input,
            reason=self.reason,
            prompt=self.prompt,
            stage=stage,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "stage": self.stage}
        if self.kind is DecisionKind.ALLOW and self.updated_input is not None:
            payload["updated_input"] = self.updated_input
        if self.reason:
            payload["reason"] = self.reason
        if self.prompt:
            payload["prompt"] = self.prompt
        return payload


@dataclass(slots=True)
class ToolResult:
    output: Any = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Audit entry written for every call that reaches the gateway."""

    timestamp: str
    worker_id: str
    tool_name: str
    input: dict[str, Any]
    decision: dict[str, Any]
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    flagged: bool = False
    flag_reason: str = ""
    discarded: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "timestamp": self.timestamp,
            "workerId": self.worker_id,
            "toolName": self.tool_name,
            "input": self.input,
            "decision": self.decision,
            "durationMs": round(self.duration_ms, 3),
        }
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        if self.flagged:
            payload["flagged"] = True
            payload["flagReason"] = self.flag_reason
        if self.discarded:
            payload["discarded"] = True
        return payload


@dataclass(slots=True, frozen=True)
class WorkerResult:
    subtask_id: str
    status: WorkerStatus
    artifacts: dict[str, Any] = field(default_factory=dict)
    tool_call_log: tuple[ToolCallRecord, ...] = ()
    error_detail: str | None = None
    blocked_by: tuple[str, ...] = ()
    attempts: int = 0
    retriable: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "subtaskId": self.subtask_id,
            "status": self.status.value,
            "artifacts": self.artifacts,
            "toolCallLog": [record.to_dict() for record in self.tool_call_log],
            "attempts": self.attempts,
        }
        if self.error_detail is not None:
            payload["errorDetail"] = self.error_detail
        if self.blocked_by:
            payload["blockedBy"] = list(self.blocked_by)
        return payload


class VerdictOutcome(StrEnum):
    PASS = "pass"
    NEEDS_IMPROVEMENT = "needs_improvement"


@dataclass(slots=True, frozen=True)
class EvaluationVerdict:
    outcome: VerdictOutcome
    feedback: str = ""
    score: float | None = None

    @property
    def passed(self) -> bool:
        return self.outcome is VerdictOutcome.PASS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"outcome": self.outcome.value, "feedback": self.feedback}
        if self.score is not None:
            payload["score"] = self.score
        return payload


class MemoryScope(StrEnum):
    SESSION = "session"
    PERSISTENT = "persistent"


@dataclass(slots=True, frozen=True)
class MemoryEntry:
    key: str
    value: Any
    scope: MemoryScope = MemoryScope.SESSION


class RunStatus(StrEnum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class RunOutcome:
    status: RunStatus
    results: list[WorkerResult] = field(default_factory=list)
    blocked_subtasks: list[str] = field(default_factory=list)
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def result_for(self, subtask_id: str) -> WorkerResult | None:
        for result in self.results:
            if result.subtask_id == subtask_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "blockedSubtasks": list(self.blocked_subtasks),
            "results": [result.to_dict() for result in self.results],
        }
