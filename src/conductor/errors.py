from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration runtime errors."""


class DecompositionError(ConductorError):
    """Raised when a task cannot be split into an isolated subtask set."""

    def __init__(self, reason: str, detail: str = "") -> None:
        message = reason if not detail else f"{reason}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class IsolationViolation(DecompositionError):
    """Raised by the pre-dispatch gate when concurrent subtasks share a resource."""

    def __init__(self, detail: str, *, conflicts: list[tuple[str, str, str]] | None = None) -> None:
        super().__init__("unresolvable-conflict", detail)
        self.conflicts = list(conflicts or [])


class WorkerFailure(ConductorError):
    """Raised by worker business logic for a subtask-local failure."""

    def __init__(self, message: str, *, retriable: bool = True) -> None:
        super().__init__(message)
        self.retriable = retriable


class GatewayUnavailable(ConductorError):
    """Raised when the tool gateway failed closed on an infrastructure fault."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class EvaluatorTimeout(ConductorError):
    """Evaluator did not return a verdict within its time limit."""


class StateStoreError(ConductorError):
    """Raised when shared-state operations fail."""
