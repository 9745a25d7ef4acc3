from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any, Protocol

from conductor.backends.base import BackendExecutionError
from conductor.dispatch import count_parallelizable, plan_waves, validate_isolation
from conductor.errors import DecompositionError, IsolationViolation
from conductor.models import Subtask, Task, normalize_resource_key
from conductor.roles.planner import PlannerAgent
from conductor.session import SessionContext, SessionSnapshot

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

BULLET_PATTERN = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")
CLAUSE_SPLIT = re.compile(r"\s*(;|,?\s+and\s+then\s+|,?\s+then\s+|,?\s+and\s+)\s*", re.IGNORECASE)
LEADING_THEN = re.compile(r"^(?:and\s+)?then\s+", re.IGNORECASE)
FILE_TOKEN = re.compile(r"(?<![\w@#])(?:[\w.-]+/)*[\w-]+\.[A-Za-z][A-Za-z0-9]{0,7}\b")
ENTITY_TOKEN = re.compile(r"#([\w][\w./:-]*)")
VERB_TYPES = {
    "add": "modify",
    "analyze": "analyze",
    "audit": "analyze",
    "build": "modify",
    "check": "verify",
    "create": "modify",
    "delete": "modify",
    "document": "document",
    "edit": "modify",
    "fix": "modify",
    "implement": "modify",
    "inspect": "analyze",
    "migrate": "modify",
    "read": "analyze",
    "refactor": "modify",
    "remove": "modify",
    "review": "analyze",
    "summarize": "analyze",
    "test": "verify",
    "update": "modify",
    "verify": "verify",
    "write": "modify",
}


class SubtaskProposer(Protocol):
    async def propose(
        self,
        task: Task,
        snapshot: SessionSnapshot | None,
        feedback: str | None,
    ) -> list[list[Subtask]]: ...


def extract_claims(text: str, known_resources: list[str] | None = None) -> frozenset[str]:
    claims = {match.group(0).rstrip(".") for match in FILE_TOKEN.finditer(text)}
    claims.update(match.group(1).rstrip(".:") for match in ENTITY_TOKEN.finditer(text))
    lowered = text.lower()
    for resource in known_resources or []:
        if resource and resource.lower() in lowered:
            claims.add(resource)
    return frozenset(normalize_resource_key(claim) for claim in claims)


def subtask_type(text: str) -> str:
    words = text.strip().split(maxsplit=1)
    if not words:
        return "general"
    return VERB_TYPES.get(words[0].lower().strip(".,:"), "general")


def _goal_lines(goal: str) -> list[str]:
    lines: list[str] = []
    for raw_line in goal.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = BULLET_PATTERN.match(line)
        lines.append(match.group(1).strip() if match else line)
    return lines


class HeuristicProposer:
    """Rule-based partitioning of a goal into clause-level subtasks.

    Clauses are separated by lines, bullets, ``;`` and ``and``; a clause
    introduced by ``then`` depends on the clause before it. A clause claims the
    file-like tokens and ``#entity`` tokens it mentions plus any name from
    ``task.constraints["resources"]`` it contains. Two candidates are offered:
    one subtask per clause and one subtask per line.
    """

    def _clauses(self, line: str) -> list[tuple[str, bool]]:
        parts = CLAUSE_SPLIT.split(line)
        clauses: list[tuple[str, bool]] = []
        after_previous = False
        first = LEADING_THEN.sub("", parts[0])
        leading_then = first != parts[0]
        for index, part in enumerate(parts):
            if index % 2 == 1:
                after_previous = "then" in part.lower()
                continue
            text = (first if index == 0 else part).strip(" ,.")
            if not text:
                continue
            clauses.append((text, leading_then if index == 0 else after_previous))
        return clauses

    def _build(
        self, units: list[tuple[str, bool]], known_resources: list[str]
    ) -> list[Subtask]:
        subtasks: list[Subtask] = []
        for index, (text, after_previous) in enumerate(units, start=1):
            depends_on = frozenset({subtasks[-1].id}) if after_previous and subtasks else frozenset()
            subtasks.append(
                Subtask(
                    id=f"subtask-{index:03d}",
                    type=subtask_type(text),
                    description=text,
                    resource_claims=extract_claims(text, known_resources),
                    depends_on=depends_on,
                )
            )
        return subtasks

    async def propose(
        self,
        task: Task,
        snapshot: SessionSnapshot | None,
        feedback: str | None,
    ) -> list[list[Subtask]]:
        known = [str(item) for item in task.constraints.get("resources", [])]
        lines = _goal_lines(task.goal)
        clause_units: list[tuple[str, bool]] = []
        line_units: list[tuple[str, bool]] = []
        for line in lines:
            clauses = self._clauses(line)
            if not clauses:
                continue
            clause_units.extend(clauses)
            line_units.append((" and ".join(text for text, _ in clauses), clauses[0][1]))

        candidates = [self._build(clause_units, known)]
        by_line = self._build(line_units, known)
        if [s.description for s in by_line] != [s.description for s in candidates[0]]:
            candidates.append(by_line)
        return candidates


def _json_payloads(content: str) -> list[Any]:
    stripped = content.strip()
    try:
        return [json.loads(stripped)]
    except json.JSONDecodeError:
        pass
    payloads: list[Any] = []
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payloads.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return payloads


def _as_strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if str(item).strip()]
    return []


def _subtask_from_record(record: dict[str, Any], index: int) -> Subtask:
    description = str(record.get("description") or record.get("title") or "").strip()
    return Subtask(
        id=str(record.get("id") or f"subtask-{index:03d}"),
        type=str(record.get("type") or subtask_type(description)),
        description=description,
        resource_claims=frozenset(
            _as_strings(record.get("resourceClaims", record.get("resource_claims", [])))
        ),
        depends_on=frozenset(_as_strings(record.get("dependsOn", record.get("depends_on", [])))),
    )


class PlannerProposer:
    """Asks the planner role for subtask records and parses its answer."""

    def __init__(self, planner: PlannerAgent) -> None:
        self.planner = planner

    @staticmethod
    def parse_candidates(content: str, known_resources: list[str]) -> list[list[Subtask]]:
        candidates: list[list[Subtask]] = []
        loose: list[dict[str, Any]] = []
        for payload in _json_payloads(content):
            if isinstance(payload, list):
                loose.extend(item for item in payload if isinstance(item, dict))
            elif isinstance(payload, dict) and isinstance(payload.get("candidates"), list):
                for candidate in payload["candidates"]:
                    if isinstance(candidate, list):
                        records = [item for item in candidate if isinstance(item, dict)]
                        candidates.append(
                            [_subtask_from_record(r, i) for i, r in enumerate(records, start=1)]
                        )
            elif isinstance(payload, dict) and isinstance(payload.get("subtasks"), list):
                records = [item for item in payload["subtasks"] if isinstance(item, dict)]
                candidates.append(
                    [_subtask_from_record(r, i) for i, r in enumerate(records, start=1)]
                )
            elif isinstance(payload, dict) and payload.get("description"):
                loose.append(payload)
        if loose:
            candidates.append([_subtask_from_record(r, i) for i, r in enumerate(loose, start=1)])
        if candidates:
            return candidates

        steps = [
            match.group(1).strip()
            for match in (BULLET_PATTERN.match(line.strip()) for line in content.splitlines())
            if match
        ]
        if not steps:
            return []
        return [
            [
                Subtask(
                    id=f"subtask-{index:03d}",
                    type=subtask_type(step),
                    description=step,
                    resource_claims=extract_claims(step, known_resources),
                )
                for index, step in enumerate(steps[:24], start=1)
            ]
        ]

    async def propose(
        self,
        task: Task,
        snapshot: SessionSnapshot | None,
        feedback: str | None,
    ) -> list[list[Subtask]]:
        context: dict[str, Any] = {"goal": task.goal, "constraints": task.constraints}
        if snapshot is not None:
            context["session"] = snapshot.to_dict()
        instruction = (
            f"Goal: {task.goal}\n"
            "Decompose the goal into subtasks. Answer with one JSON object "
            '{"subtasks": [{"id", "type", "description", "resourceClaims", "dependsOn"}]}. '
            "Subtasks that share a resource must be linked by dependsOn."
        )
        if feedback:
            instruction += f"\nThe previous proposal was rejected: {feedback}"
        try:
            response = await self.planner.run(instruction, context)
        except BackendExecutionError as exc:
            raise DecompositionError("planner-failed", str(exc)) from exc
        known = [str(item) for item in task.constraints.get("resources", [])]
        return self.parse_candidates(response.content, known)


class TaskDecomposer:
    def __init__(
        self,
        proposer: SubtaskProposer,
        *,
        max_attempts: int = 3,
        max_subtasks: int = 24,
        event_hook: EventHook | None = None,
    ) -> None:
        self.proposer = proposer
        self.max_attempts = max(1, max_attempts)
        self.max_subtasks = max(1, max_subtasks)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def validate(self, candidate: list[Subtask]) -> list[Subtask]:
        """Return the candidate in dependency order or raise why it is unsafe."""
        if not candidate:
            raise DecompositionError("malformed-task", "no subtasks proposed")
        if len(candidate) > self.max_subtasks:
            raise DecompositionError(
                "malformed-task", f"{len(candidate)} subtasks exceeds limit {self.max_subtasks}"
            )
        blank = [subtask.id for subtask in candidate if not subtask.description.strip()]
        if blank:
            raise DecompositionError("malformed-task", f"empty description for {', '.join(blank)}")
        waves = plan_waves(candidate)
        validate_isolation(candidate)
        return [subtask for wave in waves for subtask in wave]

    @staticmethod
    def choose(valid: list[list[Subtask]]) -> list[Subtask]:
        _index, best = max(
            enumerate(valid),
            key=lambda item: (count_parallelizable(item[1]), -len(item[1]), -item[0]),
        )
        return best

    async def decompose(
        self, task: Task, session: SessionContext | None = None
    ) -> list[Subtask]:
        if not task.goal.strip():
            raise DecompositionError("malformed-task", "task goal is empty")

        snapshot = session.snapshot() if session is not None else None
        feedback: str | None = None
        problems: list[DecompositionError] = []
        for attempt in range(1, self.max_attempts + 1):
            candidates = await self.proposer.propose(task, snapshot, feedback)
            valid: list[list[Subtask]] = []
            problems = []
            for candidate in candidates:
                try:
                    valid.append(self.validate(candidate))
                except DecompositionError as exc:
                    problems.append(exc)
            if valid:
                chosen = self.choose(valid)
                self._emit(
                    {
                        "event": "decomposition_complete",
                        "task_id": task.id,
                        "attempt": attempt,
                        "subtasks": len(chosen),
                        "parallelizable": count_parallelizable(chosen),
                    }
                )
                if session is not None:
                    session.append_transcript(
                        "decomposer",
                        f"{len(chosen)} subtasks: " + "; ".join(s.description for s in chosen),
                    )
                return chosen

            if not problems:
                problems = [DecompositionError("malformed-task", "proposer returned nothing")]
            feedback = "; ".join(str(problem) for problem in problems)
            logger.info("decomposition attempt %d rejected: %s", attempt, feedback)
            self._emit(
                {
                    "event": "decomposition_rejected",
                    "task_id": task.id,
                    "attempt": attempt,
                    "feedback": feedback,
                }
            )

        if any(isinstance(problem, IsolationViolation) for problem in problems):
            raise DecompositionError("unresolvable-conflict", feedback or "")
        last = problems[-1]
        raise DecompositionError(last.reason, last.detail)
