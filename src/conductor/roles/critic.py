from __future__ import annotations

import json
import re
from typing import Any

from conductor.models import EvaluationVerdict, Task, VerdictOutcome
from conductor.roles.base import RoleAgent

SEVERITY_PATTERN = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b", re.IGNORECASE)
SEVERITY_PENALTY = {"BLOCKER": 40.0, "MAJOR": 15.0, "MINOR": 5.0, "SUGGESTION": 1.0}
OUTCOME_ALIASES = {
    "pass": VerdictOutcome.PASS,
    "passed": VerdictOutcome.PASS,
    "approve": VerdictOutcome.PASS,
    "approved": VerdictOutcome.PASS,
    "needs_improvement": VerdictOutcome.NEEDS_IMPROVEMENT,
    "needsimprovement": VerdictOutcome.NEEDS_IMPROVEMENT,
    "needs-improvement": VerdictOutcome.NEEDS_IMPROVEMENT,
    "fail": VerdictOutcome.NEEDS_IMPROVEMENT,
    "revise": VerdictOutcome.NEEDS_IMPROVEMENT,
}


def _json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def count_findings(content: str) -> dict[str, int]:
    findings = {"BLOCKER": 0, "MAJOR": 0, "MINOR": 0, "SUGGESTION": 0}
    for match in SEVERITY_PATTERN.finditer(content):
        findings[match.group(1).upper()] += 1
    return findings


def parse_verdict(content: str, *, pass_threshold: float = 80.0) -> EvaluationVerdict:
    """Read a verdict from a JSON line, else score the severity labels in the review."""
    for payload in _json_objects(content):
        raw_outcome = str(payload.get("outcome", "")).strip().lower()
        outcome = OUTCOME_ALIASES.get(raw_outcome)
        score: float | None = None
        raw_score = payload.get("score")
        if isinstance(raw_score, (int, float)) and not isinstance(raw_score, bool):
            score = float(raw_score)
        if outcome is None and score is not None:
            outcome = (
                VerdictOutcome.PASS if score >= pass_threshold else VerdictOutcome.NEEDS_IMPROVEMENT
            )
        if outcome is None:
            continue
        return EvaluationVerdict(
            outcome=outcome, feedback=str(payload.get("feedback", "")).strip(), score=score
        )

    findings = count_findings(content)
    score = max(
        0.0, 100.0 - sum(SEVERITY_PENALTY[label] * count for label, count in findings.items())
    )
    blocking = findings["BLOCKER"] > 0 or findings["MAJOR"] > 0
    outcome = (
        VerdictOutcome.PASS
        if not blocking and score >= pass_threshold
        else VerdictOutcome.NEEDS_IMPROVEMENT
    )
    return EvaluationVerdict(outcome=outcome, feedback=content.strip(), score=score)


class CriticAgent(RoleAgent):
    role = "critic"
    system_prompt = """
You are the Critic. Review the artifact against the goal.
Classify findings as BLOCKER, MAJOR, MINOR, or SUGGESTION, and end with one JSON line
{"outcome": "pass" | "needs_improvement", "score": 0-100, "feedback": "..."}.
""".strip()

    def __init__(self, *args: Any, pass_threshold: float = 80.0, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pass_threshold = pass_threshold

    async def evaluate(self, task: Task, artifact: str) -> EvaluationVerdict:
        response = await self.run(
            f"Goal:\n{task.goal}\n\nArtifact:\n{artifact}",
            {"task_id": task.id, "constraints": task.constraints},
        )
        return parse_verdict(response.content, pass_threshold=self.pass_threshold)
