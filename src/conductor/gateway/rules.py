from __future__ import annotations

import fnmatch
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from conductor.models import ToolCallRequest

RuleAction = Literal["allow", "deny"]

RULE_PATTERN = re.compile(r"^\s*(?P<tool>[^()\s]+)\s*(?:\((?P<input>.*)\))?\s*$")


class PermissionMode(StrEnum):
    DEFAULT = "default"
    BYPASS = "bypass"
    DONT_ASK = "dont_ask"


def _input_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _input_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _input_strings(item)
    elif value is not None:
        yield str(value)


@dataclass(slots=True, frozen=True)
class PermissionRule:
    """``ToolName`` or ``ToolName(glob)``; both halves are fnmatch patterns."""

    pattern: str
    action: RuleAction
    tool_pattern: str = field(init=False, default="")
    input_pattern: str | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        match = RULE_PATTERN.match(self.pattern)
        if match is None:
            raise ValueError(f"Invalid permission rule pattern: {self.pattern!r}")
        if self.action not in ("allow", "deny"):
            raise ValueError(f"Invalid permission rule action: {self.action!r}")
        object.__setattr__(self, "tool_pattern", match.group("tool"))
        input_pattern = match.group("input")
        object.__setattr__(
            self, "input_pattern", input_pattern.strip() if input_pattern is not None else None
        )

    def matches(self, request: ToolCallRequest) -> bool:
        if not fnmatch.fnmatchcase(request.tool_name, self.tool_pattern):
            return False
        if self.input_pattern is None:
            return True
        candidates = list(_input_strings(request.input))
        candidates.append(
            json.dumps(request.input, sort_keys=True, separators=(",", ":"), default=str)
        )
        return any(fnmatch.fnmatchcase(item, self.input_pattern) for item in candidates)


class RuleTable:
    def __init__(self, rules: list[PermissionRule] | None = None) -> None:
        self.rules: tuple[PermissionRule, ...] = tuple(rules or ())

    @classmethod
    def from_patterns(cls, *, allow: list[str], deny: list[str]) -> RuleTable:
        rules = [PermissionRule(pattern, "deny") for pattern in deny]
        rules.extend(PermissionRule(pattern, "allow") for pattern in allow)
        return cls(rules)

    def _first(self, request: ToolCallRequest, action: RuleAction) -> PermissionRule | None:
        for rule in self.rules:
            if rule.action == action and rule.matches(request):
                return rule
        return None

    def first_deny(self, request: ToolCallRequest) -> PermissionRule | None:
        return self._first(request, "deny")

    def first_allow(self, request: ToolCallRequest) -> PermissionRule | None:
        return self._first(request, "allow")
