from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from conductor.backends.base import AgentBackend


@dataclass(slots=True)
class RoleResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class RoleAgent:
    """A model-backed role: a fixed system prompt over an ``AgentBackend``."""

    role: str = "role"
    system_prompt: str = "You are a careful assistant."

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        if system_prompt is not None:
            self.system_prompt = system_prompt.strip()

    async def run(self, instruction: str, context: dict[str, Any]) -> RoleResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.complete(self.system_prompt, instruction, run_context)
        return RoleResponse(
            role=self.role,
            content=content,
            metadata={"instruction": instruction},
        )
