from __future__ import annotations

from typing import Any

from conductor.loop import FeedbackWindow
from conductor.models import Task
from conductor.roles.base import RoleAgent


class GeneratorAgent(RoleAgent):
    role = "generator"
    system_prompt = """
You are the Generator. Produce the requested artifact in full.
When critique of an earlier attempt is supplied, address every point in it.
""".strip()

    async def generate(self, task: Task, feedback: FeedbackWindow | None) -> str:
        context: dict[str, Any] = {"task_id": task.id, "constraints": task.constraints}
        instruction = task.goal
        if feedback is not None:
            instruction = f"{task.goal}\n\n{feedback.render()}"
        response = await self.run(instruction, context)
        return response.content
