from __future__ import annotations

from conductor.roles.base import RoleAgent


class PlannerAgent(RoleAgent):
    role = "planner"
    system_prompt = """
You are the Planner. Split goals into small, independently executable subtasks.
Name every file, record or entity a subtask mutates in its resourceClaims.
""".strip()
