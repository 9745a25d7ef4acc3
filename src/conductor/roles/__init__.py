from conductor.roles.base import RoleAgent, RoleResponse
from conductor.roles.critic import CriticAgent, parse_verdict
from conductor.roles.generator import GeneratorAgent
from conductor.roles.planner import PlannerAgent

__all__ = [
    "CriticAgent",
    "GeneratorAgent",
    "PlannerAgent",
    "RoleAgent",
    "RoleResponse",
    "parse_verdict",
]
