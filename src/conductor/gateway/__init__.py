from conductor.gateway.audit import AuditLog
from conductor.gateway.deciders import ApprovalQueue, PermissionDecider, StaticDecider
from conductor.gateway.gateway import GATEWAY_UNAVAILABLE, ToolCallOutcome, ToolGateway
from conductor.gateway.hooks import (
    HookContext,
    HookEvent,
    HookFailure,
    HookRegistry,
    PostHookVerdict,
)
from conductor.gateway.rules import PermissionMode, PermissionRule, RuleTable
from conductor.gateway.tools import FunctionTool, Tool, ToolRegistry, WorkspaceFileTool

__all__ = [
    "GATEWAY_UNAVAILABLE",
    "ApprovalQueue",
    "AuditLog",
    "FunctionTool",
    "HookContext",
    "HookEvent",
    "HookFailure",
    "HookRegistry",
    "PermissionDecider",
    "PermissionMode",
    "PermissionRule",
    "PostHookVerdict",
    "RuleTable",
    "StaticDecider",
    "Tool",
    "ToolCallOutcome",
    "ToolGateway",
    "ToolRegistry",
    "WorkspaceFileTool",
]
