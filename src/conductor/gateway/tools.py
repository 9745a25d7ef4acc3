"""Tools reachable through the gateway and the registry that names them."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from pathlib import Path
from typing import Any

from conductor.models import ToolResult, normalize_resource_key


class Tool:
    """Base tool class.

    ``read_only`` tools never mutate external state. ``cancellable`` is false for
    tools whose effect cannot be interrupted once started; the gateway lets those
    finish and audits the late result. ``resource_key_field`` names the input
    field holding the resource a call touches.
    """

    name: str = "tool"
    description: str = ""
    read_only: bool = False
    cancellable: bool = True
    resource_key_field: str | None = None

    def resource_keys(self, tool_input: dict[str, Any]) -> set[str]:
        if not self.resource_key_field:
            return set()
        value = tool_input.get(self.resource_key_field)
        if value is None:
            return set()
        if isinstance(value, (list, tuple, set)):
            return {normalize_resource_key(item) for item in value}
        return {normalize_resource_key(value)}

    async def run(self, tool_input: dict[str, Any]) -> ToolResult:  # pragma: no cover - abstract
        raise NotImplementedError


class FunctionTool(Tool):
    """Wraps a plain or async callable taking the tool input as keyword arguments."""

    def __init__(
        self,
        name: str,
        func: Callable[..., Any],
        *,
        description: str = "",
        read_only: bool = False,
        cancellable: bool = True,
        resource_key_field: str | None = None,
    ) -> None:
        self.name = name
        self.func = func
        self.description = description or (func.__doc__ or "").strip()
        self.read_only = read_only
        self.cancellable = cancellable
        self.resource_key_field = resource_key_field

    async def run(self, tool_input: dict[str, Any]) -> ToolResult:
        output = self.func(**tool_input)
        if inspect.isawaitable(output):
            output = await output
        if isinstance(output, ToolResult):
            return output
        return ToolResult(output=output)


class WorkspaceFileTool(Tool):
    """Reads or writes text files below a workspace root; the path is the resource key."""

    resource_key_field = "path"

    def __init__(self, root: Path, *, write: bool = False) -> None:
        self.root = root.resolve()
        self.write = write
        self.name = "write_file" if write else "read_file"
        self.read_only = not write
        self.description = "Write a text file." if write else "Read a text file."

    def _resolve(self, relative: str) -> Path:
        target = (self.root / relative).resolve()
        if not target.is_relative_to(self.root):
            raise ValueError(f"Path escapes workspace: {relative}")
        return target

    def _write(self, target: Path, content: str) -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        return target.write_text(content, encoding="utf-8")

    async def run(self, tool_input: dict[str, Any]) -> ToolResult:
        relative = str(tool_input.get("path", "")).strip()
        if not relative:
            return ToolResult(error="missing 'path'")
        try:
            target = self._resolve(relative)
        except ValueError as exc:
            return ToolResult(error=str(exc))
        if self.write:
            content = str(tool_input.get("content", ""))
            written = await asyncio.to_thread(self._write, target, content)
            return ToolResult(output={"path": relative, "bytes": written})
        if not target.exists():
            return ToolResult(error=f"not found: {relative}")
        text = await asyncio.to_thread(target.read_text, encoding="utf-8")
        return ToolResult(output=text)


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool {tool.name} already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
