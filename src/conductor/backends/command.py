from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendProcessError


class CommandBackend(AgentBackend):
    """Pipes a role prompt into an external model command and streams its stdout.

    The system prompt travels in ``CONDUCTOR_SYSTEM_PROMPT``; the user prompt and
    the JSON context are written to stdin. Lines that parse as JSON objects with a
    ``content``/``delta`` field are unwrapped, anything else is passed through
    verbatim, so structured verdict lines reach the caller intact.
    """

    def __init__(self, command: list[str], working_directory: Path | None = None) -> None:
        if not command:
            raise ValueError("CommandBackend requires a non-empty command.")
        self.command = list(command)
        self.working_directory = working_directory

    @property
    def name(self) -> str:
        return Path(self.command[0]).name

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        return delta if isinstance(delta, str) else ""

    @staticmethod
    def build_stdin(user_prompt: str, context: dict[str, Any]) -> bytes:
        payload = user_prompt
        if context:
            payload = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
            )
        return payload.encode("utf-8")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        env = os.environ.copy()
        env["CONDUCTOR_SYSTEM_PROMPT"] = system_prompt
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Backend command not found: {self.command[0]}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdin is None or process.stdout is None:
            raise BackendProcessError(
                "Backend process did not expose stdio.", backend=self.name, retriable=False
            )

        try:
            process.stdin.write(self.build_stdin(user_prompt, context))
            await process.stdin.drain()
            process.stdin.close()

            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\n")
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    yield line + "\n"
                    continue
                if isinstance(event, dict) and ("content" in event or "delta" in event):
                    content = self._extract_content(event)
                    if content:
                        yield content
                    continue
                yield line + "\n"

            return_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        if return_code != 0:
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            raise BackendExecutionError(
                f"Backend command failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
