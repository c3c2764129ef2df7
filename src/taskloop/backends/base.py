from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any

from taskloop.messages import AgentMessage


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    @abstractmethod
    def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        """Execute an agent and stream its messages."""


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    return ""


def format_tool_input(tool_input: Any) -> str:
    if tool_input is None:
        return ""
    if isinstance(tool_input, str):
        return tool_input
    return json.dumps(tool_input, ensure_ascii=False)


def render_context(user_prompt: str, context: dict[str, Any]) -> str:
    visible = {key: value for key, value in context.items() if not key.startswith("_")}
    visible.pop("model", None)
    if not visible:
        return user_prompt
    return (
        f"{user_prompt}\n\nContext JSON:\n"
        f"{json.dumps(visible, ensure_ascii=False, indent=2)}"
    )


async def read_stderr(process: asyncio.subprocess.Process) -> str:
    if process.stderr is None:
        return ""
    data = await process.stderr.read()
    return data.decode("utf-8", errors="replace").strip()


async def reap_process(
    process: asyncio.subprocess.Process, stderr_task: asyncio.Task[str]
) -> None:
    """Kill a child that is still running and wait for it to exit."""
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
    if not stderr_task.done():
        stderr_task.cancel()
