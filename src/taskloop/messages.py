from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

MessageType = Literal[
    "text",
    "tool_use",
    "tool_progress",
    "tool_result",
    "error",
    "status",
    "result",
    "notification",
    "task_completion",
    "max_iterations_warning",
]

TASK_DONE_TOOL = "task_done"
TASK_COMPLETION = "task_completion"
TEXTUAL_MESSAGE_TYPES = {"text", "result"}


@dataclass(slots=True)
class MessageMetadata:
    tool_name: str | None = None
    tool_input: str | None = None
    tool_input_raw: dict[str, Any] | None = None
    tool_output: str | None = None
    status: str | None = None
    elapsed: float | None = None
    cost: float | None = None
    tokens: int | None = None


@dataclass(slots=True)
class AgentMessage:
    """One streamed unit of agent output, forwarded verbatim by the dialogue core."""

    content: str | list[dict[str, Any]]
    message_type: MessageType = "text"
    role: str = "assistant"
    metadata: MessageMetadata = field(default_factory=MessageMetadata)


def extract_text(message: AgentMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    return ""


def parse_base_tool_name(tool_name: str | None) -> str:
    """Strip a server prefix such as ``mcp-server__task_done`` down to ``task_done``."""
    if not tool_name:
        return ""
    if "__" in tool_name:
        return tool_name.rsplit("__", maxsplit=1)[-1] or tool_name
    return tool_name


def is_task_done_tool(message: AgentMessage) -> bool:
    return (
        message.message_type == "tool_use"
        and parse_base_tool_name(message.metadata.tool_name) == TASK_DONE_TOOL
    )


def is_completion_signal(message: AgentMessage) -> bool:
    return is_task_done_tool(message) or message.message_type == TASK_COMPLETION
