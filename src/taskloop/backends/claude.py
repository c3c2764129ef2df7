from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    appears_partial_json,
    block_text,
    format_tool_input,
    read_stderr,
    reap_process,
    render_context,
)
from taskloop.messages import AgentMessage, MessageMetadata


class ClaudeCodeBackend(AgentBackend):
    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        return command

    @staticmethod
    def parse_event(event: dict[str, Any]) -> list[AgentMessage]:
        event_type = event.get("type")
        messages: list[AgentMessage] = []

        if event_type == "assistant":
            message = event.get("message")
            blocks = message.get("content") if isinstance(message, dict) else None
            if isinstance(blocks, str):
                blocks = [{"type": "text", "text": blocks}]
            if not isinstance(blocks, list):
                return messages
            for block in blocks:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    messages.append(AgentMessage(content=str(block["text"])))
                elif block.get("type") == "tool_use":
                    tool_name = str(block.get("name", ""))
                    tool_input = block.get("input")
                    rendered = format_tool_input(tool_input)
                    messages.append(
                        AgentMessage(
                            content=f"{tool_name}: {rendered}" if rendered else tool_name,
                            message_type="tool_use",
                            metadata=MessageMetadata(
                                tool_name=tool_name,
                                tool_input=rendered,
                                tool_input_raw=tool_input if isinstance(tool_input, dict) else None,
                            ),
                        )
                    )
            return messages

        if event_type == "user":
            message = event.get("message")
            blocks = message.get("content") if isinstance(message, dict) else None
            if not isinstance(blocks, list):
                return messages
            for block in blocks:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    output = block_text(block.get("content"))
                    messages.append(
                        AgentMessage(
                            content=output,
                            message_type="tool_result",
                            metadata=MessageMetadata(tool_output=output),
                        )
                    )
            return messages

        if event_type == "result":
            result_text = event.get("result")
            is_error = bool(event.get("is_error"))
            cost = event.get("total_cost_usd")
            duration = event.get("duration_ms")
            messages.append(
                AgentMessage(
                    content=result_text if isinstance(result_text, str) else "",
                    message_type="error" if is_error else "result",
                    metadata=MessageMetadata(
                        status=str(event.get("subtype", "")),
                        cost=float(cost) if isinstance(cost, (int, float)) else None,
                        elapsed=(
                            float(duration) / 1000.0
                            if isinstance(duration, (int, float))
                            else None
                        ),
                    ),
                )
            )
            return messages

        content = block_text(event.get("content"))
        if content:
            messages.append(AgentMessage(content=content))
        return messages

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        requested_model = context.get("model")
        model = requested_model.strip() if isinstance(requested_model, str) else None
        command = self.build_command(system_prompt, render_context(user_prompt, context), model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        stderr_task = asyncio.create_task(read_stderr(process))
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield AgentMessage(content=line)
                    continue

                if not isinstance(event, dict):
                    continue
                for message in self.parse_event(event):
                    yield message

            if parse_buffer:
                yield AgentMessage(content=parse_buffer)

            return_code = await process.wait()
            stderr_output = await stderr_task
        finally:
            await reap_process(process, stderr_task)

        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )
