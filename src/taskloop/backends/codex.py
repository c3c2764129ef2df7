from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
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


class CodexBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        requested_model = context.get("model")
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(render_context(user_prompt, context))
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        for key in ("content", "delta", "message"):
            value = event.get(key)
            if isinstance(value, dict):
                value = value.get("content")
            text = block_text(value)
            if text:
                return text
        return ""

    @staticmethod
    def _parse_item(item: dict[str, Any]) -> list[AgentMessage]:
        item_type = item.get("type")
        if item_type == "agent_message":
            text = item.get("text")
            return [AgentMessage(content=text)] if isinstance(text, str) and text else []
        if item_type == "reasoning":
            text = item.get("text")
            if isinstance(text, str) and text:
                return [AgentMessage(content=text, message_type="notification")]
            return []
        if item_type == "command_execution":
            command = str(item.get("command", ""))
            output = str(item.get("aggregated_output", ""))
            return [
                AgentMessage(
                    content=f"shell: {command}",
                    message_type="tool_use",
                    metadata=MessageMetadata(tool_name="shell", tool_input=command),
                ),
                AgentMessage(
                    content=output,
                    message_type="tool_result",
                    metadata=MessageMetadata(
                        tool_name="shell",
                        tool_output=output,
                        status=str(item.get("status", "")),
                    ),
                ),
            ]
        if item_type == "mcp_tool_call":
            server = str(item.get("server", ""))
            tool = str(item.get("tool", ""))
            tool_name = f"{server}__{tool}" if server else tool
            arguments = item.get("arguments")
            return [
                AgentMessage(
                    content=tool_name,
                    message_type="tool_use",
                    metadata=MessageMetadata(
                        tool_name=tool_name,
                        tool_input=format_tool_input(arguments),
                        tool_input_raw=arguments if isinstance(arguments, dict) else None,
                        status=str(item.get("status", "")),
                    ),
                )
            ]
        if item_type == "file_change":
            changes = item.get("changes")
            paths = [
                str(change.get("path", ""))
                for change in changes or []
                if isinstance(change, dict)
            ]
            return [
                AgentMessage(
                    content="apply_patch: " + ", ".join(paths),
                    message_type="tool_use",
                    metadata=MessageMetadata(tool_name="apply_patch", tool_input=", ".join(paths)),
                )
            ]
        return []

    def parse_event(self, event: dict[str, Any]) -> list[AgentMessage]:
        event_type = str(event.get("type", ""))
        if event_type == "item.completed":
            item = event.get("item")
            return self._parse_item(item) if isinstance(item, dict) else []
        if event_type in {"item.started", "item.updated", "thread.started", "turn.started"}:
            return []
        if event_type in {"turn.failed", "error"}:
            error = event.get("error")
            detail = error.get("message") if isinstance(error, dict) else event.get("message")
            return [AgentMessage(content=str(detail or "Codex turn failed"), message_type="error")]
        if event_type == "turn.completed":
            return []
        content = self._extract_content(event)
        return [AgentMessage(content=content)] if content else []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        command = self.build_command(system_prompt, user_prompt, context)
        cwd_override = context.get("_working_directory")
        if isinstance(cwd_override, str) and cwd_override.strip():
            cwd = cwd_override
        else:
            cwd = str(self.working_directory) if self.working_directory else None
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "has_context": bool(context),
                "model": context.get("model"),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
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
                        self._emit({"event": "codex_json_partial", "bytes": len(candidate)})
                        continue
                    parse_buffer = ""
                    self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
                    continue

                if not isinstance(event, dict):
                    continue
                messages = self.parse_event(event)
                self._emit(
                    {
                        "event": "codex_json_event",
                        "type": str(event.get("type", "")),
                        "messages": len(messages),
                    }
                )
                for message in messages:
                    yield message

            if parse_buffer:
                self._emit({"event": "codex_json_buffer_flush", "bytes": len(parse_buffer)})

            return_code = await process.wait()
            stderr_output = await stderr_task
        finally:
            await reap_process(process, stderr_task)

        if return_code != 0:
            self._emit(
                {
                    "event": "codex_cli_exit",
                    "exit_code": return_code,
                    "stderr": stderr_output[:400],
                }
            )
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
        self._emit({"event": "codex_cli_exit", "exit_code": 0})
