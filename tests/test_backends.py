import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from taskloop.backends import RetryPolicy
from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    render_context,
)
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.resilient import ResilientBackend
from taskloop.messages import AgentMessage


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield AgentMessage(content="")  # pragma: no cover


class SuccessBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        yield AgentMessage(content="ok")


class FailAfterFirstMessageBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        yield AgentMessage(content="partial")
        raise BackendExecutionError("stream broke", backend="fake", retriable=True)


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield AgentMessage(content="too late")  # pragma: no cover


class FakeStdout:
    def __init__(self, lines: list[bytes], hang: bool = False) -> None:
        self._lines = lines
        self._index = 0
        self._hang = hang

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            if self._hang:
                await asyncio.sleep(3600)
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(
        self,
        lines: list[bytes],
        return_code: int = 0,
        stderr: bytes = b"",
        hang: bool = False,
    ) -> None:
        self.stdout = FakeStdout(lines, hang=hang)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self.killed = False
        self._return_code = return_code

    def kill(self) -> None:
        self.killed = True
        self._return_code = -9

    async def wait(self) -> int:
        self.returncode = self._return_code
        return self._return_code


def _patch_subprocess(
    monkeypatch: pytest.MonkeyPatch, process: FakeProcess, captured: dict[str, Any] | None = None
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        if captured is not None:
            captured["args"] = list(args)
            captured["kwargs"] = kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


async def _collect(stream: AsyncIterator[AgentMessage]) -> list[AgentMessage]:
    return [message async for message in stream]


def _policy(**overrides: Any) -> RetryPolicy:
    values: dict[str, Any] = {"max_retries": 1, "backoff_seconds": 0.0, "timeout_seconds": 5.0}
    values.update(overrides)
    return RetryPolicy(**values)


def test_render_context_hides_private_and_model_keys() -> None:
    rendered = render_context("do it", {"iteration": 2, "model": "m", "_working_directory": "/x"})

    assert rendered.startswith("do it\n\nContext JSON:")
    assert '"iteration": 2' in rendered
    assert "model" not in rendered
    assert "_working_directory" not in rendered
    assert render_context("do it", {"model": "m"}) == "do it"


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"iteration": 1, "model": "gpt-5-codex"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", "sonnet")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert command[command.index("--output-format") + 1] == "stream-json"
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "sonnet"
    assert "--model" not in backend.build_command("system", "x")


def test_claude_parse_assistant_and_tool_events() -> None:
    messages = ClaudeCodeBackend.parse_event(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Looking at the task."},
                    {"type": "tool_use", "name": "mcp-server__task_done", "input": {"reason": "ok"}},
                ]
            },
        }
    )

    assert [message.message_type for message in messages] == ["text", "tool_use"]
    assert messages[1].metadata.tool_name == "mcp-server__task_done"
    assert messages[1].metadata.tool_input_raw == {"reason": "ok"}
    assert messages[1].metadata.tool_input == '{"reason": "ok"}'

    results = ClaudeCodeBackend.parse_event(
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "content": [{"text": "file saved"}]}]},
        }
    )
    assert results[0].message_type == "tool_result"
    assert results[0].metadata.tool_output == "file saved"


def test_claude_parse_result_events() -> None:
    success = ClaudeCodeBackend.parse_event(
        {"type": "result", "result": "All done", "total_cost_usd": 0.12, "duration_ms": 1500}
    )[0]
    failure = ClaudeCodeBackend.parse_event({"type": "result", "is_error": True, "result": "bad"})[0]

    assert success.message_type == "result"
    assert success.metadata.cost == 0.12
    assert success.metadata.elapsed == 1.5
    assert failure.message_type == "error"
    assert ClaudeCodeBackend.parse_event({"type": "system", "subtype": "init"}) == []


def test_claude_execute_streams_partial_json_and_plain_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text",\n',
            b'"text":"hello"}]}}\n',
            b"plain progress line\n",
            b'{"type":"result","result":"bye"}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, captured)
    backend = ClaudeCodeBackend(working_directory=Path("/work"))

    messages = asyncio.run(_collect(backend.execute("system", "user", {"model": "opus"})))

    assert [(message.message_type, message.content) for message in messages] == [
        ("text", "hello"),
        ("text", "plain progress line"),
        ("result", "bye"),
    ]
    assert captured["args"][captured["args"].index("--model") + 1] == "opus"
    assert captured["kwargs"]["cwd"] == "/work"


def test_claude_execute_raises_on_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_subprocess(monkeypatch, FakeProcess([], return_code=2, stderr=b"auth failed"))

    with pytest.raises(BackendExecutionError, match="auth failed") as exc_info:
        asyncio.run(_collect(ClaudeCodeBackend().execute("system", "user", {})))

    assert exc_info.value.exit_code == 2
    assert exc_info.value.backend == "claude"


def test_codex_parse_items() -> None:
    backend = CodexBackend()

    command = backend.parse_event(
        {
            "type": "item.completed",
            "item": {
                "type": "command_execution",
                "command": "pytest -q",
                "aggregated_output": "3 passed",
                "status": "completed",
            },
        }
    )
    tool = backend.parse_event(
        {
            "type": "item.completed",
            "item": {"type": "mcp_tool_call", "server": "dialogue", "tool": "task_done", "arguments": {}},
        }
    )
    text = backend.parse_event(
        {"type": "item.completed", "item": {"type": "agent_message", "text": "Implemented."}}
    )
    failed = backend.parse_event({"type": "turn.failed", "error": {"message": "quota"}})

    assert [message.message_type for message in command] == ["tool_use", "tool_result"]
    assert command[1].metadata.tool_output == "3 passed"
    assert tool[0].metadata.tool_name == "dialogue__task_done"
    assert text[0].content == "Implemented."
    assert failed[0].message_type == "error"
    assert failed[0].content == "quota"
    assert backend.parse_event({"type": "turn.started"}) == []


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    process = FakeProcess(
        [
            b'{"type":"response.output_text.delta","content":"hello"}\n',
            b"noise-before-json\n",
            b'{"type":"item.completed","item":{"type":"agent_message","text":"world"}}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process)
    backend = CodexBackend(event_hook=events.append)

    messages = asyncio.run(_collect(backend.execute("system", "user", {})))

    assert [message.content for message in messages] == ["hello", "world"]
    event_names = [event.get("event") for event in events]
    assert "codex_cli_start" in event_names
    assert "codex_json_event" in event_names
    assert "codex_json_parse_fallback" in event_names
    assert "codex_cli_exit" in event_names


def test_codex_backend_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_subprocess(monkeypatch, FakeProcess([], return_code=1, stderr=b"not logged in"))

    with pytest.raises(BackendExecutionError, match="not logged in"):
        asyncio.run(_collect(CodexBackend().execute("system", "user", {})))


@pytest.mark.parametrize(
    ("backend", "first_line", "expected"),
    [
        (ClaudeCodeBackend(), b'{"type":"result","result":"first"}\n', "first"),
        (
            CodexBackend(),
            b'{"type":"item.completed","item":{"type":"agent_message","text":"first"}}\n',
            "first",
        ),
    ],
)
def test_closing_stream_early_kills_the_process(
    monkeypatch: pytest.MonkeyPatch, backend: AgentBackend, first_line: bytes, expected: str
) -> None:
    process = FakeProcess([first_line], hang=True)
    _patch_subprocess(monkeypatch, process)

    async def read_first_then_close() -> AgentMessage:
        stream = backend.execute("system", "user", {})
        first = await anext(stream)
        await stream.aclose()
        return first

    first = asyncio.run(read_first_then_close())

    assert first.content == expected
    assert process.killed is True
    assert process.returncode == -9


def test_finished_process_is_not_killed(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([b'{"type":"result","result":"done"}\n'])
    _patch_subprocess(monkeypatch, process)

    asyncio.run(_collect(ClaudeCodeBackend().execute("system", "user", {})))

    assert process.killed is False
    assert process.returncode == 0


def test_resilient_backend_kills_idle_process_before_failover(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess([], hang=True)
    _patch_subprocess(monkeypatch, process)
    seen_at_failover: list[bool] = []

    class CheckingFallback(AgentBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
        ) -> AsyncIterator[AgentMessage]:
            _ = system_prompt, user_prompt, context
            seen_at_failover.append(process.killed)
            yield AgentMessage(content="ok")

    backend = ResilientBackend(
        "claude",
        ClaudeCodeBackend(),
        "fallback",
        CheckingFallback(),
        _policy(max_retries=0, timeout_seconds=0.05),
    )

    messages = asyncio.run(_collect(backend.execute("system", "user", context={})))

    assert [message.content for message in messages] == ["ok"]
    assert seen_at_failover == [True]
    assert process.returncode == -9


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    fallback = SuccessBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=_policy(),
        event_hook=events.append,
    )

    messages = asyncio.run(_collect(backend.execute("system", "user", context={})))

    assert [message.content for message in messages] == ["ok"]
    assert primary.calls == 2
    assert fallback.calls == 1
    event_names = [event["event"] for event in events]
    assert "backend_failover_start" in event_names
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = SuccessBackend()
    backend = ResilientBackend("primary", primary, "fallback", fallback, _policy(max_retries=3))

    asyncio.run(_collect(backend.execute("system", "user", context={})))

    assert primary.calls == 1
    assert fallback.calls == 1


def test_resilient_backend_never_retries_after_first_message() -> None:
    primary = FailAfterFirstMessageBackend()
    fallback = SuccessBackend()
    backend = ResilientBackend("primary", primary, "fallback", fallback, _policy(max_retries=2))
    delivered: list[AgentMessage] = []

    async def consume() -> None:
        async for message in backend.execute("system", "user", context={}):
            delivered.append(message)

    with pytest.raises(BackendExecutionError, match="stream broke"):
        asyncio.run(consume())

    assert [message.content for message in delivered] == ["partial"]
    assert primary.calls == 1
    assert fallback.calls == 0


def test_resilient_backend_idle_timeout_fails_over() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        "primary",
        SlowBackend(),
        "fallback",
        SuccessBackend(),
        _policy(max_retries=0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    messages = asyncio.run(_collect(backend.execute("system", "user", context={})))

    assert [message.content for message in messages] == ["ok"]
    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert "no message" in failures[0]["error"]


def test_resilient_backend_reports_all_failures() -> None:
    backend = ResilientBackend(
        "primary", AlwaysFailBackend(), "fallback", AlwaysFailBackend(), _policy()
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed") as exc_info:
        asyncio.run(_collect(backend.execute("system", "user", context={})))

    assert exc_info.value.retriable is False
