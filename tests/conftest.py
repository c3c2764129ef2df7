from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from taskloop.messages import AgentMessage, MessageMetadata


def verdict(missing_items: list[str], *, is_complete: bool = False, reason: str = "incomplete") -> AgentMessage:
    payload = (
        '{"is_complete": %s, "reason": "%s", "missing_items": [%s], "confidence": 0.9}'
        % (
            "true" if is_complete else "false",
            reason,
            ", ".join(f'"{item}"' for item in missing_items),
        )
    )
    return AgentMessage(content=f"```json\n{payload}\n```")


def task_done_call() -> AgentMessage:
    return AgentMessage(
        content="task_done",
        message_type="tool_use",
        metadata=MessageMetadata(tool_name="mcp-dialogue__task_done", tool_input="{}"),
    )


class FakeEvaluator:
    def __init__(self, harness: "DialogueHarness") -> None:
        self.harness = harness

    async def evaluate(
        self, task_spec: str, iteration: int, previous_worker_output: str | None = None
    ) -> AsyncIterator[AgentMessage]:
        self.harness.evaluate_calls.append((iteration, previous_worker_output))
        self.harness.events.append(f"evaluate:{iteration}")
        for index, message in enumerate(self.harness.evaluator_messages(iteration)):
            if index == 1 and self.harness.evaluator_error is not None:
                raise self.harness.evaluator_error
            yield message

    def cleanup(self) -> None:
        self.harness.evaluator_cleanups += 1


class FakeWorker:
    def __init__(self, harness: "DialogueHarness") -> None:
        self.harness = harness

    async def execute(self, instruction: str, context: dict[str, Any]) -> AsyncIterator[AgentMessage]:
        iteration = context["iteration"]
        self.harness.worker_calls.append((iteration, instruction, dict(context)))
        self.harness.events.append(f"execute:{iteration}")
        for message in self.harness.worker_messages(iteration):
            yield message
        if self.harness.worker_error is not None:
            raise self.harness.worker_error

    def cleanup(self) -> None:
        self.harness.worker_cleanups += 1


class DialogueHarness:
    """Scripted Evaluator/Worker pair recording every call it receives."""

    def __init__(
        self,
        *,
        complete_on: int | None = None,
        worker_text: Callable[[int], list[str]] | None = None,
        worker_error: Exception | None = None,
        evaluator_error: Exception | None = None,
    ) -> None:
        self.complete_on = complete_on
        self.worker_text = worker_text or (lambda iteration: [f"worker output {iteration}"])
        self.worker_error = worker_error
        self.evaluator_error = evaluator_error
        self.evaluate_calls: list[tuple[int, str | None]] = []
        self.worker_calls: list[tuple[int, str, dict[str, Any]]] = []
        self.events: list[str] = []
        self.evaluator_cleanups = 0
        self.worker_cleanups = 0

    def evaluator_messages(self, iteration: int) -> list[AgentMessage]:
        if iteration == self.complete_on:
            return [AgentMessage(content=f"checking iteration {iteration}"), task_done_call()]
        return [
            AgentMessage(content=f"checking iteration {iteration}"),
            verdict([f"item {iteration}a", f"item {iteration}b"]),
        ]

    def worker_messages(self, iteration: int) -> list[AgentMessage]:
        messages = [
            AgentMessage(
                content="Edit src/app.py",
                message_type="tool_use",
                metadata=MessageMetadata(tool_name="Edit"),
            )
        ]
        messages.extend(AgentMessage(content=text) for text in self.worker_text(iteration))
        return messages

    def new_evaluator(self) -> FakeEvaluator:
        return FakeEvaluator(self)

    def new_worker(self) -> FakeWorker:
        return FakeWorker(self)


@pytest.fixture
def harness_factory() -> type[DialogueHarness]:
    return DialogueHarness
