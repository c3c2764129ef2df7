from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from taskloop.messages import (
    TASK_COMPLETION,
    TEXTUAL_MESSAGE_TYPES,
    AgentMessage,
    extract_text,
    is_completion_signal,
)
from taskloop.roles.evaluator import EvaluationResult, EvaluatorAgent, format_instruction
from taskloop.state import TaskFileStore

LOGGER = logging.getLogger(__name__)


class Evaluator(Protocol):
    def evaluate(
        self, task_spec: str, iteration: int, previous_worker_output: str | None = None
    ) -> AsyncIterator[AgentMessage]: ...

    def cleanup(self) -> None: ...


class Worker(Protocol):
    def execute(self, instruction: str, context: dict[str, Any]) -> AsyncIterator[AgentMessage]: ...

    def cleanup(self) -> None: ...


EvaluatorFactory = Callable[[], Evaluator]
WorkerFactory = Callable[[], Worker]


class IterationRunner:
    """Runs one Evaluator pass and, unless the task is done, one Worker pass.

    ``run_iteration_streaming`` is single-pass: a runner is built for exactly
    one iteration and discarded afterwards.
    """

    def __init__(
        self,
        evaluator_factory: EvaluatorFactory,
        worker_factory: WorkerFactory,
        task_spec: str,
        iteration: int,
        task_id: str,
        previous_worker_output: str | None = None,
        chat_id: str | None = None,
        run_id: str | None = None,
        store: TaskFileStore | None = None,
    ) -> None:
        self.evaluator_factory = evaluator_factory
        self.worker_factory = worker_factory
        self.task_spec = task_spec
        self.iteration = iteration
        self.task_id = task_id
        self.previous_worker_output = previous_worker_output
        self.chat_id = chat_id
        self.run_id = run_id
        self.store = store
        self.task_done = False
        self.worker_invoked = False
        self.evaluation: EvaluationResult | None = None
        self._worker_chunks: list[str] = []
        self._started = False

    def get_worker_output(self) -> str:
        return "\n".join(self._worker_chunks)

    def _worker_context(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "iteration": self.iteration,
            "chat_id": self.chat_id,
            "run_id": self.run_id,
            "task_spec": self.task_spec,
            "previous_worker_output": self.previous_worker_output,
        }

    async def run_iteration_streaming(self) -> AsyncIterator[AgentMessage]:
        if self._started:
            raise RuntimeError(f"Iteration {self.iteration} was already streamed.")
        self._started = True
        LOGGER.info("Iteration %d started for task %s", self.iteration, self.task_id)

        evaluator_messages: list[AgentMessage] = []
        evaluator = self.evaluator_factory()
        try:
            async for message in evaluator.evaluate(
                self.task_spec, self.iteration, self.previous_worker_output
            ):
                evaluator_messages.append(message)
                if is_completion_signal(message):
                    self.task_done = True
                yield message
        finally:
            evaluator.cleanup()

        self.evaluation = EvaluatorAgent.parse_evaluation_result(evaluator_messages, self.iteration)
        self._record_evaluation(self.evaluation)

        if self.task_done:
            LOGGER.info("Evaluator signalled completion in iteration %d", self.iteration)
            return
        if self.evaluation.is_complete:
            self.task_done = True
            LOGGER.info("Evaluator verdict is complete in iteration %d", self.iteration)
            yield AgentMessage(
                content=f"Task completed: {self.evaluation.reason}",
                message_type=TASK_COMPLETION,
            )
            return

        instruction = format_instruction(self.evaluation)
        LOGGER.debug(
            "Worker instruction for iteration %d: %d missing items",
            self.iteration,
            len(self.evaluation.missing_items),
        )
        worker = self.worker_factory()
        self.worker_invoked = True
        try:
            async for message in worker.execute(instruction, self._worker_context()):
                if message.message_type in TEXTUAL_MESSAGE_TYPES:
                    text = extract_text(message)
                    if text:
                        self._worker_chunks.append(text)
                yield message
        finally:
            worker.cleanup()

        self._record_execution(instruction)
        LOGGER.info(
            "Iteration %d finished; worker produced %d chars",
            self.iteration,
            len(self.get_worker_output()),
        )

    def _record_evaluation(self, result: EvaluationResult) -> None:
        if self.store is None:
            return
        try:
            self.store.write_evaluation(
                self.task_id,
                self.iteration,
                EvaluatorAgent.format_evaluation_markdown(result, self.iteration),
            )
        except Exception:
            LOGGER.exception("Failed to record evaluation for iteration %d", self.iteration)

    def _record_execution(self, instruction: str) -> None:
        if self.store is None:
            return
        output = self.get_worker_output()
        content = "\n".join(
            [
                f"# Execution: Iteration {self.iteration}",
                "",
                f"**Timestamp**: {datetime.now(UTC).replace(microsecond=0).isoformat()}",
                f"**Iteration**: {self.iteration}",
                "",
                "## Instruction",
                "",
                instruction,
                "",
                "## Worker Output",
                "",
                output if output else "(no textual output)",
                "",
            ]
        )
        try:
            self.store.write_execution(self.task_id, self.iteration, content)
        except Exception:
            LOGGER.exception("Failed to record execution for iteration %d", self.iteration)
