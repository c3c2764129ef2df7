from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from taskloop.iteration import EvaluatorFactory, IterationRunner, WorkerFactory
from taskloop.messages import AgentMessage, is_completion_signal
from taskloop.plan_extractor import PlanExtractor, TaskPlanRecord
from taskloop.state import TaskFileStore
from taskloop.tracker import MessageTracker

LOGGER = logging.getLogger(__name__)

PlanCallback = Callable[[TaskPlanRecord], Awaitable[None]]


@dataclass(slots=True)
class IterationSummary:
    iteration: int
    worker_invoked: bool
    worker_output_chars: int
    task_done: bool
    reason: str = ""


class DialogueOrchestrator:
    """Drives the Evaluator/Worker loop for one task at a time.

    Every message produced by an iteration is re-yielded as soon as it
    arrives. The task plan is attempted once during iteration 1 and the final
    summary is written only when the loop ends on a completion signal.
    """

    def __init__(
        self,
        evaluator_factory: EvaluatorFactory,
        worker_factory: WorkerFactory,
        store: TaskFileStore,
        *,
        max_iterations: int,
        plan_extractor: PlanExtractor | None = None,
        on_task_plan_generated: PlanCallback | None = None,
        plan_min_chars: int = 200,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.evaluator_factory = evaluator_factory
        self.worker_factory = worker_factory
        self.store = store
        self.max_iterations = max_iterations
        self.plan_extractor = plan_extractor or PlanExtractor()
        self.on_task_plan_generated = on_task_plan_generated
        self.plan_min_chars = max(0, plan_min_chars)
        self._message_tracker = MessageTracker()
        self._task_id: str | None = None
        self._original_request: str | None = None
        self._chat_id: str | None = None
        self._iteration_count = 0
        self._previous_worker_output: str | None = None
        self._task_plan_attempted = False
        self._task_plan_saved = False
        self._last_run_completed = False

    @property
    def task_id(self) -> str | None:
        return self._task_id

    @property
    def original_request(self) -> str | None:
        return self._original_request

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def iteration_count(self) -> int:
        return self._iteration_count

    @property
    def previous_worker_output(self) -> str | None:
        return self._previous_worker_output

    @property
    def task_plan_saved(self) -> bool:
        return self._task_plan_saved

    @property
    def message_tracker(self) -> MessageTracker:
        return self._message_tracker

    @property
    def last_run_completed(self) -> bool:
        return self._last_run_completed

    def _reset_run_state(self) -> None:
        self._task_id = None
        self._original_request = None
        self._chat_id = None
        self._iteration_count = 0
        self._previous_worker_output = None
        self._task_plan_attempted = False
        self._task_plan_saved = False
        self._last_run_completed = False

    async def run_dialogue(
        self,
        spec_path: Path,
        original_request: str,
        chat_id: str | None = None,
        run_id: str | None = None,
    ) -> AsyncIterator[AgentMessage]:
        spec_path = Path(spec_path)
        self._reset_run_state()
        self._message_tracker.reset()
        task_id = spec_path.parent.name
        self._task_id = task_id
        self._original_request = original_request
        self._chat_id = chat_id
        task_spec = self.store.read_spec_file(spec_path)
        LOGGER.info(
            "Dialogue started for task %s (run %s, max %d iterations)",
            task_id,
            run_id or "-",
            self.max_iterations,
        )

        history: list[IterationSummary] = []
        task_done = False
        for iteration in range(1, self.max_iterations + 1):
            self._iteration_count = iteration
            runner = IterationRunner(
                self.evaluator_factory,
                self.worker_factory,
                task_spec,
                iteration,
                task_id,
                previous_worker_output=self._previous_worker_output,
                chat_id=chat_id,
                run_id=run_id,
                store=self.store,
            )
            async for message in runner.run_iteration_streaming():
                if is_completion_signal(message):
                    task_done = True
                yield message
                if (
                    iteration == 1
                    and not self._task_plan_attempted
                    and len(runner.get_worker_output()) >= self.plan_min_chars
                    and runner.get_worker_output().strip()
                ):
                    await self._attempt_task_plan(runner.get_worker_output(), original_request)

            worker_output = runner.get_worker_output()
            if iteration == 1 and not self._task_plan_attempted and worker_output.strip():
                await self._attempt_task_plan(worker_output, original_request)

            self._previous_worker_output = worker_output or None
            task_done = task_done or runner.task_done
            history.append(
                IterationSummary(
                    iteration=iteration,
                    worker_invoked=runner.worker_invoked,
                    worker_output_chars=len(worker_output),
                    task_done=task_done,
                    reason=runner.evaluation.reason if runner.evaluation else "",
                )
            )
            if task_done:
                break

        if task_done:
            self._last_run_completed = True
            LOGGER.info(
                "Task %s completed after %d iterations", task_id, self._iteration_count
            )
            self._write_final_summary(task_id, history, run_id)
        else:
            LOGGER.warning(
                "Task %s reached the maximum of %d iterations without completion",
                task_id,
                self.max_iterations,
            )

    async def _attempt_task_plan(self, worker_output: str, original_request: str) -> None:
        self._task_plan_attempted = True
        if self.on_task_plan_generated is None:
            return
        plan = self.plan_extractor.extract(worker_output, original_request, task_id=self._task_id)
        if plan is None:
            LOGGER.info("No task plan could be extracted for task %s", self._task_id)
            return
        try:
            await self.on_task_plan_generated(plan)
        except Exception:
            LOGGER.exception("Failed to persist task plan for task %s", self._task_id)
            return
        self._task_plan_saved = True
        LOGGER.info("Task plan saved for task %s: %s", self._task_id, plan.title)

    def _render_final_summary(
        self, task_id: str, history: list[IterationSummary], run_id: str | None
    ) -> str:
        completed_at = datetime.now(UTC).replace(microsecond=0).isoformat()
        lines = [
            f"# Final Summary: {task_id}",
            "",
            f"**Task ID**: {task_id}",
            f"**Completed**: {completed_at}",
            f"**Total Iterations**: {self._iteration_count}",
        ]
        if run_id:
            lines.append(f"**Run ID**: {run_id}")
        lines.extend(["", "## Iteration History", ""])
        for entry in history:
            if entry.task_done and not entry.worker_invoked:
                outcome = "Evaluator confirmed completion"
            elif entry.worker_invoked:
                outcome = f"Worker executed ({entry.worker_output_chars} chars of output)"
            else:
                outcome = "No Worker execution"
            line = f"- Iteration {entry.iteration}: {outcome}"
            if entry.reason:
                line += f" - {entry.reason}"
            lines.append(line)
        lines.extend(
            [
                "",
                "## Deliverables",
                "",
                f"- Task specification: {self.store.task_spec_path(task_id)}",
                f"- Iteration records: {self.store.iterations_dir(task_id)}",
            ]
        )
        if self.store.has_final_result(task_id):
            lines.append(f"- Final result: {self.store.final_result_path(task_id)}")
        lines.append("")
        return "\n".join(lines)

    def _write_final_summary(
        self, task_id: str, history: list[IterationSummary], run_id: str | None
    ) -> None:
        try:
            self.store.write_final_summary(
                task_id, self._render_final_summary(task_id, history, run_id)
            )
        except Exception:
            LOGGER.exception("Failed to write final summary for task %s", task_id)

    def cleanup(self) -> None:
        self._reset_run_state()
        self._message_tracker.reset()
