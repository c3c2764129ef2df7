from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from taskloop.messages import AgentMessage
from taskloop.roles.base import RoleAgent

PROMPT_ONLY_KEYS = {"task_spec", "previous_worker_output"}


class WorkerAgent(RoleAgent):
    role = "worker"
    prompt_file = "worker.md"
    fallback_prompt = """
You are the Worker. You carry out the task described in the task specification.
Address every item the Evaluator reported as missing, change files when the task
requires it, run builds and tests when asked, and finish with a short summary of
what you did and what is still open.
""".strip()
    previous_output_chars = 4000

    async def execute(
        self, instruction: str, context: dict[str, Any]
    ) -> AsyncIterator[AgentMessage]:
        prompt = self.build_worker_prompt(instruction, context)
        run_context = {
            key: value for key, value in context.items() if key not in PROMPT_ONLY_KEYS
        }
        run_context["phase"] = "execution"
        async for message in self._stream(prompt, run_context):
            yield message

    @classmethod
    def build_worker_prompt(cls, instruction: str, context: dict[str, Any]) -> str:
        parts = ["## Instruction", "", instruction.strip()]
        task_spec = context.get("task_spec")
        if isinstance(task_spec, str) and task_spec.strip():
            parts.extend(["", "## Task Specification", "", task_spec.strip()])
        iteration = context.get("iteration")
        if iteration is not None:
            parts.extend(["", f"## Iteration: {iteration}"])
        previous = context.get("previous_worker_output")
        if isinstance(previous, str) and previous.strip():
            tail = previous.strip()[-cls.previous_output_chars :]
            parts.extend(["", "## Your Previous Output (tail)", "", "```", tail, "```"])
        return "\n".join(parts) + "\n"
