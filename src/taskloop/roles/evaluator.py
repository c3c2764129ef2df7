from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from taskloop.backends.base import AgentBackend
from taskloop.config import EvaluatorConfig
from taskloop.messages import (
    TASK_COMPLETION,
    TEXTUAL_MESSAGE_TYPES,
    AgentMessage,
    extract_text,
    is_task_done_tool,
)
from taskloop.roles.base import RoleAgent

LOGGER = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```json\s*\n(.*?)\n?```", re.DOTALL)
SIGNAL_PATTERNS = [
    re.compile(r"expected results?", re.IGNORECASE),
    re.compile(r"verification", re.IGNORECASE),
    re.compile(r"\btest(s|ing)?\b", re.IGNORECASE),
    re.compile(r"\bbuild\b", re.IGNORECASE),
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bfailed\b", re.IGNORECASE),
    re.compile(r"\bsuccess\b", re.IGNORECASE),
    re.compile(r"\bcreated\b", re.IGNORECASE),
    re.compile(r"\bmodified\b", re.IGNORECASE),
    re.compile(r"\bedit(ed|ing)?\b", re.IGNORECASE),
    re.compile(r"\bwrite\b", re.IGNORECASE),
    re.compile(r"\bsummary\b", re.IGNORECASE),
]


@dataclass(slots=True)
class EvaluationResult:
    is_complete: bool
    reason: str
    missing_items: list[str] = field(default_factory=list)
    confidence: float = 0.5


def format_instruction(result: EvaluationResult) -> str:
    """Turn an incomplete verdict into the Worker's instruction."""
    if not result.missing_items:
        return result.reason
    lines = ["Based on the evaluation, the following items need to be addressed:", ""]
    lines.extend(f"{index}. {item}" for index, item in enumerate(result.missing_items, start=1))
    lines.extend(["", "Please complete these items to fulfill the task requirements."])
    return "\n".join(lines)


def _coerce_result(payload: dict) -> EvaluationResult:
    raw_items = payload.get("missing_items")
    missing_items = (
        [str(item) for item in raw_items if str(item).strip()]
        if isinstance(raw_items, list)
        else []
    )
    raw_confidence = payload.get("confidence")
    confidence = (
        float(raw_confidence)
        if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool)
        else 0.5
    )
    reason = payload.get("reason")
    return EvaluationResult(
        is_complete=payload.get("is_complete") is True,
        reason=str(reason) if reason else "No reason provided",
        missing_items=missing_items,
        confidence=min(1.0, max(0.0, confidence)),
    )


class EvaluatorAgent(RoleAgent):
    role = "evaluator"
    prompt_file = "evaluator.md"
    fallback_prompt = """
You are the Evaluator. You judge whether a task is complete.
You never perform the work yourself and never write instructions for users.
Call the task_done tool only when every expected result is satisfied.
Otherwise answer with a JSON verdict listing the missing items.
""".strip()

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        limits: EvaluatorConfig | None = None,
    ) -> None:
        super().__init__(backend, model=model)
        self.limits = limits or EvaluatorConfig()

    async def evaluate(
        self,
        task_spec: str,
        iteration: int,
        previous_worker_output: str | None = None,
    ) -> AsyncIterator[AgentMessage]:
        prompt = self.build_evaluation_prompt(
            task_spec, iteration, previous_worker_output, limits=self.limits
        )
        async for message in self._stream(prompt, {"phase": "evaluation", "iteration": iteration}):
            yield message

    @staticmethod
    def prepare_worker_output_for_evaluation(
        worker_output: str, limits: EvaluatorConfig | None = None
    ) -> str:
        limits = limits or EvaluatorConfig()
        if len(worker_output) <= limits.max_worker_output_chars:
            return f"```\n{worker_output}\n```"

        signal_lines: list[str] = []
        seen: set[str] = set()
        for raw_line in worker_output.splitlines():
            line = raw_line.strip()
            if not line or line in seen:
                continue
            if not any(pattern.search(line) for pattern in SIGNAL_PATTERNS):
                continue
            seen.add(line)
            signal_lines.append(line)
            if len(signal_lines) >= limits.max_signal_lines:
                break

        tail_chars = limits.worker_output_tail_chars
        tail = worker_output[-tail_chars:] if tail_chars > 0 else ""
        signal_block = (
            "\n".join(f"{index}. {line}" for index, line in enumerate(signal_lines, start=1))
            if signal_lines
            else "(No high-signal lines extracted)"
        )
        return "\n".join(
            [
                "> Worker output was truncated for evaluation to control token usage.",
                f"> Original length: {len(worker_output)} chars",
                "",
                "### Extracted Signals",
                signal_block,
                "",
                f"### Tail Window (last {tail_chars} chars)",
                "```",
                tail,
                "```",
            ]
        )

    @staticmethod
    def build_evaluation_prompt(
        task_spec: str,
        iteration: int,
        worker_output: str | None = None,
        *,
        limits: EvaluatorConfig | None = None,
    ) -> str:
        parts = [task_spec.rstrip(), "", "---", "", f"## Current Iteration: {iteration}", ""]
        has_worker_output = bool(worker_output and worker_output.strip())
        if has_worker_output:
            parts.extend(
                [
                    f"## Worker's Previous Output (Iteration {iteration - 1})",
                    "",
                    EvaluatorAgent.prepare_worker_output_for_evaluation(
                        worker_output or "", limits
                    ),
                    "",
                    "---",
                    "",
                    "### Your Evaluation Task",
                    "",
                    "Check whether the Worker satisfied ALL expected results of the task:",
                    "- files were actually modified when the task requires code changes",
                    "- builds and tests succeeded when the task requires them",
                    "- every expected result is present, not only explained or planned",
                    "",
                    "If the task is complete, call the task_done tool and stop.",
                    "If it is not complete, answer with:",
                    "",
                    "```json",
                    "{",
                    '  "is_complete": false,',
                    '  "reason": "Explanation of your decision",',
                    '  "missing_items": ["item1", "item2"],',
                    '  "confidence": 0.8',
                    "}",
                    "```",
                ]
            )
        else:
            parts.extend(
                [
                    "## Worker's Previous Output",
                    "",
                    "*No Worker output yet - this is the first iteration.*",
                    "",
                    "---",
                    "",
                    "### Your Evaluation Task",
                    "",
                    "The Worker has not executed yet, so the task cannot be complete.",
                    "Do not call task_done. Answer with:",
                    "",
                    "```json",
                    "{",
                    '  "is_complete": false,',
                    '  "reason": "This is the first iteration. Worker has not executed yet.",',
                    '  "missing_items": ["<the concrete work the task requires>"],',
                    '  "confidence": 1.0',
                    "}",
                    "```",
                ]
            )
        return "\n".join(parts) + "\n"

    @staticmethod
    def parse_evaluation_result(
        messages: Iterable[AgentMessage], iteration: int
    ) -> EvaluationResult:
        texts: list[str] = []
        for message in messages:
            if is_task_done_tool(message):
                return EvaluationResult(
                    is_complete=True,
                    reason="Evaluator called task_done",
                    confidence=1.0,
                )
            if message.message_type == TASK_COMPLETION:
                return EvaluationResult(
                    is_complete=True,
                    reason=extract_text(message) or "Evaluator signalled completion",
                    confidence=1.0,
                )
            if message.message_type in TEXTUAL_MESSAGE_TYPES:
                texts.append(extract_text(message))

        for match in JSON_BLOCK_PATTERN.finditer("\n".join(texts)):
            try:
                payload = json.loads(match.group(1))
            except json.JSONDecodeError as exc:
                LOGGER.warning("Failed to parse evaluation JSON: %s", exc)
                continue
            if isinstance(payload, dict):
                return _coerce_result(payload)

        if iteration == 1:
            return EvaluationResult(
                is_complete=False,
                reason="First iteration - Worker has not executed yet",
                missing_items=["Worker execution"],
                confidence=1.0,
            )
        return EvaluationResult(
            is_complete=False,
            reason="Unable to determine completion status",
            missing_items=["Unknown"],
            confidence=0.0,
        )

    @staticmethod
    def format_evaluation_markdown(result: EvaluationResult, iteration: int) -> str:
        timestamp = datetime.now(UTC).replace(microsecond=0).isoformat()
        missing = (
            "\n".join(f"- [ ] {item}" for item in result.missing_items)
            if result.missing_items
            else "(None - task is complete)"
        )
        recommendation = (
            "Task is complete. No further action needed."
            if result.is_complete
            else "Task requires additional work. See missing items above."
        )
        return "\n".join(
            [
                f"# Evaluation: Iteration {iteration}",
                "",
                f"**Timestamp**: {timestamp}",
                f"**Iteration**: {iteration}",
                "",
                "## Completion Status",
                "",
                f"**Is Complete**: {str(result.is_complete).lower()}",
                f"**Confidence**: {result.confidence:.2f}",
                "",
                "## Assessment",
                "",
                result.reason,
                "",
                "## Missing Items",
                "",
                missing,
                "",
                "## Recommendations",
                "",
                recommendation,
                "",
            ]
        )
