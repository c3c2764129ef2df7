from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

UNSAFE_TASK_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
ITERATION_DIR_PATTERN = re.compile(r"^iter-(\d+)$")

TASK_SPEC_FILE = "task.md"
EVALUATION_FILE = "evaluation.md"
EXECUTION_FILE = "execution.md"
PLAN_FILE = "plan.md"
FINAL_SUMMARY_FILE = "final-summary.md"
FINAL_RESULT_FILE = "final_result.md"


class TaskStoreError(RuntimeError):
    """Raised when a task file cannot be read or written."""


@dataclass(slots=True)
class TaskStats:
    total_iterations: int
    has_final_summary: bool


@dataclass(slots=True)
class TaskMetadata:
    message_id: str
    chat_id: str
    user_request: str
    user_id: str | None = None


def sanitize_task_id(task_id: str) -> str:
    return UNSAFE_TASK_ID_CHARS.sub("_", task_id)


class TaskFileStore:
    """Owns the on-disk layout of one workspace's task artifacts.

    Layout::

        tasks/<sanitized-task-id>/
          task.md
          iterations/
            iter-<N>/evaluation.md
            iter-<N>/execution.md
            iter-<N>/plan.md
            final-summary.md
    """

    def __init__(self, workspace_dir: Path, *, subdirectory: str | None = None) -> None:
        self.workspace_dir = workspace_dir.resolve()
        base = self.workspace_dir / "tasks"
        self.tasks_base_dir = base / subdirectory if subdirectory else base

    def task_dir(self, task_id: str) -> Path:
        return self.tasks_base_dir / sanitize_task_id(task_id)

    def task_spec_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / TASK_SPEC_FILE

    def iterations_dir(self, task_id: str) -> Path:
        return self.task_dir(task_id) / "iterations"

    def iteration_dir(self, task_id: str, iteration: int) -> Path:
        return self.iterations_dir(task_id) / f"iter-{iteration}"

    def evaluation_path(self, task_id: str, iteration: int) -> Path:
        return self.iteration_dir(task_id, iteration) / EVALUATION_FILE

    def execution_path(self, task_id: str, iteration: int) -> Path:
        return self.iteration_dir(task_id, iteration) / EXECUTION_FILE

    def plan_path(self, task_id: str, iteration: int) -> Path:
        return self.iteration_dir(task_id, iteration) / PLAN_FILE

    def final_summary_path(self, task_id: str) -> Path:
        return self.iterations_dir(task_id) / FINAL_SUMMARY_FILE

    def final_result_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / FINAL_RESULT_FILE

    @staticmethod
    def _mkdir(path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TaskStoreError(f"Failed to create directory {path}: {exc}") from exc

    def _write(self, path: Path, content: str) -> None:
        self._mkdir(path.parent)
        try:
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise TaskStoreError(f"Failed to write {path}: {exc}") from exc
        LOGGER.debug("Wrote %s (%d chars)", path, len(content))

    @staticmethod
    def _read(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TaskStoreError(f"Failed to read {path}: {exc}") from exc

    def initialize_task(self, task_id: str) -> Path:
        self._mkdir(self.iterations_dir(task_id))
        LOGGER.debug("Task directory initialized for %s", task_id)
        return self.task_dir(task_id)

    def write_task_spec(self, task_id: str, content: str) -> Path:
        path = self.task_spec_path(task_id)
        self._write(path, content)
        return path

    def read_task_spec(self, task_id: str) -> str:
        return self._read(self.task_spec_path(task_id))

    def read_spec_file(self, spec_path: Path) -> str:
        return self._read(spec_path)

    def create_iteration(self, task_id: str, iteration: int) -> Path:
        path = self.iteration_dir(task_id, iteration)
        self._mkdir(path)
        return path

    def write_evaluation(self, task_id: str, iteration: int, content: str) -> Path:
        path = self.evaluation_path(task_id, iteration)
        self._write(path, content)
        return path

    def read_evaluation(self, task_id: str, iteration: int) -> str:
        return self._read(self.evaluation_path(task_id, iteration))

    def write_execution(self, task_id: str, iteration: int, content: str) -> Path:
        path = self.execution_path(task_id, iteration)
        self._write(path, content)
        return path

    def read_execution(self, task_id: str, iteration: int) -> str:
        return self._read(self.execution_path(task_id, iteration))

    def write_plan(self, task_id: str, iteration: int, content: str) -> Path:
        path = self.plan_path(task_id, iteration)
        self._write(path, content)
        return path

    def read_plan(self, task_id: str, iteration: int) -> str:
        return self._read(self.plan_path(task_id, iteration))

    def write_final_summary(self, task_id: str, content: str) -> Path:
        path = self.final_summary_path(task_id)
        self._write(path, content)
        LOGGER.info("Final summary written to %s", path)
        return path

    def read_final_summary(self, task_id: str) -> str:
        return self._read(self.final_summary_path(task_id))

    def task_exists(self, task_id: str) -> bool:
        return self.task_dir(task_id).is_dir()

    def has_task_spec(self, task_id: str) -> bool:
        return self.task_spec_path(task_id).is_file()

    def has_final_result(self, task_id: str) -> bool:
        return self.final_result_path(task_id).is_file()

    def has_final_summary(self, task_id: str) -> bool:
        return self.final_summary_path(task_id).is_file()

    def list_iterations(self, task_id: str) -> list[int]:
        iterations_dir = self.iterations_dir(task_id)
        if not iterations_dir.is_dir():
            return []
        iterations: list[int] = []
        for entry in iterations_dir.iterdir():
            if not entry.is_dir():
                continue
            match = ITERATION_DIR_PATTERN.match(entry.name)
            if match:
                iterations.append(int(match.group(1)))
        return sorted(iterations)

    def task_stats(self, task_id: str) -> TaskStats:
        return TaskStats(
            total_iterations=len(self.list_iterations(task_id)),
            has_final_summary=self.has_final_summary(task_id),
        )

    def cleanup_task(self, task_id: str) -> bool:
        task_dir = self.task_dir(task_id)
        try:
            shutil.rmtree(task_dir)
        except FileNotFoundError:
            return False
        except OSError:
            LOGGER.exception("Failed to clean up task directory %s", task_dir)
            return False
        LOGGER.info("Task directory %s removed", task_dir)
        return True


def _metadata_field(content: str, label: str) -> str | None:
    match = re.search(rf"\*{{0,2}}{label}\*{{0,2}}:\s*([^\n]+)", content, re.IGNORECASE)
    if not match:
        return None
    return match.group(1).strip().strip("*").strip() or None


def parse_task_spec(content: str) -> TaskMetadata:
    section = re.search(
        r"^##\s*Original\s*Request\s*\n(.*?)(?=^##\s|\Z)",
        content,
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    user_request = ""
    if section:
        body = section.group(1)
        fenced = re.search(r"(```|~~~)[^\n]*\n(.*?)\1", body, re.DOTALL)
        user_request = (fenced.group(2) if fenced else body).strip()

    return TaskMetadata(
        message_id=_metadata_field(content, "Task ID") or "",
        chat_id=_metadata_field(content, "Chat ID") or "",
        user_id=_metadata_field(content, "User ID"),
        user_request=user_request,
    )


def render_task_spec(
    task_id: str,
    user_request: str,
    *,
    chat_id: str = "",
    user_id: str | None = None,
    created_at: str | None = None,
) -> str:
    created = created_at or datetime.now(UTC).replace(microsecond=0).isoformat()
    lines = [
        f"# Task: {task_id}",
        "",
        f"**Task ID**: {task_id}",
        f"**Chat ID**: {chat_id or 'cli'}",
    ]
    if user_id:
        lines.append(f"**User ID**: {user_id}")
    lines.extend(
        [
            f"**Created**: {created}",
            "",
            "## Original Request",
            "",
            "```",
            user_request.strip(),
            "```",
            "",
        ]
    )
    return "\n".join(lines)
