from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from taskloop.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from taskloop.config import BackendName, TaskloopConfig, load_config, save_config
from taskloop.messages import AgentMessage, extract_text
from taskloop.orchestrator import DialogueOrchestrator
from taskloop.plan_extractor import PlanExtractor, PlanGrammar, TaskPlanRecord
from taskloop.roles import EvaluatorAgent, WorkerAgent
from taskloop.state import TaskFileStore, render_task_spec

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG = "taskloop.toml"


@dataclass(slots=True)
class Runtime:
    workspace: Path
    config_path: Path
    config: TaskloopConfig
    store: TaskFileStore


def configure_logging(level: str, fmt: str) -> None:
    logging.basicConfig(format=fmt)
    logging.getLogger().setLevel(level.upper())


def _resolve_path(base: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _build_single_backend(
    backend_name: BackendName, workspace: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=workspace, event_hook=_log_backend_event)
    return ClaudeCodeBackend(working_directory=workspace)


def _log_backend_event(event: dict[str, Any]) -> None:
    LOGGER.debug("backend event: %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_backend(config: TaskloopConfig, workspace: Path) -> AgentBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, workspace),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, workspace),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load_runtime(config_value: str, log_level: str | None = None) -> Runtime:
    cwd = Path.cwd().resolve()
    config_path = _resolve_path(cwd, config_value)
    config = load_config(config_path)
    configure_logging(log_level or config.logging.level, config.logging.format)
    workspace = _resolve_path(cwd, config.storage.workspace_dir)
    store = TaskFileStore(workspace, subdirectory=config.storage.subdirectory or None)
    return Runtime(workspace=workspace, config_path=config_path, config=config, store=store)


def _new_task_id() -> str:
    return f"task-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}"


def _render_message(message: AgentMessage) -> str | None:
    text = extract_text(message).strip()
    if message.message_type in {"text", "result", "task_completion"}:
        return text or None
    if message.message_type == "tool_use":
        tool_name = message.metadata.tool_name or "tool"
        tool_input = message.metadata.tool_input or ""
        return f"[tool] {tool_name} {tool_input}".rstrip()
    if message.message_type == "error":
        return f"[error] {text}" if text else "[error]"
    return None


def _build_orchestrator(runtime: Runtime, task_id: str, max_iterations: int) -> DialogueOrchestrator:
    config = runtime.config
    backend = _build_backend(config, runtime.workspace)

    async def save_plan(plan: TaskPlanRecord) -> None:
        path = runtime.store.write_plan(task_id, 1, plan.to_markdown())
        LOGGER.info("Task plan written to %s", path)

    return DialogueOrchestrator(
        evaluator_factory=lambda: EvaluatorAgent(
            backend,
            model=config.agents.evaluator_model or None,
            limits=config.evaluator,
        ),
        worker_factory=lambda: WorkerAgent(backend, model=config.agents.worker_model or None),
        store=runtime.store,
        max_iterations=max_iterations,
        plan_extractor=PlanExtractor(PlanGrammar.from_config(config.plan)),
        on_task_plan_generated=save_plan,
        plan_min_chars=config.dialogue.plan_min_chars,
    )


async def _drive_dialogue(
    orchestrator: DialogueOrchestrator,
    spec_path: Path,
    request: str,
    chat_id: str,
    run_id: str,
) -> None:
    last_shown: str | None = None
    async for message in orchestrator.run_dialogue(spec_path, request, chat_id, run_id):
        rendered = _render_message(message)
        if rendered is None or rendered == last_shown:
            continue
        click.echo(rendered)
        last_shown = rendered
        orchestrator.message_tracker.record_message_sent()


@click.group()
def cli() -> None:
    """Evaluator/Worker task loop CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    config_path = _resolve_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Max iterations: {config.dialogue.max_iterations}")


@cli.command("run")
@click.argument("request")
@click.option("--task-id", "task_id", default=None)
@click.option("--chat-id", "chat_id", default="cli", show_default=True)
@click.option("--max-iterations", "max_iterations", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option(
    "--log-level",
    "log_level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
)
def run_command(
    request: str,
    task_id: str | None,
    chat_id: str,
    max_iterations: int | None,
    config_value: str,
    log_level: str | None,
) -> None:
    runtime = _load_runtime(config_value, log_level)
    task_id = task_id or _new_task_id()
    run_id = f"run-{secrets.token_hex(4)}"
    iterations = max_iterations or runtime.config.dialogue.max_iterations
    if iterations < 1:
        raise click.ClickException(
            f"dialogue.max_iterations must be at least 1 (got {iterations} in {runtime.config_path})"
        )
    try:
        runtime.store.initialize_task(task_id)
        spec_path = runtime.store.write_task_spec(
            task_id, render_task_spec(task_id, request, chat_id=chat_id)
        )
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    orchestrator = _build_orchestrator(runtime, task_id, iterations)
    try:
        asyncio.run(_drive_dialogue(orchestrator, spec_path, request, chat_id, run_id))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    completed = orchestrator.last_run_completed
    if not orchestrator.message_tracker.has_any_message():
        reason = "completed" if completed else "max iterations reached"
        click.echo(orchestrator.message_tracker.build_warning(reason, task_id), err=True)
    click.echo(f"Task ID: {task_id}")
    click.echo(f"Iterations: {orchestrator.iteration_count}")
    click.echo(f"Status: {'completed' if completed else 'incomplete'}")
    orchestrator.cleanup()


@cli.command("status")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = runtime.store
    if not store.task_exists(task_id):
        raise click.ClickException(f"Task not found: {task_id}")
    stats = store.task_stats(task_id)
    payload = {
        "task_id": task_id,
        "task_dir": str(store.task_dir(task_id)),
        "has_task_spec": store.has_task_spec(task_id),
        "total_iterations": stats.total_iterations,
        "iterations": store.list_iterations(task_id),
        "has_final_summary": stats.has_final_summary,
        "has_final_result": store.has_final_result(task_id),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("show")
@click.argument("task_id")
@click.option("--iteration", "iteration", type=click.IntRange(min=1), required=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def show_command(task_id: str, iteration: int, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    store = runtime.store
    if iteration not in store.list_iterations(task_id):
        raise click.ClickException(f"Iteration {iteration} not found for task {task_id}")
    try:
        if store.evaluation_path(task_id, iteration).exists():
            click.echo(store.read_evaluation(task_id, iteration))
        else:
            click.echo("(no evaluation record)")
        if store.execution_path(task_id, iteration).exists():
            click.echo(store.read_execution(task_id, iteration))
        else:
            click.echo("(no execution record)")
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("clean")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def clean_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    if runtime.store.cleanup_task(task_id):
        click.echo(f"Removed task {task_id}")
    else:
        click.echo(f"Nothing removed for task {task_id}")
