from taskloop.state.task_files import (
    TaskFileStore,
    TaskMetadata,
    TaskStats,
    TaskStoreError,
    parse_task_spec,
    render_task_spec,
    sanitize_task_id,
)

__all__ = [
    "TaskFileStore",
    "TaskMetadata",
    "TaskStats",
    "TaskStoreError",
    "parse_task_spec",
    "render_task_spec",
    "sanitize_task_id",
]
