from taskloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from taskloop.backends.claude import ClaudeCodeBackend
from taskloop.backends.codex import CodexBackend
from taskloop.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
