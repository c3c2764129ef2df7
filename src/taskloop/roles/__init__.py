from taskloop.roles.base import RoleAgent
from taskloop.roles.evaluator import EvaluationResult, EvaluatorAgent, format_instruction
from taskloop.roles.worker import WorkerAgent

__all__ = [
    "EvaluationResult",
    "EvaluatorAgent",
    "RoleAgent",
    "WorkerAgent",
    "format_instruction",
]
