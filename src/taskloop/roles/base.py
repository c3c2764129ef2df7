from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from importlib import resources
from typing import Any

from taskloop.backends.base import AgentBackend
from taskloop.messages import AgentMessage

LOGGER = logging.getLogger(__name__)


class RoleAgent:
    """One short-lived agent instance bound to a backend.

    Instances are built fresh for every iteration and released with
    ``cleanup()`` once their stream has been drained.
    """

    role: str = "agent"
    prompt_file: str | None = None
    fallback_prompt: str = "You are an autonomous software agent."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()
        self.released = False

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("taskloop.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    async def _stream(
        self, user_prompt: str, context: dict[str, Any]
    ) -> AsyncIterator[AgentMessage]:
        if self.released:
            raise RuntimeError(f"The {self.role} agent was already cleaned up.")
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        async for message in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=user_prompt,
            context=run_context,
        ):
            yield message

    def cleanup(self) -> None:
        if self.released:
            return
        self.released = True
        LOGGER.debug("%s agent released", self.role)
