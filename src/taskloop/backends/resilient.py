from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from taskloop.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from taskloop.messages import AgentMessage

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with idle timeout, retry, and failover.

    Messages are passed through as they arrive. Retries and failover only
    happen while nothing has been yielded yet; once a message has reached the
    caller, a later failure propagates unchanged.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _next_message(self, stream: AsyncIterator[AgentMessage]) -> AgentMessage:
        try:
            return await asyncio.wait_for(
                anext(stream), timeout=self.retry_policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                "Backend produced no message for "
                f"{self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[AgentMessage]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for index, (backend_name, backend) in enumerate(attempts):
            if index > 0:
                self._emit(
                    {
                        "event": "backend_failover_start",
                        "backend": backend_name,
                        "previous": attempts[index - 1][0],
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)

                delivered = False
                retriable = True
                stream = backend.execute(system_prompt, user_prompt, context)
                try:
                    while True:
                        try:
                            message = await self._next_message(stream)
                        except StopAsyncIteration:
                            break
                        delivered = True
                        yield message
                except BackendExecutionError as exc:
                    if delivered:
                        raise
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    retriable = exc.retriable
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                except Exception as exc:
                    if delivered:
                        raise
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                else:
                    if backend_name != self.primary_name:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend_name,
                                "attempt": attempt,
                            }
                        )
                    return
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                if not retriable:
                    break

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            retriable=False,
        )
