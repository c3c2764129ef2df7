from __future__ import annotations


class MessageTracker:
    """Remembers whether a dialogue run showed anything to the user."""

    def __init__(self) -> None:
        self._message_sent = False

    def record_message_sent(self) -> None:
        self._message_sent = True

    def has_any_message(self) -> bool:
        return self._message_sent

    def reset(self) -> None:
        self._message_sent = False

    @staticmethod
    def build_warning(reason: str, task_id: str | None = None) -> str:
        parts = [
            "**Task finished without any user-visible message**",
            "",
            f"End reason: {reason}",
        ]
        if task_id:
            parts.append(f"Task ID: {task_id}")
        parts.extend(
            [
                "",
                "Possible causes:",
                "- The agent produced no output",
                "- All output was handled through internal tools",
                "- A configuration problem (backend, model or credentials)",
            ]
        )
        return "\n".join(parts)
