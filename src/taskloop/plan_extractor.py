from __future__ import annotations

import logging
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from taskloop.config import PlanConfig

LOGGER = logging.getLogger(__name__)

LIST_ITEM_PATTERN = re.compile(r"^(?:[-*+]|\d+[.)])\s+(.+)$")
HEADER_PATTERN = re.compile(r"^#{1,6}\s+(.+)$")
MAX_MILESTONES = 24


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def default_plan_task_id() -> str:
    return f"dialogue-task-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class TaskPlanRecord:
    task_id: str
    title: str
    description: str
    milestones: list[str] = field(default_factory=list)
    original_request: str = ""
    created_at: str = field(default_factory=_utcnow_iso)

    def to_markdown(self) -> str:
        milestone_lines = (
            [f"{index}. {item}" for index, item in enumerate(self.milestones, start=1)]
            if self.milestones
            else ["(none extracted)"]
        )
        return "\n".join(
            [
                f"# Plan: {self.title}",
                "",
                f"**Task ID**: {self.task_id}",
                f"**Created**: {self.created_at}",
                "",
                "## Original Request",
                "",
                self.original_request.strip() or "(empty)",
                "",
                "## Description",
                "",
                self.description.strip(),
                "",
                "## Milestones",
                "",
                *milestone_lines,
                "",
            ]
        )


@dataclass(slots=True)
class PlanGrammar:
    title_markers: list[str] = field(default_factory=lambda: ["title", "task"])
    description_markers: list[str] = field(
        default_factory=lambda: ["overview", "description", "summary"]
    )
    milestone_keywords: list[str] = field(
        default_factory=lambda: ["milestone", "step", "plan"]
    )
    max_title_chars: int = 120
    description_chars: int = 500
    description_chars_without_milestones: int = 1000

    @classmethod
    def from_config(cls, config: PlanConfig) -> PlanGrammar:
        return cls(
            title_markers=list(config.title_markers),
            description_markers=list(config.description_markers),
            milestone_keywords=list(config.milestone_keywords),
            max_title_chars=config.max_title_chars,
            description_chars=config.description_chars,
            description_chars_without_milestones=config.description_chars_without_milestones,
        )


def _marker_pattern(markers: list[str]) -> re.Pattern[str] | None:
    cleaned = [re.escape(marker.strip()) for marker in markers if marker.strip()]
    if not cleaned:
        return None
    return re.compile(
        r"^\**\s*(?:" + "|".join(cleaned) + r")\s*\**\s*[:：]\s*\**\s*(.+?)\s*\**$",
        re.IGNORECASE,
    )


class PlanExtractor:
    """Heuristic parser turning free-form Worker output into a task plan.

    A structured pass looks for explicit title and overview markers, markdown
    headers, and list items under milestone-like sections. When no title can be
    found that way the first non-empty line is used instead. Extraction never
    raises; unusable input yields ``None``.
    """

    def __init__(
        self,
        grammar: PlanGrammar | None = None,
        *,
        generate_task_id: Callable[[], str] | None = None,
    ) -> None:
        self.grammar = grammar or PlanGrammar()
        self.generate_task_id = generate_task_id or default_plan_task_id
        self._title_marker = _marker_pattern(self.grammar.title_markers)
        self._description_marker = _marker_pattern(self.grammar.description_markers)
        self._milestone_keywords = [
            keyword.strip().lower() for keyword in self.grammar.milestone_keywords if keyword.strip()
        ]
        self._description_headers = [
            marker.strip().lower() for marker in self.grammar.description_markers if marker.strip()
        ]

    def extract(
        self,
        raw_text: str,
        original_request: str,
        task_id: str | None = None,
    ) -> TaskPlanRecord | None:
        if not raw_text or not raw_text.strip():
            return None
        try:
            lines = [line.strip() for line in raw_text.splitlines()]
            title = self._structured_title(lines) or self._fallback_title(lines)
            if not title:
                return None
            milestones = self._extract_milestones(lines)
            description = self._extract_description(lines) or self._default_description(
                raw_text, milestones
            )
            return TaskPlanRecord(
                task_id=task_id or self.generate_task_id(),
                title=title,
                description=description,
                milestones=milestones,
                original_request=original_request,
            )
        except Exception:
            LOGGER.exception("Plan extraction failed; skipping plan")
            return None

    def _truncate_title(self, title: str) -> str:
        title = title.strip().strip("*").strip()
        limit = max(1, self.grammar.max_title_chars)
        if len(title) <= limit:
            return title
        return title[: limit - 3].rstrip() + "..."

    def _structured_title(self, lines: list[str]) -> str:
        if self._title_marker is not None:
            for line in lines:
                match = self._title_marker.match(line)
                if match and match.group(1).strip():
                    return self._truncate_title(match.group(1))
        for line in lines:
            match = HEADER_PATTERN.match(line)
            if match and match.group(1).strip():
                return self._truncate_title(match.group(1))
        return ""

    def _fallback_title(self, lines: list[str]) -> str:
        for line in lines:
            if not line:
                continue
            candidate = line
            header = HEADER_PATTERN.match(candidate)
            if header:
                candidate = header.group(1)
            item = LIST_ITEM_PATTERN.match(candidate)
            if item:
                candidate = item.group(1)
            candidate = candidate.strip().strip("*").strip()
            if candidate:
                return self._truncate_title(candidate)
        return ""

    def _is_milestone_heading(self, line: str) -> bool:
        lowered = line.lower()
        return any(keyword in lowered for keyword in self._milestone_keywords)

    def _extract_milestones(self, lines: list[str]) -> list[str]:
        sectioned: list[str] = []
        loose: list[str] = []
        in_section = False
        for line in lines:
            if not line:
                continue
            item = LIST_ITEM_PATTERN.match(line)
            if item is None:
                if self._is_milestone_heading(line):
                    in_section = True
                elif HEADER_PATTERN.match(line):
                    in_section = False
                continue
            text = item.group(1).strip().strip("*").strip()
            if not text or text.startswith("#"):
                continue
            loose.append(text)
            if in_section:
                sectioned.append(text)

        chosen = sectioned or loose
        milestones: list[str] = []
        for text in chosen:
            if text not in milestones:
                milestones.append(text)
        return milestones[:MAX_MILESTONES]

    def _extract_description(self, lines: list[str]) -> str:
        if self._description_marker is not None:
            for line in lines:
                match = self._description_marker.match(line)
                if match and match.group(1).strip():
                    return match.group(1).strip()[: self.grammar.description_chars]

        collected: list[str] = []
        capturing = False
        for line in lines:
            header = HEADER_PATTERN.match(line)
            if header:
                if capturing:
                    break
                heading = header.group(1).strip().lower()
                capturing = any(heading.startswith(marker) for marker in self._description_headers)
                continue
            if capturing and line:
                collected.append(line)
        return "\n".join(collected)[: self.grammar.description_chars]

    def _default_description(self, raw_text: str, milestones: list[str]) -> str:
        limit = (
            self.grammar.description_chars
            if milestones
            else self.grammar.description_chars_without_milestones
        )
        return raw_text.strip()[:limit]
