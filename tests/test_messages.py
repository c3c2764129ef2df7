from taskloop.messages import (
    AgentMessage,
    MessageMetadata,
    extract_text,
    is_completion_signal,
    is_task_done_tool,
    parse_base_tool_name,
)
from taskloop.tracker import MessageTracker


def _tool(name: str) -> AgentMessage:
    return AgentMessage(content=name, message_type="tool_use", metadata=MessageMetadata(tool_name=name))


def test_parse_base_tool_name() -> None:
    assert parse_base_tool_name("mcp-server__task_done") == "task_done"
    assert parse_base_tool_name("a__b__task_done") == "task_done"
    assert parse_base_tool_name("task_done") == "task_done"
    assert parse_base_tool_name(None) == ""


def test_task_done_detection_uses_base_name() -> None:
    assert is_task_done_tool(_tool("mcp__dialogue__task_done"))
    assert is_task_done_tool(_tool("task_done"))
    assert not is_task_done_tool(_tool("task_done_later"))
    assert not is_task_done_tool(
        AgentMessage(content="task_done", metadata=MessageMetadata(tool_name="task_done"))
    )


def test_completion_signal_includes_task_completion_messages() -> None:
    assert is_completion_signal(AgentMessage(content="done", message_type="task_completion"))
    assert not is_completion_signal(AgentMessage(content="done"))


def test_extract_text_from_blocks() -> None:
    message = AgentMessage(content=[{"type": "text", "text": "a"}, {"type": "image"}, {"text": "b"}])

    assert extract_text(message) == "ab"
    assert extract_text(AgentMessage(content="plain")) == "plain"


def test_tracker_flag_and_reset() -> None:
    tracker = MessageTracker()
    assert tracker.has_any_message() is False

    tracker.record_message_sent()
    tracker.record_message_sent()
    assert tracker.has_any_message() is True

    tracker.reset()
    assert tracker.has_any_message() is False


def test_tracker_warning_lists_causes() -> None:
    warning = MessageTracker.build_warning("max iterations reached", "task-7")

    assert "End reason: max iterations reached" in warning
    assert "Task ID: task-7" in warning
    assert "produced no output" in warning
    assert "internal tools" in warning
    assert "configuration" in warning
    assert "Task ID" not in MessageTracker.build_warning("completed")
