"""Helpers for deriving transcript summary counters from unified messages."""
from __future__ import annotations

from typing import Any, Iterable

_FILE_CHANGE_TOOLS = {"Edit", "Write"}


def _count_diff_lines(diff: str) -> tuple[int, int]:
    added = 0
    removed = 0
    for line in diff.split("\n"):
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def calculate_transcript_stats(messages: Iterable[Any]) -> dict[str, int]:
    """Count tool calls, user turns, changed files and diff lines.

    Paired added/removed diff lines count as modifications. Tool calls that
    errored do not contribute file or line counts.
    """
    tool_count = 0
    user_message_count = 0
    lines_added = 0
    lines_removed = 0
    lines_modified = 0
    changed_files: set[str] = set()

    for message in messages:
        message_type = getattr(message, "type", "")
        if message_type == "user":
            user_message_count += 1
            continue
        if message_type != "tool-call":
            continue

        tool_count += 1
        if message.isError or message.error:
            continue

        tool_name = message.toolName
        tool_input = _as_dict(message.input)
        tool_output = _as_dict(message.output)

        file_path = tool_input.get("file_path")
        if isinstance(file_path, str) and tool_name in _FILE_CHANGE_TOOLS:
            changed_files.add(file_path)

        content = tool_input.get("content")
        if tool_name == "Write" and isinstance(content, str):
            lines_added += len(content.split("\n"))

        diff = tool_input.get("diff")
        if diff is None:
            diff = tool_output.get("diff")
        if tool_name == "Edit" and isinstance(diff, str):
            added, removed = _count_diff_lines(diff)
            modified = min(added, removed)
            lines_added += added - modified
            lines_removed += removed - modified
            lines_modified += modified

    return {
        "toolCount": tool_count,
        "userMessageCount": user_message_count,
        "filesChanged": len(changed_files),
        "linesAdded": lines_added,
        "linesRemoved": lines_removed,
        "linesModified": lines_modified,
    }
