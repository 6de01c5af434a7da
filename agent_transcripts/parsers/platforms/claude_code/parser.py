"""Convert Claude Code project transcripts (``~/.claude/projects/*/*.jsonl``).

Each JSONL line is a record keyed by ``uuid``. Sidechain records belong to
subagent branches and are dropped; the rest are replayed in timestamp order.
Tool results arrive inside later ``user`` records and are folded back into
the tool call that produced them.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from agent_transcripts.blobs import BlobStore
from agent_transcripts.date_utils import file_mtime, iso_to_epoch, parse_iso_datetime, utc_now
from agent_transcripts.git import infer_git_context_from_path
from agent_transcripts.model_identity import standardize_model_name
from agent_transcripts.models import (
    AgentMessage,
    CommandMessage,
    CompactionSummaryMessage,
    ConversionResult,
    ImageRef,
    ThinkingMessage,
    TokenUsage,
    ToolCallMessage,
    UserMessage,
)
from agent_transcripts.parsers.context import (
    UNSET,
    ConversionContext,
    ConvertOptions,
    as_dict,
    as_list,
    as_string,
    blended_token_total,
    coerce_int,
    collapse_whitespace,
)
from agent_transcripts.paths import format_cwd_with_tilde, relativize_paths
from agent_transcripts.pricing import calculate_cost_from_pricing, resolve_model_pricing
from agent_transcripts.schema import assemble_transcript

logger = logging.getLogger("agent_transcripts.parsers.claude_code")

SOURCE = "claude-code"
MODEL_PROVIDER = "anthropic"

IGNORED_STATUS_MESSAGES = {
    "[request interrupted by user]",
    "[request aborted by user]",
    "[request cancelled by user]",
}
IGNORED_COMMANDS = {"/clear"}
NON_PROMPT_PREFIXES = (
    "npm ",
    "npm:",
    "npm error",
    "node:",
    "node.js",
    "error:",
    "fatal:",
    "warning:",
    "traceback (most recent call last):",
    "usage:",
    "hint:",
    "note:",
    "code:",
    "requirestack",
)
PROMPT_CUE_PHRASES = (
    "can you",
    "can we",
    "could you",
    "could we",
    "would you",
    "would we",
    "should we",
    "should i",
    "let's",
    "let us",
)
MAX_PREVIEW_LINES = 3

_PROMPT_KEYWORDS = re.compile(
    r"\b(fix|please|should|update|change|add|remove|create|write|implement|refactor|investigate|explain"
    r"|help|why|what|how|need|ensure|make|build|let's|optimize|review|check)\b",
    re.IGNORECASE,
)
_COMMAND_ENVELOPE = re.compile(r"^</?(?:command|local)-[a-z-]+>", re.IGNORECASE)
_SHELL_PROMPT = re.compile(r"^[α-ωΑ-Ω]\s")
_ALPHANUMERIC = re.compile(r"[a-z0-9]", re.IGNORECASE)
_COMMAND_NAME = re.compile(r"<command-name>(.*?)</command-name>", re.DOTALL)
_COMMAND_ARGS = re.compile(r"<command-args>(.*?)</command-args>", re.DOTALL)
_LOCAL_COMMAND_STDOUT = re.compile(r"<local-command-stdout>(.*)</local-command-stdout>", re.DOTALL)
_SYSTEM_REMINDER = re.compile(r"<system-reminder>[\s\S]*?</system-reminder>")
_ANSI_COLOR = re.compile(r"\x1b\[[0-9;]*m")
_SHELL_WRAPPER = re.compile(r"^(?:bash|zsh)\s+-lc\s+['\"](.*)['\"]$", re.DOTALL)
_CAT_N_LINE = re.compile(r"^\s*(\d+)[→\t]", re.MULTILINE)

_USAGE_FIELDS = (
    "input_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
    "output_tokens",
    "reasoning_output_tokens",
)


# ── Records ─────────────────────────────────────────────────────────

@dataclass
class ClaudeRecord:
    uuid: str
    type: str
    timestamp: str | None = None
    parent_uuid: str | None = None
    is_sidechain: bool = False
    is_meta: bool = False
    is_compact_summary: bool = False
    session_id: str | None = None
    cwd: str | None = None
    git_branch: str | None = None
    message: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def model(self) -> str | None:
        return as_string(self.message.get("model"))

    @property
    def usage(self) -> dict[str, int] | None:
        usage = as_dict(self.message.get("usage"))
        counts = {
            key: coerce_int(usage[key])
            for key in _USAGE_FIELDS
            if isinstance(usage.get(key), (int, float)) and not isinstance(usage.get(key), bool)
        }
        return counts or None


def _record_from_line(line: dict[str, Any]) -> ClaudeRecord | None:
    record_type = line.get("type") if isinstance(line.get("type"), str) else ""
    uuid = line.get("uuid")
    if record_type == "summary" or not isinstance(uuid, str) or not uuid:
        return None
    return ClaudeRecord(
        uuid=uuid,
        type=record_type,
        timestamp=line.get("timestamp") if isinstance(line.get("timestamp"), str) else None,
        parent_uuid=line.get("parentUuid") if isinstance(line.get("parentUuid"), str) else None,
        is_sidechain=bool(line.get("isSidechain")),
        is_meta=bool(line.get("isMeta")),
        is_compact_summary=bool(line.get("isCompactSummary")),
        session_id=as_string(line.get("sessionId")),
        cwd=line.get("cwd") if isinstance(line.get("cwd"), str) and line.get("cwd") else None,
        git_branch=as_string(line.get("gitBranch")),
        message=as_dict(line.get("message")),
        raw=line,
    )


def parse_records(lines: Iterable[Any]) -> list[ClaudeRecord]:
    """Build records keyed by uuid; a repeated uuid replaces the earlier record in place."""
    by_uuid: dict[str, ClaudeRecord] = {}
    for line in lines:
        if not isinstance(line, dict):
            continue
        record = _record_from_line(line)
        if record is not None:
            by_uuid[record.uuid] = record
    return list(by_uuid.values())


def flatten_records(records: Iterable[ClaudeRecord]) -> list[ClaudeRecord]:
    """Main-chain records in chronological order, ties broken by uuid."""
    main_chain = [record for record in records if not record.is_sidechain]
    return sorted(main_chain, key=lambda record: (iso_to_epoch(record.timestamp), record.uuid))


# ── Usage and cost ──────────────────────────────────────────────────

def _usage_key(record: ClaudeRecord) -> str:
    message_id = as_string(record.message.get("id"))
    request_id = as_string(record.raw.get("requestId"))
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    return message_id or request_id or record.uuid


def collect_usage_records(records: Iterable[ClaudeRecord]) -> list[ClaudeRecord]:
    """One assistant record per API response; streamed repeats share a message and request id."""
    unique: dict[str, ClaudeRecord] = {}
    for record in records:
        if record.type == "assistant" and record.usage:
            unique[_usage_key(record)] = record
    return list(unique.values())


def turn_usage(usage: dict[str, int]) -> TokenUsage:
    """Input counts fresh, cache-creation and cache-read tokens; cached counts cache reads."""
    fresh = usage.get("input_tokens", 0)
    created = usage.get("cache_creation_input_tokens", 0)
    read = usage.get("cache_read_input_tokens", 0)
    output = usage.get("output_tokens", 0)
    reasoning = usage.get("reasoning_output_tokens", 0)
    return TokenUsage(
        inputTokens=fresh + created + read,
        cachedInputTokens=read,
        outputTokens=output,
        reasoningOutputTokens=reasoning,
        totalTokens=fresh + created + read + output + reasoning,
    )


def estimate_claude_cost(usage_records: Iterable[ClaudeRecord], pricing: Any) -> float:
    """Price every response against its own model; unpriced models cost nothing."""
    if not pricing:
        return 0.0
    total = 0.0
    for record in usage_records:
        entry = resolve_model_pricing(record.model, pricing)
        if entry is None or record.usage is None:
            continue
        usage = record.usage
        total += calculate_cost_from_pricing(
            {
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
                "cache_creation_input_tokens": usage.get("cache_creation_input_tokens", 0),
                "cache_read_input_tokens": usage.get("cache_read_input_tokens", 0),
            },
            entry,
        )
    return total


def select_primary_model(model_usage: dict[str, TokenUsage]) -> str | None:
    """The model with the most tokens; the first seen wins a tie."""
    best: str | None = None
    best_tokens = -1
    for model, usage in model_usage.items():
        tokens = usage.totalTokens if usage.totalTokens > 0 else usage.inputTokens + usage.outputTokens
        if tokens > best_tokens:
            best, best_tokens = model, tokens
    return best


# ── Preview ─────────────────────────────────────────────────────────

def has_prompt_cue(value: str) -> bool:
    lowered = value.lower()
    if _PROMPT_KEYWORDS.search(lowered) or "?" in lowered:
        return True
    return any(phrase in lowered for phrase in PROMPT_CUE_PHRASES)


def _is_noise(line: str) -> bool:
    lowered = line.lower()
    if lowered in IGNORED_STATUS_MESSAGES or _COMMAND_ENVELOPE.match(line) or _SHELL_PROMPT.match(line):
        return True
    return lowered.startswith(NON_PROMPT_PREFIXES) and not has_prompt_cue(line)


def meaningful_lines(value: str) -> list[str]:
    lines: list[str] = []
    for raw_line in value.splitlines():
        line = raw_line.strip()
        if not line or _is_noise(line) or not _ALPHANUMERIC.search(line):
            continue
        lines.append(line)
    return lines


def normalize_prompt_text(value: str, max_lines: int = MAX_PREVIEW_LINES) -> str | None:
    lines = meaningful_lines(strip_system_reminders(value))
    if not lines:
        return None
    return collapse_whitespace(" ".join(lines[:max_lines])) or None


def _first_prompt_text(message: dict[str, Any]) -> str | None:
    content = message.get("content")
    if isinstance(content, str):
        return normalize_prompt_text(content)
    for part in as_list(content):
        if isinstance(part, str):
            candidates = [part]
        else:
            record = as_dict(part)
            candidates = [record[key] for key in ("content", "text") if isinstance(record.get(key), str)]
        for candidate in candidates:
            normalized = normalize_prompt_text(candidate)
            if normalized:
                return normalized
    return None


def _is_tool_result_part(part: Any) -> bool:
    record = as_dict(part)
    return record.get("type") == "tool_result" or isinstance(record.get("tool_use_id"), str)


def is_prompt_candidate(record: ClaudeRecord) -> bool:
    """True for user records that carry a typed prompt rather than tool output or harness noise."""
    if record.type != "user" or record.is_sidechain or record.is_meta or record.is_compact_summary:
        return False
    if "toolUseResult" in record.raw:
        return False
    if any(_is_tool_result_part(part) for part in as_list(record.message.get("content"))):
        return False
    normalized = _first_prompt_text(record.message)
    return bool(normalized) and not _is_noise(normalized)


def derive_claude_preview(records: Iterable[ClaudeRecord]) -> str | None:
    for record in records:
        if is_prompt_candidate(record):
            return _first_prompt_text(record.message)
    return None


# ── Tool calls ──────────────────────────────────────────────────────

def image_ref_from_block(block: Any, blobs: BlobStore) -> ImageRef | None:
    """Store an inline base64 image block, or read an already-stored sha256 reference."""
    record = as_dict(block)
    source = as_dict(record.get("source"))
    if record.get("type") != "image" or not source:
        return None
    media_type = as_string(source.get("mediaType")) or as_string(source.get("media_type"))
    if source.get("type") == "sha256" and isinstance(source.get("sha256"), str):
        return ImageRef(sha256=source["sha256"], mediaType=media_type or "image/unknown")
    data = source.get("data")
    if not isinstance(data, str) or not data:
        return None
    return blobs.add_base64(data, media_type)


def extract_output_images(value: Any, blobs: BlobStore) -> tuple[Any, list[ImageRef]]:
    """Replace inline images in a tool result with sha256 references and collect them."""
    refs: list[ImageRef] = []

    def _walk(item: Any) -> Any:
        if isinstance(item, list):
            return [_walk(entry) for entry in item]
        if not isinstance(item, dict):
            return item
        ref = image_ref_from_block(item, blobs)
        if ref is not None:
            refs.append(ref)
            return {"type": "image", "source": {"type": "sha256", "mediaType": ref.mediaType, "sha256": ref.sha256}}
        return {key: _walk(entry) for key, entry in item.items()}

    return _walk(value), refs


def _first_string(record: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        if isinstance(record.get(key), str):
            return record[key]
    return None


def _strip_active_form(items: Any) -> Any:
    if not isinstance(items, list):
        return items
    return [
        {key: value for key, value in item.items() if key != "activeForm"} if isinstance(item, dict) else item
        for item in items
    ]


def _drop_stream_lines(output: Any) -> Any:
    if isinstance(output, dict):
        output.pop("stdoutLines", None)
        output.pop("stderrLines", None)
    return output


def _structured_patch_diff(output: Any) -> tuple[str | None, int | None]:
    if not isinstance(output, dict) or not isinstance(output.get("structuredPatch"), list):
        return None, None
    lines: list[str] = []
    offset: int | None = None
    for hunk in output["structuredPatch"]:
        if not isinstance(hunk, dict):
            continue
        if offset is None and isinstance(hunk.get("oldStart"), int):
            offset = hunk["oldStart"]
        lines.extend(line for line in as_list(hunk.get("lines")) if isinstance(line, str))
    return ("\n".join(lines) + "\n" if lines else None), offset


def _sanitize_write(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if isinstance(output, dict):
        output = {"type": output["type"]} if "type" in output else {}
    return tool_input, output


_READ_FILE_FIELDS = {"content": str, "numLines": int, "startLine": int, "totalLines": int}


def _sanitize_read(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if not isinstance(output, dict):
        return tool_input, output
    reduced: dict[str, Any] = {}
    if isinstance(output.get("type"), str):
        reduced["type"] = output["type"]
    file_block = as_dict(output.get("file"))
    kept = {
        key: file_block[key]
        for key, kind in _READ_FILE_FIELDS.items()
        if isinstance(file_block.get(key), kind)
    }
    if kept:
        reduced["file"] = kept
    return tool_input, reduced


_EDIT_INPUT_DROPPED = ("old_string", "new_string", "oldString", "newString")
_EDIT_OUTPUT_DROPPED = {"filePath", "newString", "oldString", "originalFile", "structuredPatch", "replaceAll"}


def _sanitize_edit(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    """Turn old/new strings or a structured patch into a unified ``diff`` plus ``lineOffset``."""
    diff, line_offset = _structured_patch_diff(output)
    if line_offset is None and isinstance(output, str):
        match = _CAT_N_LINE.search(output)
        if match:
            line_offset = int(match.group(1))

    if isinstance(tool_input, dict):
        old = _first_string(tool_input, "old_string", "oldString")
        new = _first_string(tool_input, "new_string", "newString")
        failed = (
            is_error is True
            or (isinstance(output, str) and "has been updated" not in output)
            or (isinstance(output, dict) and output.get("type") == "error")
        )
        if diff is None and not failed and old is not None and new is not None:
            removed = [f"-{line}" for line in old.split("\n")]
            added = [f"+{line}" for line in new.split("\n")]
            diff = "\n".join(removed + added) + "\n"
        for key in _EDIT_INPUT_DROPPED:
            tool_input.pop(key, None)
        if diff:
            tool_input["diff"] = diff
        if line_offset is not None and line_offset > 0:
            tool_input["lineOffset"] = line_offset

    if isinstance(output, dict):
        output = {key: value for key, value in output.items() if key not in _EDIT_OUTPUT_DROPPED} or None
    return tool_input, output


def _sanitize_search(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if isinstance(output, dict) and isinstance(output.get("filenames"), list):
        output.pop("numFiles", None)
    return tool_input, output


def _sanitize_bash(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if isinstance(tool_input, dict) and isinstance(tool_input.get("command"), str):
        match = _SHELL_WRAPPER.match(tool_input["command"])
        if match:
            tool_input["command"] = match.group(1)
    return tool_input, _drop_stream_lines(output)


def _sanitize_bash_output(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    return tool_input, _drop_stream_lines(output)


def _count(record: dict[str, Any], *keys: str) -> int:
    for key in keys:
        if record.get(key) is not None:
            return coerce_int(record[key])
    return 0


def subagent_usage(record: dict[str, Any]) -> dict[str, int]:
    """Normalize a subagent usage block to unified token-usage field names."""
    input_tokens = _count(record, "input_tokens", "inputTokens")
    cached = (
        _count(record, "cached_input_tokens", "cachedInputTokens")
        + _count(record, "cache_creation_input_tokens", "cacheCreationInputTokens")
        + _count(record, "cache_read_input_tokens", "cacheReadInputTokens")
    )
    output_tokens = _count(record, "output_tokens", "outputTokens")
    reasoning = _count(record, "reasoning_output_tokens", "reasoningOutputTokens")
    total = record.get("total_tokens", record.get("totalTokens"))
    if isinstance(total, bool) or not isinstance(total, (int, float)):
        total = input_tokens + cached + output_tokens + reasoning
    return TokenUsage(
        inputTokens=input_tokens,
        cachedInputTokens=cached,
        outputTokens=output_tokens,
        reasoningOutputTokens=reasoning,
        totalTokens=coerce_int(total),
    ).model_dump()


def _sanitize_task(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if not isinstance(output, dict):
        return tool_input, output
    reduced: dict[str, Any] = {}
    for key, value in output.items():
        if key == "usage" and isinstance(value, dict):
            reduced["usage"] = subagent_usage(value)
        elif key not in {"usage", "totalTokens", "prompt"}:
            reduced[key] = value
    return tool_input, reduced


def _sanitize_todo_write(tool_input: Any, output: Any, is_error: bool | None) -> tuple[Any, Any]:
    if isinstance(tool_input, dict) and "todos" in tool_input:
        tool_input["todos"] = _strip_active_form(tool_input["todos"])
    if isinstance(output, dict):
        for key in ("newTodos", "oldTodos"):
            if key in output:
                output[key] = _strip_active_form(output[key])
    return tool_input, output


ToolSanitizer = Callable[[Any, Any, Optional[bool]], tuple[Any, Any]]

TOOL_SANITIZERS: dict[str, ToolSanitizer] = {
    "Write": _sanitize_write,
    "Read": _sanitize_read,
    "Edit": _sanitize_edit,
    "Glob": _sanitize_search,
    "Grep": _sanitize_search,
    "Bash": _sanitize_bash,
    "BashOutput": _sanitize_bash_output,
    "Task": _sanitize_task,
    "TodoWrite": _sanitize_todo_write,
}


def sanitize_tool_call(
    message: ToolCallMessage,
    raw_input: Any,
    raw_output: Any,
    is_error: bool | None,
    cwd: str | None,
) -> None:
    """Rebuild a tool call's input and output from the raw values, in place.

    Working from the raw values keeps the result the same however many times
    the call is sanitized.
    """
    tool_input = dict(raw_input) if isinstance(raw_input, dict) else raw_input
    output = dict(raw_output) if isinstance(raw_output, dict) else raw_output
    sanitizer = TOOL_SANITIZERS.get(message.toolName)
    if sanitizer is not None:
        tool_input, output = sanitizer(tool_input, output, is_error)
    if cwd:
        tool_input = relativize_paths(tool_input, cwd)
        output = relativize_paths(output, cwd)
    if is_error is None:
        if message.error and message.error.strip():
            is_error = True
        elif isinstance(output, str) and output.strip().lower().startswith("error:"):
            is_error = True
    message.input = tool_input
    message.output = output
    message.isError = is_error


# ── User content ────────────────────────────────────────────────────

@dataclass
class ToolResult:
    call_id: str | None
    output: Any
    error: str | None = None
    is_error: bool | None = None


@dataclass
class UserContent:
    texts: list[str] = field(default_factory=list)
    images: list[ImageRef] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)


def _tool_result(record: ClaudeRecord, part: dict[str, Any]) -> ToolResult:
    structured = record.raw.get("toolUseResult", record.raw.get("tool_use_result"))
    is_error = part.get("is_error", part.get("isError"))
    if not isinstance(is_error, bool):
        is_error = not part["success"] if isinstance(part.get("success"), bool) else None
    return ToolResult(
        call_id=as_string(part.get("tool_use_id")),
        output=structured if structured else part.get("content"),
        error=part.get("error") if isinstance(part.get("error"), str) else None,
        is_error=is_error,
    )


def extract_user_content(record: ClaudeRecord, blobs: BlobStore) -> UserContent:
    content = record.message.get("content")
    extracted = UserContent()
    if isinstance(content, str):
        if content:
            extracted.texts.append(content)
        return extracted
    for part in as_list(content):
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "tool_result":
            extracted.tool_results.append(_tool_result(record, part))
        elif part_type == "text" and isinstance(part.get("text"), str):
            if part["text"]:
                extracted.texts.append(part["text"])
        elif part_type == "image":
            ref = image_ref_from_block(part, blobs)
            if ref is not None:
                extracted.images.append(ref)
        else:
            extracted.texts.extend(part[key] for key in ("content", "text") if isinstance(part.get(key), str) and part[key])
    return extracted


def parse_command_message(text: str) -> tuple[str, str | None] | None:
    """``(name, args)`` for a slash-command envelope, else None."""
    name_match = _COMMAND_NAME.search(text)
    if not name_match:
        return None
    args_match = _COMMAND_ARGS.search(text)
    args = args_match.group(1).strip() if args_match else ""
    return name_match.group(1).strip(), args or None


def parse_local_command_stdout(text: str) -> str | None:
    match = _LOCAL_COMMAND_STDOUT.fullmatch(text.strip())
    return match.group(1) if match else None


def strip_system_reminders(text: str) -> str:
    return _SYSTEM_REMINDER.sub("", text).strip()


# ── Record handlers ─────────────────────────────────────────────────

class _ClaudeState:
    def __init__(self, ctx: ConversionContext) -> None:
        self.ctx = ctx
        self.pending_command: CommandMessage | None = None
        self.skip_next_stdout = False
        self.user_messages: dict[tuple[str, str], UserMessage] = {}
        self.raw_inputs: dict[str, Any] = {}

    def flush_command(self) -> None:
        if self.pending_command is not None:
            self.ctx.add_message(self.pending_command)
            self.pending_command = None


def _handle_command_text(state: _ClaudeState, record: ClaudeRecord, text: str) -> bool:
    """Consume slash-command envelopes and their captured stdout; True when ``text`` was one."""
    stdout = parse_local_command_stdout(text)
    if stdout is not None:
        if state.skip_next_stdout:
            state.skip_next_stdout = False
        elif state.pending_command is not None:
            state.pending_command.output = _ANSI_COLOR.sub("", stdout).strip() or None
            state.flush_command()
        return True

    command = parse_command_message(text)
    if command is None:
        return False
    name, args = command
    if name in IGNORED_COMMANDS:
        state.skip_next_stdout = True
        return True
    state.flush_command()
    state.pending_command = CommandMessage(id=record.uuid, timestamp=record.timestamp, name=name, args=args)
    return True


def _handle_user_text(state: _ClaudeState, record: ClaudeRecord, text: str, images: list[ImageRef]) -> None:
    if not text.strip() or _handle_command_text(state, record, text):
        return
    cleaned = strip_system_reminders(text)
    if not cleaned:
        return
    state.flush_command()
    if record.is_compact_summary:
        state.ctx.add_message(CompactionSummaryMessage(id=record.uuid, timestamp=record.timestamp, text=cleaned))
        return

    # The same prompt is sometimes logged twice, once with its images and once without.
    key = (record.timestamp or "", cleaned)
    existing = state.user_messages.get(key)
    if existing is not None:
        if not existing.images and images:
            existing.images = list(images)
        return
    message = UserMessage(id=record.uuid, timestamp=record.timestamp, text=cleaned, images=list(images) or None)
    state.user_messages[key] = message
    state.ctx.add_message(message)


def _attach_tool_result(state: _ClaudeState, result: ToolResult) -> None:
    ctx = state.ctx
    message = ctx.open_tool_call(result.call_id)
    if message is None:
        ctx.skip("result for unknown tool call %s", result.call_id)
        return
    if not ctx.complete_tool_call(result.call_id):
        ctx.skip("duplicate result for tool call %s", result.call_id)
        return
    output, images = extract_output_images(result.output, ctx.blobs)
    if result.error:
        message.error = result.error
    raw_input = state.raw_inputs.get(result.call_id or "", message.input)
    sanitize_tool_call(message, raw_input, output, result.is_error, ctx.cwd)
    if images:
        message.images = images


def _handle_user(state: _ClaudeState, record: ClaudeRecord) -> None:
    content = extract_user_content(record, state.ctx.blobs)
    for text in content.texts:
        _handle_user_text(state, record, text, content.images)
    for result in content.tool_results:
        _attach_tool_result(state, result)


def _open_tool_call(state: _ClaudeState, record: ClaudeRecord, part: dict[str, Any], model: str | None) -> None:
    call_id = as_string(part.get("id"))
    raw_input = part.get("input")
    message = ToolCallMessage(
        id=call_id,
        timestamp=record.timestamp,
        model=model,
        toolName=as_string(part.get("name")) or "unknown",
    )
    sanitize_tool_call(message, raw_input, None, None, state.ctx.cwd)
    if state.ctx.add_tool_call(message) is not None and call_id:
        state.raw_inputs.setdefault(call_id, raw_input)


def _handle_assistant(state: _ClaudeState, record: ClaudeRecord) -> None:
    content = record.message.get("content")
    if not isinstance(content, list):
        return
    ctx = state.ctx
    model = standardize_model_name(record.model, MODEL_PROVIDER)
    message_id = as_string(record.message.get("id"))
    for part in content:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "thinking" and isinstance(part.get("thinking"), str) and part["thinking"].strip():
            ctx.add_message(
                ThinkingMessage(id=message_id, timestamp=record.timestamp, text=part["thinking"], model=model)
            )
        elif part_type == "text" and isinstance(part.get("text"), str) and part["text"].strip():
            ctx.add_message(AgentMessage(id=message_id, timestamp=record.timestamp, text=part["text"], model=model))
        elif part_type == "tool_use":
            _open_tool_call(state, record, part, model)


_RECORD_HANDLERS: dict[str, Callable[[_ClaudeState, ClaudeRecord], None]] = {
    "user": _handle_user,
    "assistant": _handle_assistant,
}


# ── Transcript assembly ─────────────────────────────────────────────

def _first(records: list[ClaudeRecord], attribute: str) -> str | None:
    for record in records:
        value = getattr(record, attribute)
        if value:
            return value
    return None


def _client_version(records: list[ClaudeRecord]) -> str | None:
    for record in records:
        version = record.raw.get("version")
        if isinstance(version, str) and version:
            return version
    return None


def _convert_records(
    lines: Iterable[Any],
    opts: ConvertOptions,
    fallback_timestamp: datetime | None = None,
) -> ConversionResult | None:
    records = flatten_records(parse_records(lines))
    if not records:
        return None

    cwd = opts.cwd or _first(records, "cwd")
    ctx = ConversionContext(source=SOURCE, cwd=cwd)
    state = _ClaudeState(ctx)
    for record in records:
        if record.is_meta:
            continue
        handler = _RECORD_HANDLERS.get(record.type)
        if handler is None:
            ctx.skip("record type %r (%s)", record.type, record.uuid)
            continue
        handler(state, record)
    state.flush_command()

    if not ctx.messages:
        return None

    usage_records = collect_usage_records(records)
    for record in usage_records:
        usage = turn_usage(record.usage or {})
        ctx.usage.add(usage)
        model = standardize_model_name(record.model, MODEL_PROVIDER)
        if model:
            ctx.add_model_usage(model, usage)

    last = records[-1]
    timestamp = parse_iso_datetime(last.timestamp) or fallback_timestamp or opts.now or utc_now()
    if opts.git_context is not UNSET:
        git = opts.git_context
    else:
        git = infer_git_context_from_path(cwd, _first(records, "git_branch"))

    transcript_id = _first(records, "session_id") or last.uuid
    transcript = assemble_transcript(
        ctx.messages,
        id=transcript_id,
        source=SOURCE,
        timestamp=timestamp,
        preview=derive_claude_preview(records),
        summary=None,
        model=select_primary_model(ctx.model_usage),
        clientVersion=opts.client_version or _client_version(records),
        blendedTokens=blended_token_total(ctx.usage),
        costUsd=estimate_claude_cost(usage_records, opts.pricing),
        tokenUsage=ctx.usage,
        modelUsage=ctx.model_usage_list(),
        git=git,
        cwd=format_cwd_with_tilde(cwd) if cwd else "",
    )
    if ctx.skipped_records:
        logger.debug("Claude Code session %s: skipped %d records", transcript_id, ctx.skipped_records)
    return ConversionResult(transcript=transcript, blobs=ctx.blobs.blobs)


def convert_claude_code_transcript(
    records: Iterable[Any],
    options: ConvertOptions | None = None,
) -> ConversionResult | None:
    """Convert in-memory Claude Code records (one dict per JSONL line).

    Returns None when no record yields a message.
    """
    return _convert_records(records, options or ConvertOptions())


def load_claude_code_records(path: Path) -> list[dict[str, Any]] | None:
    """Read a Claude Code JSONL file, skipping blank and malformed lines."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read Claude Code transcript %s: %s", path, exc)
        return None
    records: list[dict[str, Any]] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def convert_claude_code_file(path: Path, options: ConvertOptions | None = None) -> ConversionResult | None:
    """Convert one transcript file; the file's mtime stands in when no record is timestamped."""
    path = Path(path)
    records = load_claude_code_records(path)
    if records is None:
        return None
    return _convert_records(records, options or ConvertOptions(), file_mtime(path))


def convert_claude_code_files(
    paths: Iterable[Path],
    options: ConvertOptions | None = None,
) -> list[ConversionResult]:
    results: list[ConversionResult] = []
    for path in paths:
        result = convert_claude_code_file(path, options)
        if result is not None:
            results.append(result)
    return results
