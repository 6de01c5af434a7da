"""Convert Cline task histories (``tasks/<id>/api_conversation_history.json``).

The history is a bare list of Anthropic-style messages without timestamps,
so messages keep their file order and are never deduplicated.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from agent_transcripts.date_utils import file_mtime, utc_now
from agent_transcripts.model_identity import standardize_model_name
from agent_transcripts.models import AgentMessage, ConversionResult, TokenUsage, ToolCallMessage, UserMessage
from agent_transcripts.parsers.context import (
    UNSET,
    ConversionContext,
    ConvertOptions,
    as_dict,
    as_list,
    as_string,
    blended_token_total,
    coerce_int,
    derive_preview,
)
from agent_transcripts.parsers.platforms.claude_code.parser import image_ref_from_block
from agent_transcripts.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agent_transcripts.pricing import estimate_cost
from agent_transcripts.schema import assemble_transcript

logger = logging.getLogger("agent_transcripts.parsers.cline")

SOURCE = "cline"
METADATA_FILENAME = "task_metadata.json"

AGENT_RESPONSE = "AgentResponse"

TOOL_NAMES: dict[str, str] = {
    "read_file": "Read",
    "write_to_file": "Write",
    "replace_in_file": "Edit",
    "execute_command": "Bash",
    "search_files": "Grep",
    "list_files": "Glob",
    "list_code_definition_names": "Ls",
    "load_mcp_documentation": "LoadMcpDocs",
    "access_mcp_resource": "AccessMcpResource",
    "focus_chain": "FocusChain",
    "attempt_completion": AGENT_RESPONSE,
    "plan_mode_respond": AGENT_RESPONSE,
    "ask_followup_question": AGENT_RESPONSE,
}

# Text blocks Cline writes into user turns on the agent's behalf.
SYSTEM_INJECTED_MARKERS = ("# TODO LIST UPDATE REQUIRED", "# task_progress RECOMMENDED")
SYSTEM_INJECTED_PREFIXES = (
    "[apply_patch for patch application]",
    "[read_file for ",
    "[write_to_file for ",
    "[replace_in_file for ",
    "[execute_command for ",
    "[search_files for ",
    "[list_files for ",
    "[list_code_definition_names for ",
    "[access_mcp_resource for ",
    "[attempt_completion] ",
    "[ask_followup_question] ",
    "[focus_chain] ",
    "[plan_mode_respond] ",
    "[load_mcp_documentation] ",
    "The user has provided feedback on the results.",
)

_INJECTED_BLOCK = re.compile(r"<(environment_details|feedback)>[\s\S]*?</\1>")
_TASK_TAG = re.compile(r"^<task>\n?([\s\S]*?)\n?</task>")
_TOOL_RESULT_PREFIX = re.compile(r"^\[[\w_]+ for '[^']*'\] Result:\n?")


def normalize_tool_name(name: str | None) -> str:
    raw = name or "unknown"
    return TOOL_NAMES.get(raw, raw)


def normalize_text(value: Any) -> str | None:
    """Trimmed text; non-string values are rendered as JSON."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    elif isinstance(value, (bool, int, float)):
        return json.dumps(value)
    else:
        try:
            text = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError):
            text = str(value)
    return text.strip() or None


def is_system_injected_text(text: str) -> bool:
    if any(marker in text for marker in SYSTEM_INJECTED_MARKERS):
        return True
    if text.startswith(SYSTEM_INJECTED_PREFIXES):
        return True
    return "# Current Mode" in text and "environment_details" in text


def extract_user_text(raw: str) -> str | None:
    """The author's words from a user text block, or None for harness text."""
    text = raw.strip()
    if not text or _TOOL_RESULT_PREFIX.match(text):
        return None
    cleaned = _INJECTED_BLOCK.sub("", text).strip()
    match = _TASK_TAG.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    if not cleaned or is_system_injected_text(cleaned):
        return None
    return cleaned


def sanitize_tool_input(tool_name: str, value: Any, cwd: str | None) -> Any:
    """Drop Cline bookkeeping and align argument names with the unified tools.

    Agent responses collapse to the text they carry.
    """
    if not isinstance(value, dict):
        return value
    record = {key: item for key, item in value.items() if key != "task_progress"}
    if cwd and isinstance(record.get("path"), str):
        record["file_path"] = relativize_path(record.pop("path"), cwd)
    if cwd and isinstance(record.get("file_path"), str):
        record["file_path"] = relativize_path(record["file_path"], cwd)
    if tool_name == "Grep" and isinstance(record.get("regex"), str):
        record["pattern"] = record.pop("regex")
    if tool_name == AGENT_RESPONSE:
        for key in ("response", "result", "question", "options"):
            if record.get(key) is not None:
                return record[key]
        return None
    return relativize_paths(record, cwd) if cwd else record


def tool_result_output(content: Any) -> str | None:
    if isinstance(content, str):
        return content or None
    texts = [
        block["text"]
        for block in as_list(content)
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str) and block["text"]
    ]
    return "\n".join(texts) if texts else None


# ── Content handlers ────────────────────────────────────────────────

def _last_user_message(ctx: ConversionContext) -> UserMessage | None:
    if ctx.messages and isinstance(ctx.messages[-1], UserMessage):
        return ctx.messages[-1]
    return None


def _handle_user_text(ctx: ConversionContext, block: dict[str, Any], model: str | None) -> None:
    text = block.get("text")
    user_text = extract_user_text(text) if isinstance(text, str) else None
    if user_text is None:
        return
    ctx.add_message(UserMessage(text=user_text))
    ctx.user_texts.append(user_text)


def _handle_tool_result(ctx: ConversionContext, block: dict[str, Any], model: str | None) -> None:
    call_id = as_string(block.get("tool_use_id"))
    message = ctx.open_tool_call(call_id)
    if message is None:
        ctx.skip("result for unknown tool call %s", call_id)
        return
    if not ctx.complete_tool_call(call_id):
        ctx.skip("duplicate result for tool call %s", call_id)
        return
    output = tool_result_output(block.get("content"))
    message.output = relativize_paths(output, ctx.cwd) if ctx.cwd else output
    if block.get("is_error"):
        message.isError = True


def _handle_image(ctx: ConversionContext, block: dict[str, Any], model: str | None) -> None:
    ref = image_ref_from_block(block, ctx.blobs)
    if ref is None:
        return
    target = _last_user_message(ctx)
    if target is None:
        ctx.skip("image without a preceding user message")
        return
    target.images = [*(target.images or []), ref]


def _handle_agent_text(ctx: ConversionContext, block: dict[str, Any], model: str | None) -> None:
    text = normalize_text(block.get("text"))
    if text:
        ctx.add_message(AgentMessage(text=text, model=model))


def _handle_tool_use(ctx: ConversionContext, block: dict[str, Any], model: str | None) -> None:
    tool_name = normalize_tool_name(as_string(block.get("name")))
    tool_input = sanitize_tool_input(tool_name, block.get("input"), ctx.cwd)
    if tool_name == AGENT_RESPONSE:
        text = normalize_text(tool_input)
        if text:
            ctx.add_message(AgentMessage(text=text, model=model))
        return
    ctx.add_tool_call(
        ToolCallMessage(id=as_string(block.get("id")), toolName=tool_name, input=tool_input, model=model),
        raw_name=as_string(block.get("name")),
    )


BlockHandler = Callable[[ConversionContext, dict[str, Any], Optional[str]], None]

_ROLE_HANDLERS: dict[str, dict[str, BlockHandler]] = {
    "user": {
        "text": _handle_user_text,
        "tool_result": _handle_tool_result,
        "image": _handle_image,
    },
    "assistant": {
        "text": _handle_agent_text,
        "tool_use": _handle_tool_use,
    },
}


def _message_model(message: dict[str, Any]) -> str | None:
    info = as_dict(message.get("modelInfo"))
    model_id = as_string(info.get("modelId"))
    return standardize_model_name(model_id, as_string(info.get("providerId"))) if model_id else None


def _accumulate_usage(ctx: ConversionContext, message: dict[str, Any], model: str | None) -> None:
    tokens = as_dict(as_dict(message.get("metrics")).get("tokens"))
    if not tokens:
        return
    prompt = coerce_int(tokens.get("prompt"))
    completion = coerce_int(tokens.get("completion"))
    cached = coerce_int(tokens.get("cached"))
    usage = TokenUsage(
        inputTokens=prompt + cached,
        cachedInputTokens=cached,
        outputTokens=completion,
        totalTokens=prompt + cached + completion,
    )
    ctx.usage.add(usage)
    if model:
        ctx.add_model_usage(model, usage)


def client_version_from_metadata(metadata: dict[str, Any] | None) -> str | None:
    history = as_list(as_dict(metadata).get("environment_history"))
    return as_string(as_dict(history[0]).get("cline_version")) if history else None


def convert_cline_transcript(
    messages: Any,
    options: ConvertOptions | None = None,
    *,
    metadata: dict[str, Any] | None = None,
    task_id: str | None = None,
) -> ConversionResult | None:
    """Convert an in-memory Cline history.

    ``metadata`` is the parsed ``task_metadata.json``; ``task_id`` becomes the
    transcript id. Returns None when no message survives conversion.
    """
    opts = options or ConvertOptions()
    if not isinstance(messages, list) or not messages:
        return None

    ctx = ConversionContext(source=SOURCE, cwd=opts.cwd, dedupe=False)
    for message in messages:
        if not isinstance(message, dict):
            ctx.skip("non-object message")
            continue
        role = message.get("role")
        handlers = _ROLE_HANDLERS.get(role) if isinstance(role, str) else None
        if handlers is None:
            ctx.skip("role %r", role)
            continue
        model = _message_model(message) if role == "assistant" else None
        if role == "assistant":
            ctx.observe_model(model)
            _accumulate_usage(ctx, message, model)
        for block in as_list(message.get("content")):
            if not isinstance(block, dict):
                continue
            handler = handlers.get(block.get("type"))
            if handler is not None:
                handler(ctx, block, model)

    if not ctx.messages:
        return None

    timestamp: datetime = opts.now or utc_now()
    transcript_id = task_id or f"cline-{int(timestamp.timestamp() * 1000)}"
    transcript = assemble_transcript(
        ctx.messages,
        id=transcript_id,
        source=SOURCE,
        timestamp=timestamp,
        preview=derive_preview(ctx.user_texts),
        summary=None,
        model=ctx.primary_model,
        clientVersion=opts.client_version or client_version_from_metadata(metadata),
        blendedTokens=blended_token_total(ctx.usage),
        costUsd=estimate_cost(ctx.primary_model, ctx.usage, opts.pricing),
        tokenUsage=ctx.usage,
        modelUsage=ctx.model_usage_list(),
        git=None if opts.git_context is UNSET else opts.git_context,
        cwd=format_cwd_with_tilde(ctx.cwd) if ctx.cwd else "",
    )
    if ctx.skipped_records:
        logger.debug("Cline task %s: skipped %d blocks", transcript_id, ctx.skipped_records)
    return ConversionResult(transcript=transcript, blobs=ctx.blobs.blobs)


def _read_json(path: Path, label: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Unable to read Cline %s %s: %s", label, path, exc)
        return None


def load_cline_metadata(history_path: Path) -> dict[str, Any] | None:
    """The ``task_metadata.json`` beside a history file, when present."""
    path = history_path.parent / METADATA_FILENAME
    if not path.is_file():
        return None
    data = _read_json(path, "task metadata")
    return data if isinstance(data, dict) else None


def convert_cline_file(path: Path, options: ConvertOptions | None = None) -> ConversionResult | None:
    """Convert one history file; the task directory name becomes the transcript id."""
    path = Path(path)
    messages = _read_json(path, "history")
    if messages is None:
        return None
    opts = options or ConvertOptions()
    if opts.now is None:
        opts = replace(opts, now=file_mtime(path))
    return convert_cline_transcript(
        messages,
        opts,
        metadata=load_cline_metadata(path),
        task_id=path.parent.name or None,
    )


def convert_cline_files(paths: Iterable[Path], options: ConvertOptions | None = None) -> list[ConversionResult]:
    results: list[ConversionResult] = []
    for path in paths:
        result = convert_cline_file(path, options)
        if result is not None:
            results.append(result)
    return results
