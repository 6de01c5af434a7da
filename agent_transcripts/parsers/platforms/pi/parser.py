"""Convert Pi session trees into unified transcripts.

A Pi session file is JSONL: a ``session`` header line followed by entries
linked through ``parentId``. Rewinds and forks leave several branches in the
same file; only the active branch (see ``resolve_branch``) is converted.
"""
from __future__ import annotations

import json
import logging
import posixpath
from pathlib import Path
from typing import Any, Callable, Iterable

from agent_transcripts.date_utils import parse_iso_datetime, utc_now
from agent_transcripts.model_identity import standardize_model_name
from agent_transcripts.models import (
    AgentMessage,
    CommandMessage,
    CompactionSummaryMessage,
    ConversionResult,
    ImageMessage,
    ImageRef,
    SessionTreeEntry,
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
    coerce_number,
    derive_preview,
)
from agent_transcripts.parsers.session_tree import resolve_branch
from agent_transcripts.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agent_transcripts.pricing import estimate_cost
from agent_transcripts.schema import assemble_transcript

logger = logging.getLogger("agent_transcripts.parsers.pi")

SOURCE = "pi"

TOOL_NAMES: dict[str, str] = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "bash": "Bash",
    "grep": "Grep",
    "find": "Glob",
    "ls": "Ls",
}


def normalize_tool_name(name: str | None) -> str:
    raw = name or "unknown"
    return TOOL_NAMES.get(raw.lower(), raw)


def relativize_pi_path(target: str, cwd: str | None) -> str:
    """Like ``relativize_path`` but absolute paths outside ``cwd`` get the ``~`` form."""
    relative = relativize_path(target, cwd)
    if posixpath.isabs(relative):
        return format_cwd_with_tilde(relative)
    return relative


def sanitize_tool_input(value: Any, cwd: str | None) -> Any:
    if not isinstance(value, dict):
        return value
    record = dict(value)
    if isinstance(record.get("path"), str):
        record["file_path"] = record.pop("path")
    if isinstance(record.get("file_path"), str) and cwd:
        record["file_path"] = relativize_pi_path(record["file_path"], cwd)
    return relativize_paths(record, cwd)


def _content_blocks(ctx: ConversionContext, content: Any) -> tuple[list[str], list[ImageRef]]:
    texts: list[str] = []
    images: list[ImageRef] = []
    for block in as_list(content):
        record = as_dict(block)
        block_type = record.get("type")
        if block_type == "text":
            text = record.get("text")
            if isinstance(text, str) and text:
                texts.append(text)
        elif block_type == "image":
            ref = ctx.blobs.add_base64(record.get("data"), as_string(record.get("mimeType")))
            if ref is not None:
                images.append(ref)
    return texts, images


def sanitize_tool_output(raw_name: str, texts: list[str], details: Any, cwd: str | None) -> Any:
    text_output = "\n".join(texts)
    lowered = raw_name.lower()
    if lowered == "edit" and isinstance(details, dict) and details.get("diff"):
        return {"diff": details["diff"]}
    if lowered == "read" and text_output:
        line_count = len(text_output.split("\n"))
        return {"file": {"content": text_output, "numLines": line_count, "totalLines": line_count}}
    if text_output:
        return text_output
    return relativize_paths(details, cwd)


# ── Message roles ───────────────────────────────────────────────────

def _handle_user(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    content = message.get("content")
    if isinstance(content, str):
        text, images = content, []
    else:
        texts, images = _content_blocks(ctx, content)
        text = "\n\n".join(texts)
    if text.strip():
        ctx.user_texts.append(text)
        ctx.add_message(
            UserMessage(id=entry.id, timestamp=entry.timestamp, text=text, images=images or None)
        )
        return
    for ref in images:
        ctx.add_message(
            ImageMessage(id=entry.id, timestamp=entry.timestamp, sha256=ref.sha256, mediaType=ref.mediaType)
        )


def _accumulate_usage(ctx: ConversionContext, model: str | None, usage: dict[str, Any]) -> None:
    turn_usage = TokenUsage(
        inputTokens=coerce_int(usage.get("input")),
        cachedInputTokens=coerce_int(usage.get("cacheRead")),
        outputTokens=coerce_int(usage.get("output")),
        totalTokens=coerce_int(usage.get("totalTokens")),
    )
    ctx.usage.add(turn_usage)
    if model:
        ctx.add_model_usage(model, turn_usage)
    cost = coerce_number(as_dict(usage.get("cost")).get("total"))
    if cost > 0:
        ctx.recorded_cost += cost


def _handle_assistant(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    model = standardize_model_name(as_string(message.get("model")), as_string(message.get("provider")))
    ctx.observe_model(model)
    usage = message.get("usage")
    if isinstance(usage, dict):
        _accumulate_usage(ctx, model, usage)

    for block in as_list(message.get("content")):
        record = as_dict(block)
        block_type = record.get("type")
        if block_type == "thinking":
            text = record.get("thinking")
            if isinstance(text, str) and text.strip():
                ctx.add_message(ThinkingMessage(id=entry.id, timestamp=entry.timestamp, text=text, model=model))
        elif block_type == "text":
            text = record.get("text")
            if isinstance(text, str) and text.strip():
                ctx.add_message(AgentMessage(id=entry.id, timestamp=entry.timestamp, text=text, model=model))
        elif block_type == "toolCall":
            raw_name = as_string(record.get("name"))
            ctx.add_tool_call(
                ToolCallMessage(
                    id=as_string(record.get("id")),
                    timestamp=entry.timestamp,
                    model=model,
                    toolName=normalize_tool_name(raw_name),
                    input=sanitize_tool_input(record.get("arguments"), ctx.cwd),
                ),
                raw_name,
            )


def _handle_tool_result(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    call_id = as_string(message.get("toolCallId"))
    tool_call = ctx.open_tool_call(call_id)
    if tool_call is None:
        ctx.skip("result for unknown tool call %s", call_id)
        return
    if not ctx.complete_tool_call(call_id):
        ctx.skip("duplicate result for tool call %s", call_id)
        return
    raw_name = as_string(message.get("toolName")) or ctx.tool_raw_names.get(call_id or "", "")
    texts, images = _content_blocks(ctx, message.get("content"))
    tool_call.output = sanitize_tool_output(raw_name, texts, message.get("details"), ctx.cwd)
    if images:
        tool_call.images = images
    if message.get("isError") is True:
        tool_call.isError = True


def _handle_bash_execution(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    output = message.get("output")
    ctx.add_message(
        CommandMessage(
            id=entry.id,
            timestamp=entry.timestamp,
            name="!!" if message.get("excludeFromContext") else "!",
            args=message.get("command") if isinstance(message.get("command"), str) else None,
            output=output if isinstance(output, str) and output else None,
        )
    )


def _handle_compaction_summary(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    summary = message.get("summary")
    if isinstance(summary, str):
        ctx.add_message(CompactionSummaryMessage(id=entry.id, timestamp=entry.timestamp, text=summary))


def _handle_branch_summary(ctx: ConversionContext, entry: SessionTreeEntry, message: dict[str, Any]) -> None:
    summary = message.get("summary")
    if isinstance(summary, str):
        ctx.add_message(AgentMessage(id=entry.id, timestamp=entry.timestamp, text=f"[Branch summary] {summary}"))


_ROLE_HANDLERS: dict[str, Callable[[ConversionContext, SessionTreeEntry, dict[str, Any]], None]] = {
    "user": _handle_user,
    "assistant": _handle_assistant,
    "toolResult": _handle_tool_result,
    "bashExecution": _handle_bash_execution,
    "compactionSummary": _handle_compaction_summary,
    "branchSummary": _handle_branch_summary,
}


def _convert_entry(ctx: ConversionContext, entry: SessionTreeEntry) -> None:
    payload = entry.payload
    entry_type = payload.get("type")
    if entry_type == "compaction":
        summary = payload.get("summary")
        if isinstance(summary, str):
            ctx.add_message(CompactionSummaryMessage(id=entry.id, timestamp=entry.timestamp, text=summary))
        return
    if entry_type != "message":
        return
    message = as_dict(payload.get("message"))
    role = as_string(message.get("role")) or ""
    if role == "custom":
        return
    handler = _ROLE_HANDLERS.get(role)
    if handler is None:
        ctx.skip("unknown message role %r in entry %s", role, entry.id)
        return
    handler(ctx, entry, message)


# ── Transcript assembly ─────────────────────────────────────────────

def convert_pi_transcript(
    session: Any,
    options: ConvertOptions | None = None,
) -> ConversionResult | None:
    """Convert a ``{header, entries}`` Pi session along its active branch.

    ``options.leaf_id`` selects a specific branch tip.
    """
    opts = options or ConvertOptions()
    record = as_dict(session)
    header = as_dict(record.get("header"))
    entries = as_list(record.get("entries"))
    if not entries:
        return None

    branch = resolve_branch(entries, opts.leaf_id)
    if branch is None:
        return None

    session_id = as_string(header.get("id")) or branch.entries[0].id
    ctx = ConversionContext(source=SOURCE, cwd=opts.cwd or as_string(header.get("cwd")))
    for entry in branch.entries:
        _convert_entry(ctx, entry)

    if not ctx.messages:
        return None

    usage = ctx.usage
    model = ctx.primary_model
    if ctx.recorded_cost > 0:
        cost = ctx.recorded_cost
    else:
        cost = estimate_cost(model, usage, opts.pricing)

    transcript_id = branch.transcript_id(session_id)
    transcript = assemble_transcript(
        ctx.messages,
        id=transcript_id,
        source=SOURCE,
        timestamp=parse_iso_datetime(header.get("timestamp")) or opts.now or utc_now(),
        preview=derive_preview(ctx.user_texts),
        summary=None,
        model=model,
        clientVersion=opts.client_version,
        blendedTokens=blended_token_total(usage),
        costUsd=cost,
        tokenUsage=usage,
        modelUsage=ctx.model_usage_list(),
        git=opts.git_context if opts.git_context is not UNSET else None,
        cwd=format_cwd_with_tilde(ctx.cwd) if ctx.cwd else "",
    )
    logger.debug(
        "Pi session %s: %d of %d entries on branch ending at %s",
        transcript_id,
        len(branch.entries),
        len(entries),
        branch.leaf_id,
    )
    return ConversionResult(transcript=transcript, blobs=ctx.blobs.blobs)


def load_pi_session(path: Path) -> dict[str, Any] | None:
    """Read a Pi JSONL file into ``{header, entries}``; None when the header is unusable."""
    try:
        lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read Pi session %s: %s", path, exc)
        return None
    if not lines:
        return None
    try:
        header = json.loads(lines[0])
    except json.JSONDecodeError:
        logger.warning("Pi session %s has a malformed header line", path)
        return None
    if not isinstance(header, dict):
        return None

    entries: list[dict[str, Any]] = []
    for line in lines[1:]:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return {"header": header, "entries": entries}


def convert_pi_file(path: Path, options: ConvertOptions | None = None) -> ConversionResult | None:
    session = load_pi_session(Path(path))
    if session is None:
        return None
    return convert_pi_transcript(session, options)


def convert_pi_files(paths: Iterable[Path], options: ConvertOptions | None = None) -> list[ConversionResult]:
    results: list[ConversionResult] = []
    for path in paths:
        result = convert_pi_file(path, options)
        if result is not None:
            results.append(result)
    return results
