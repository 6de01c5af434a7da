"""Convert OpenCode session exports (``opencode export``) into unified transcripts."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable

from agent_transcripts.date_utils import epoch_ms_to_iso, parse_iso_datetime, utc_now
from agent_transcripts.model_identity import standardize_model_name
from agent_transcripts.models import (
    AgentMessage,
    ConversionResult,
    GitContext,
    ModelUsage,
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
    coerce_int,
    coerce_number,
    truncate,
)
from agent_transcripts.paths import format_cwd_with_tilde, relative_cwd_between, relativize_path
from agent_transcripts.pricing import estimate_cost
from agent_transcripts.schema import assemble_transcript

logger = logging.getLogger("agent_transcripts.parsers.opencode")

SOURCE = "opencode"

TOOL_NAMES: dict[str, str] = {
    "shell": "Bash",
    "bash": "Bash",
    "read_file": "Read",
    "read": "Read",
    "write_file": "Write",
    "write": "Write",
    "edit_file": "Edit",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "find": "Glob",
    "list_files": "Glob",
}

_PATH_KEYS = ("file_path", "path", "workdir")
_SKIPPED_PARTS = {"step-start", "step-finish"}


def normalize_tool_name(name: str | None) -> str:
    raw = name or "unknown"
    return TOOL_NAMES.get(raw.lower(), raw)


def model_identifier(info: dict[str, Any]) -> str | None:
    """``providerID/modelID`` from message info, falling back to its ``model`` object."""
    nested = as_dict(info.get("model"))
    model_id = as_string(info.get("modelID")) or as_string(nested.get("modelID"))
    provider_id = as_string(info.get("providerID")) or as_string(nested.get("providerID"))
    return standardize_model_name(model_id, provider_id)


def _created_ms(message: dict[str, Any]) -> float:
    return coerce_number(as_dict(as_dict(message.get("info")).get("time")).get("created"))


def sort_messages(messages: Iterable[Any]) -> list[dict[str, Any]]:
    records = [message for message in messages if isinstance(message, dict)]
    return sorted(records, key=_created_ms)


def derive_opencode_preview(user_texts: list[str]) -> str | None:
    """First user text that is not tag-wrapped, unquoted and truncated."""
    for text in user_texts:
        trimmed = text.strip()
        if not trimmed:
            continue
        if trimmed.startswith("<") and ">" in trimmed:
            continue
        if trimmed[:1] in {'"', "'"}:
            trimmed = trimmed[1:]
        if trimmed[-1:] in {'"', "'"}:
            trimmed = trimmed[:-1]
        return truncate(trimmed)
    if user_texts:
        return truncate(user_texts[0])
    return None


def sanitize_tool_input(value: Any, cwd: str | None) -> Any:
    if not isinstance(value, dict):
        return value
    record = dict(value)
    if "filePath" in record:
        file_path = record.pop("filePath")
        record.setdefault("file_path", file_path)
    if cwd:
        for key in _PATH_KEYS:
            if isinstance(record.get(key), str):
                record[key] = relativize_path(record[key], cwd)
    return record


def sanitize_tool_output(tool_name: str, output: Any, metadata: Any) -> Any:
    """Prefer the structured ``state.metadata`` view of a tool result."""
    meta = metadata if isinstance(metadata, dict) else None
    if tool_name == "Bash" and meta is not None:
        result: dict[str, Any] = {}
        if isinstance(meta.get("output"), str):
            result["stdout"] = meta["output"]
        if isinstance(meta.get("exit"), (int, float)) and not isinstance(meta.get("exit"), bool):
            result["exitCode"] = meta["exit"]
        if isinstance(meta.get("description"), str):
            result["description"] = meta["description"]
        return result or output
    if tool_name == "Read" and meta and meta.get("preview"):
        return {"content": meta["preview"]}
    if tool_name == "Edit" and meta and meta.get("filediff"):
        filediff = as_dict(meta.get("filediff"))
        return {
            "diff": meta.get("diff"),
            "additions": filediff.get("additions"),
            "deletions": filediff.get("deletions"),
        }
    if tool_name == "Write" and meta is not None:
        return {"created": not meta.get("exists")}
    return output


# ── Part handlers ───────────────────────────────────────────────────

class _Turn:
    """One exported message with the fields its parts share."""

    def __init__(self, info: dict[str, Any]) -> None:
        self.info = info
        self.id = as_string(info.get("id"))
        self.role = as_string(info.get("role"))
        self.timestamp = epoch_ms_to_iso(as_dict(info.get("time")).get("created"))
        self.model = model_identifier(info)


def _handle_text(ctx: ConversionContext, turn: _Turn, part: dict[str, Any]) -> None:
    text = as_string(part.get("text"))
    if not text:
        return
    if turn.role == "user":
        ctx.user_texts.append(text)
        ctx.add_message(UserMessage(id=turn.id, timestamp=turn.timestamp, text=text))
    else:
        ctx.add_message(AgentMessage(id=turn.id, timestamp=turn.timestamp, text=text, model=turn.model))


def _handle_reasoning(ctx: ConversionContext, turn: _Turn, part: dict[str, Any]) -> None:
    text = as_string(part.get("text"))
    if text:
        ctx.add_message(ThinkingMessage(timestamp=turn.timestamp, text=text, model=turn.model))


def _handle_tool(ctx: ConversionContext, turn: _Turn, part: dict[str, Any]) -> None:
    tool_name = normalize_tool_name(as_string(part.get("tool")))
    state = as_dict(part.get("state"))
    error = as_string(state.get("error"))
    ctx.add_tool_call(
        ToolCallMessage(
            id=as_string(part.get("callID")),
            timestamp=turn.timestamp,
            model=turn.model,
            toolName=tool_name,
            input=sanitize_tool_input(state.get("input"), ctx.cwd),
            output=sanitize_tool_output(tool_name, state.get("output"), state.get("metadata")),
            error=error,
            isError=state.get("status") == "error" or bool(error),
        )
    )


_PART_HANDLERS: dict[str, Callable[[ConversionContext, _Turn, dict[str, Any]], None]] = {
    "text": _handle_text,
    "reasoning": _handle_reasoning,
    "tool": _handle_tool,
}


def _accumulate_usage(ctx: ConversionContext, turn: _Turn) -> None:
    if turn.role != "assistant":
        return
    ctx.observe_model(turn.model)
    tokens = as_dict(turn.info.get("tokens"))
    if tokens:
        input_tokens = coerce_int(tokens.get("input"))
        output_tokens = coerce_int(tokens.get("output"))
        ctx.usage.add(
            TokenUsage(
                inputTokens=input_tokens,
                cachedInputTokens=coerce_int(as_dict(tokens.get("cache")).get("read")),
                outputTokens=output_tokens,
                reasoningOutputTokens=coerce_int(tokens.get("reasoning")),
                totalTokens=input_tokens + output_tokens,
            )
        )
    cost = coerce_number(turn.info.get("cost"))
    if cost > 0:
        ctx.recorded_cost += cost


def _relative_cwd(messages: list[dict[str, Any]]) -> str | None:
    for message in messages:
        path = as_dict(as_dict(message.get("info")).get("path"))
        root = as_string(path.get("root"))
        cwd = as_string(path.get("cwd"))
        if root and cwd:
            return relative_cwd_between(root, cwd)
    return None


# ── Transcript assembly ─────────────────────────────────────────────

def convert_opencode_transcript(
    data: Any,
    options: ConvertOptions | None = None,
) -> ConversionResult | None:
    """Convert an ``{info, messages}`` OpenCode export.

    Returns None when the export carries no convertible messages.
    """
    opts = options or ConvertOptions()
    record = as_dict(data)
    info = as_dict(record.get("info"))
    messages = sort_messages(as_list(record.get("messages")))
    if not messages:
        return None

    ctx = ConversionContext(source=SOURCE, cwd=opts.cwd or as_string(info.get("directory")))
    for message in messages:
        turn = _Turn(as_dict(message.get("info")))
        _accumulate_usage(ctx, turn)
        for part in as_list(message.get("parts")):
            if not isinstance(part, dict):
                ctx.skip("non-object part in message %s", turn.id)
                continue
            part_type = as_string(part.get("type")) or ""
            if part_type in _SKIPPED_PARTS:
                continue
            handler = _PART_HANDLERS.get(part_type)
            if handler is None:
                ctx.skip("unknown part type %r", part_type)
                continue
            handler(ctx, turn, part)

    if not ctx.messages:
        return None

    usage = ctx.usage
    model = ctx.primary_model
    if ctx.recorded_cost > 0:
        cost = ctx.recorded_cost
    else:
        cost = estimate_cost(model, usage, opts.pricing, subtract_cached=False)

    if opts.git_context is not UNSET:
        git = opts.git_context
    else:
        git = GitContext(relativeCwd=_relative_cwd(messages))

    timestamp = parse_iso_datetime(as_dict(info.get("time")).get("created")) or opts.now or utc_now()
    transcript_id = as_string(info.get("id")) or f"opencode-{int(timestamp.timestamp() * 1000)}"

    transcript = assemble_transcript(
        ctx.messages,
        id=transcript_id,
        source=SOURCE,
        timestamp=timestamp,
        preview=derive_opencode_preview(ctx.user_texts),
        summary=as_string(info.get("title")),
        model=model,
        clientVersion=opts.client_version or as_string(info.get("version")),
        blendedTokens=usage.inputTokens + usage.outputTokens,
        costUsd=cost,
        tokenUsage=usage,
        modelUsage=[ModelUsage(model=model, usage=usage)] if model else [],
        git=git,
        cwd=format_cwd_with_tilde(ctx.cwd) if ctx.cwd else "",
    )
    if ctx.skipped_records:
        logger.debug("OpenCode session %s: skipped %d parts", transcript_id, ctx.skipped_records)
    return ConversionResult(transcript=transcript, blobs=ctx.blobs.blobs)


def load_opencode_export(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Unable to read OpenCode export %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("OpenCode export %s is not a JSON object", path)
        return None
    return data


def convert_opencode_file(path: Path, options: ConvertOptions | None = None) -> ConversionResult | None:
    data = load_opencode_export(Path(path))
    if data is None:
        return None
    return convert_opencode_transcript(data, options)


def convert_opencode_files(paths: Iterable[Path], options: ConvertOptions | None = None) -> list[ConversionResult]:
    results: list[ConversionResult] = []
    for path in paths:
        result = convert_opencode_file(path, options)
        if result is not None:
            results.append(result)
    return results
