"""Convert Codex CLI event streams into unified transcripts."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from agent_transcripts.blobs import is_image_placeholder, strip_image_placeholders
from agent_transcripts.date_utils import iso_to_epoch, parse_iso_datetime, utc_now
from agent_transcripts.git import build_git_context
from agent_transcripts.model_identity import standardize_model_name
from agent_transcripts.models import (
    AgentMessage,
    ConversionResult,
    GitContext,
    ImageMessage,
    ImageRef,
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
    blended_token_total,
    coerce_int,
    collapse_whitespace,
    derive_preview,
    is_ignorable_user_text,
    parse_json_string,
)
from agent_transcripts.parsers.shell_commands import (
    build_bash_input,
    normalize_apply_patch_output,
    normalize_exec_command_output,
    normalize_shell_output,
    parse_apply_patch,
    reinterpret_shell_call,
)
from agent_transcripts.paths import format_cwd_with_tilde, relativize_path, relativize_paths
from agent_transcripts.pricing import estimate_cost
from agent_transcripts.schema import assemble_transcript

logger = logging.getLogger("agent_transcripts.parsers.codex")

SOURCE = "codex"

TOOL_NAMES: dict[str, str] = {
    "shell": "Bash",
    "exec_command": "Bash",
    "apply_patch": "Edit",
}
_SHELL_TOOLS = {"shell", "exec_command"}
_USER_TEXT_TYPES = {"input_text", "text", "output_text"}
_USER_IMAGE_TYPES = {"input_image", "image"}


@dataclass
class CodexEvent:
    type: str
    timestamp: str | None
    payload: dict[str, Any] | None


@dataclass
class CodexSessionMeta:
    id: str | None = None
    cwd: str | None = None
    cli_version: str | None = None
    branch: str | None = None
    repository_url: str | None = None


class _CodexState:
    """Codex-specific running state layered on the shared conversion context."""

    def __init__(self, options: ConvertOptions) -> None:
        self.options = options
        self.ctx = ConversionContext(source=SOURCE)
        self.session_meta: CodexSessionMeta | None = None
        self.previous_total = TokenUsage()
        self.latest_timestamp: str | None = None
        self.current_model: str | None = None

    def agent_model(self) -> str | None:
        self.ctx.observe_model(self.current_model)
        return self.current_model


# ── Record decoding ─────────────────────────────────────────────────

def normalize_events(events: Iterable[Any]) -> list[CodexEvent]:
    """Keep records with a type; a non-object payload becomes None."""
    normalized: list[CodexEvent] = []
    for event in events:
        if not isinstance(event, dict):
            continue
        event_type = as_string(event.get("type"))
        if not event_type:
            continue
        payload = event.get("payload")
        normalized.append(
            CodexEvent(
                type=event_type,
                timestamp=as_string(event.get("timestamp")),
                payload=payload if isinstance(payload, dict) else None,
            )
        )
    return normalized


def extract_session_meta(payload: dict[str, Any]) -> CodexSessionMeta:
    git = as_dict(payload.get("git"))
    return CodexSessionMeta(
        id=as_string(payload.get("id")),
        cwd=as_string(payload.get("cwd")),
        cli_version=as_string(payload.get("cli_version", payload.get("cliVersion"))),
        branch=as_string(git.get("branch")),
        repository_url=as_string(git.get("repository_url", git.get("repositoryUrl"))),
    )


def _first_present(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


_USAGE_KEYS = {
    "last": ("last_token_usage", "lastTokenUsage"),
    "total": ("total_token_usage", "totalTokenUsage"),
}


def extract_token_usage(info: Any, kind: str = "total") -> TokenUsage | None:
    """Read the ``last`` (per-turn) or ``total`` (cumulative) snapshot from ``token_count`` info."""
    record = as_dict(info)
    if not record:
        return None
    usage = _first_present(record, *_USAGE_KEYS[kind])
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        inputTokens=coerce_int(_first_present(usage, "input_tokens", "inputTokens")),
        cachedInputTokens=coerce_int(_first_present(usage, "cached_input_tokens", "cachedInputTokens")),
        outputTokens=coerce_int(_first_present(usage, "output_tokens", "outputTokens")),
        reasoningOutputTokens=coerce_int(
            _first_present(usage, "reasoning_output_tokens", "reasoningOutputTokens")
        ),
        totalTokens=coerce_int(_first_present(usage, "total_tokens", "totalTokens")),
    )


def usage_delta(current: TokenUsage, previous: TokenUsage) -> TokenUsage:
    """Per-field ``max(0, current - previous)``.

    A counter reset mid-stream yields zero for that snapshot rather than
    recovering the tokens spent after the reset.
    """
    return TokenUsage(
        inputTokens=max(0, current.inputTokens - previous.inputTokens),
        cachedInputTokens=max(0, current.cachedInputTokens - previous.cachedInputTokens),
        outputTokens=max(0, current.outputTokens - previous.outputTokens),
        reasoningOutputTokens=max(0, current.reasoningOutputTokens - previous.reasoningOutputTokens),
        totalTokens=max(0, current.totalTokens - previous.totalTokens),
    )


def extract_text_pieces(value: Any) -> list[str]:
    if isinstance(value, str):
        normalized = collapse_whitespace(value)
        return [normalized] if normalized else []
    pieces: list[str] = []
    for part in as_list(value):
        if isinstance(part, str):
            text = part
        elif isinstance(part, dict):
            text = as_string(_first_present(part, "text", "content")) or ""
        else:
            continue
        normalized = collapse_whitespace(text)
        if normalized:
            pieces.append(normalized)
    return pieces


def _image_url(record: dict[str, Any]) -> str | None:
    raw = _first_present(record, "image_url", "imageUrl", "url")
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        return as_string(raw.get("url"))
    return None


def extract_user_content(value: Any, ctx: ConversionContext) -> tuple[list[str], list[ImageRef]]:
    """Split user content into text pieces and extracted image references."""
    texts: list[str] = []
    images: list[ImageRef] = []

    def push_text(text: str | None) -> None:
        if not text:
            return
        cleaned = strip_image_placeholders(text)
        if not cleaned.strip() or is_image_placeholder(cleaned):
            return
        texts.append(cleaned)

    if isinstance(value, str):
        push_text(value)
        return texts, images

    for part in as_list(value):
        if isinstance(part, str):
            push_text(part)
            continue
        if not isinstance(part, dict):
            continue
        part_type = as_string(part.get("type"))
        if part_type in _USER_TEXT_TYPES:
            push_text(as_string(_first_present(part, "text", "content")))
            continue
        if part_type in _USER_IMAGE_TYPES or _image_url(part):
            ref = ctx.blobs.add_data_url(_image_url(part))
            if ref is not None:
                images.append(ref)
                continue
            if part_type in _USER_IMAGE_TYPES:
                continue
        push_text(as_string(_first_present(part, "text", "content")))
    return texts, images


def extract_reasoning(payload: dict[str, Any]) -> list[str]:
    pieces: list[str] = []
    for entry in as_list(payload.get("summary")):
        text = as_string(as_dict(entry).get("text"))
        normalized = collapse_whitespace(text or "")
        if normalized:
            pieces.append(normalized)
    for entry in as_list(payload.get("content")):
        record = as_dict(entry)
        if as_string(record.get("type")) not in {"reasoning", "text"}:
            continue
        text = as_string(_first_present(record, "text", "content"))
        normalized = collapse_whitespace(text or "")
        if normalized:
            pieces.append(normalized)
    return pieces


# ── Tool calls ──────────────────────────────────────────────────────

def sanitize_function_call_input(value: Any, cwd: str | None) -> Any:
    if not isinstance(value, dict):
        return value
    record = dict(value)
    if isinstance(record.get("workdir"), str) and cwd:
        record["workdir"] = relativize_path(record["workdir"], cwd)
    return record


def sanitize_custom_tool_input(raw_name: str | None, value: Any, cwd: str | None) -> Any:
    if raw_name == "apply_patch":
        text = as_string(value)
        if text:
            parsed = parse_apply_patch(text, cwd)
            if parsed:
                return parsed
    return value


def sanitize_tool_call(message: ToolCallMessage, cwd: str | None, raw_name: str | None) -> None:
    """Canonicalize tool name and input, then relativize paths in place."""
    if raw_name in _SHELL_TOOLS:
        message.toolName = "Bash"
        message.input = build_bash_input(message.input)
    elif raw_name == "apply_patch":
        message.toolName = "Edit"
        if isinstance(message.input, dict):
            record = dict(message.input)
            file_path = as_string(record.get("file_path"))
            if file_path and cwd:
                record["file_path"] = relativize_path(file_path, cwd)
            message.input = record
    if cwd:
        message.input = relativize_paths(message.input, cwd)
        message.output = relativize_paths(message.output, cwd)


def attach_tool_output(message: ToolCallMessage, output: Any, cwd: str | None, raw_name: str | None) -> None:
    if raw_name == "shell":
        output = normalize_shell_output(output)
    elif raw_name == "exec_command":
        output = normalize_exec_command_output(output)
    elif raw_name == "apply_patch":
        output = normalize_apply_patch_output(output)
    message.output = output

    if raw_name in _SHELL_TOOLS and reinterpret_shell_call(message, cwd):
        return
    sanitize_tool_call(message, cwd, raw_name)


# ── Event handlers ──────────────────────────────────────────────────

def _handle_session_meta(state: _CodexState, event: CodexEvent) -> None:
    state.session_meta = extract_session_meta(event.payload or {})
    if not state.ctx.cwd:
        state.ctx.cwd = state.session_meta.cwd


def _handle_turn_context(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    cwd = as_string(payload.get("cwd"))
    if cwd:
        state.ctx.cwd = cwd
    model = as_string(payload.get("model"))
    if model:
        state.current_model = standardize_model_name(model)


def _handle_event_msg(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    if as_string(payload.get("type")) != "token_count":
        # Other event messages mirror response items.
        return
    info = payload.get("info")
    last_usage = extract_token_usage(info, "last")
    total_usage = extract_token_usage(info, "total")
    delta: TokenUsage | None = None
    if last_usage is not None:
        delta = last_usage
    elif total_usage is not None:
        delta = usage_delta(total_usage, state.previous_total)
    if delta is not None:
        state.ctx.usage.add(delta)
    if total_usage is not None:
        state.previous_total = total_usage


def _handle_message(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    ctx = state.ctx
    role = as_string(payload.get("role"))
    message_id = as_string(payload.get("id"))

    if role == "user":
        texts, images = extract_user_content(payload.get("content"), ctx)
        text = collapse_whitespace("\n\n".join(texts))
        if not text and not images:
            return
        if text and is_ignorable_user_text(text):
            return
        if not text:
            for ref in images:
                ctx.add_message(
                    ImageMessage(id=message_id, timestamp=event.timestamp, sha256=ref.sha256, mediaType=ref.mediaType)
                )
            return
        ctx.user_texts.append(text)
        ctx.add_message(
            UserMessage(id=message_id, timestamp=event.timestamp, text=text, images=images or None)
        )
    elif role == "assistant":
        text = collapse_whitespace("\n\n".join(extract_text_pieces(payload.get("content"))))
        if not text:
            return
        ctx.add_message(
            AgentMessage(id=message_id, timestamp=event.timestamp, text=text, model=state.agent_model())
        )


def _handle_reasoning(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    message_id = as_string(payload.get("id"))
    for text in extract_reasoning(payload):
        state.ctx.add_message(
            ThinkingMessage(id=message_id, timestamp=event.timestamp, text=text, model=state.agent_model())
        )


def _open_tool_call(state: _CodexState, event: CodexEvent, tool_input: Any, raw_name: str | None) -> None:
    payload = event.payload or {}
    call_id = as_string(payload.get("call_id")) or as_string(payload.get("id"))
    message = ToolCallMessage(
        id=call_id,
        timestamp=event.timestamp,
        model=state.agent_model(),
        toolName=TOOL_NAMES.get(raw_name or "", raw_name or "unknown"),
        input=tool_input,
    )
    sanitize_tool_call(message, state.ctx.cwd, raw_name)
    state.ctx.add_tool_call(message, raw_name)


def _handle_function_call(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    raw_name = as_string(payload.get("name"))
    arguments = parse_json_string(payload.get("arguments"))
    _open_tool_call(state, event, sanitize_function_call_input(arguments, state.ctx.cwd), raw_name)


def _handle_custom_tool_call(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    raw_name = as_string(payload.get("name"))
    _open_tool_call(state, event, sanitize_custom_tool_input(raw_name, payload.get("input"), state.ctx.cwd), raw_name)


def _handle_tool_output(state: _CodexState, event: CodexEvent) -> None:
    payload = event.payload or {}
    call_id = as_string(payload.get("call_id"))
    message = state.ctx.open_tool_call(call_id)
    if message is None:
        state.ctx.skip("output for unknown call %s", call_id)
        return
    if not state.ctx.complete_tool_call(call_id):
        state.ctx.skip("duplicate output for call %s", call_id)
        return
    raw_name = state.ctx.tool_raw_names.get(call_id or "")
    attach_tool_output(message, parse_json_string(payload.get("output")), state.ctx.cwd, raw_name)


_RESPONSE_ITEM_HANDLERS: dict[str, Callable[[_CodexState, CodexEvent], None]] = {
    "message": _handle_message,
    "reasoning": _handle_reasoning,
    "function_call": _handle_function_call,
    "function_call_output": _handle_tool_output,
    "custom_tool_call": _handle_custom_tool_call,
    "custom_tool_call_output": _handle_tool_output,
}

_EVENT_HANDLERS: dict[str, Callable[[_CodexState, CodexEvent], None]] = {
    "session_meta": _handle_session_meta,
    "turn_context": _handle_turn_context,
    "event_msg": _handle_event_msg,
}


def _dispatch(state: _CodexState, event: CodexEvent) -> None:
    if event.payload is None:
        state.ctx.skip("%s event without payload", event.type)
        return
    if event.type == "response_item":
        handler = _RESPONSE_ITEM_HANDLERS.get(as_string(event.payload.get("type")) or "")
    else:
        handler = _EVENT_HANDLERS.get(event.type)
    if handler is not None:
        handler(state, event)


# ── Transcript assembly ─────────────────────────────────────────────

def _git_context(state: _CodexState) -> GitContext | None:
    if state.options.git_context is not UNSET:
        return state.options.git_context
    meta = state.session_meta
    if meta is None:
        return GitContext()
    return build_git_context(meta.repository_url, meta.branch, state.ctx.cwd or meta.cwd)


def convert_codex_transcript(
    events: Iterable[Any],
    options: ConvertOptions | None = None,
) -> ConversionResult | None:
    """Convert an in-memory list of Codex ``{type, timestamp, payload}`` events.

    Returns None when nothing convertible was found.
    """
    opts = options or ConvertOptions()
    parsed_events = normalize_events(events)
    if not parsed_events:
        return None

    state = _CodexState(opts)
    for event in parsed_events:
        if event.timestamp and (
            state.latest_timestamp is None
            or iso_to_epoch(event.timestamp) > iso_to_epoch(state.latest_timestamp)
        ):
            state.latest_timestamp = event.timestamp
        _dispatch(state, event)

    ctx = state.ctx
    if not ctx.messages:
        return None

    timestamp = parse_iso_datetime(state.latest_timestamp) or opts.now or utc_now()
    meta = state.session_meta
    usage = ctx.usage
    model = ctx.primary_model
    transcript_id = (meta.id if meta else None) or ctx.messages[0].id or f"codex-{int(timestamp.timestamp() * 1000)}"

    transcript = assemble_transcript(
        ctx.messages,
        id=transcript_id,
        source=SOURCE,
        timestamp=timestamp,
        preview=derive_preview(ctx.user_texts),
        summary=None,
        model=model,
        clientVersion=opts.client_version or (meta.cli_version if meta else None),
        blendedTokens=blended_token_total(usage),
        costUsd=estimate_cost(model, usage, opts.pricing),
        tokenUsage=usage,
        modelUsage=[ModelUsage(model=model, usage=usage)] if model else [],
        git=_git_context(state),
        cwd=format_cwd_with_tilde(ctx.cwd) if ctx.cwd else "",
    )
    if ctx.skipped_records:
        logger.debug("Codex session %s: skipped %d records", transcript_id, ctx.skipped_records)
    return ConversionResult(transcript=transcript, blobs=ctx.blobs.blobs)


def load_codex_events(path: Path) -> list[dict[str, Any]] | None:
    """Read a Codex JSONL file, skipping blank and malformed lines."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Unable to read Codex session %s: %s", path, exc)
        return None
    events: list[dict[str, Any]] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            events.append(record)
    return events


def convert_codex_file(path: Path, options: ConvertOptions | None = None) -> ConversionResult | None:
    events = load_codex_events(Path(path))
    if not events:
        return None
    return convert_codex_transcript(events, options)


def convert_codex_files(paths: Iterable[Path], options: ConvertOptions | None = None) -> list[ConversionResult]:
    """Convert several Codex files; unreadable or empty sessions are skipped."""
    results: list[ConversionResult] = []
    for path in paths:
        result = convert_codex_file(path, options)
        if result is not None:
            results.append(result)
    return results
