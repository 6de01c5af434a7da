"""Per-conversion state and field coercion helpers shared by the decoders."""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agent_transcripts import config
from agent_transcripts.blobs import BlobStore
from agent_transcripts.models import ModelUsage, PricingTable, TokenUsage, ToolCallMessage

logger = logging.getLogger("agent_transcripts.parsers")

_WHITESPACE_RUN = re.compile(r"\s+")

# Lower-cased prefixes of harness-injected user turns.
IGNORED_USER_PREFIXES = (
    "<user_instructions",
    "<environment_context",
    "# agents.md instructions for",
    "<permissions instructions>",
)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class ConvertOptions:
    """Caller-supplied overrides for a single conversion.

    ``git_context`` distinguishes "not provided" (``UNSET``) from an explicit
    ``None``, which suppresses git context derivation entirely.
    """

    now: datetime | None = None
    git_context: Any = UNSET
    pricing: PricingTable | None = None
    client_version: str | None = None
    cwd: str | None = None
    leaf_id: str | None = None


# ── Coercion helpers ────────────────────────────────────────────────

def as_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def coerce_number(value: Any, default: float = 0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return value


def coerce_int(value: Any, default: int = 0) -> int:
    number = coerce_number(value, default)
    try:
        return int(number)
    except (TypeError, ValueError, OverflowError):
        return default


def parse_json_string(value: Any) -> Any:
    """Decode JSON embedded in a string; anything else is returned unchanged."""
    text = as_string(value)
    if not text:
        return value
    try:
        return json.loads(text)
    except ValueError:
        return value


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RUN.sub(" ", value or "").strip()


def truncate(value: str, max_length: int | None = None) -> str:
    limit = config.PREVIEW_MAX_LENGTH if max_length is None else max_length
    if len(value) <= limit:
        return value
    if limit <= 1:
        return value[:limit]
    return f"{value[:limit - 1]}…"


def is_ignorable_user_text(text: str) -> bool:
    lowered = text.strip().lower()
    return any(lowered.startswith(prefix) for prefix in IGNORED_USER_PREFIXES)


def derive_preview(user_texts: list[str]) -> str | None:
    """Pick the first user text that is not harness boilerplate."""
    for text in user_texts:
        collapsed = collapse_whitespace(text)
        if not collapsed or is_ignorable_user_text(collapsed):
            continue
        return collapsed
    if user_texts:
        return collapse_whitespace(user_texts[0]) or None
    return None


def message_signature(message: Any) -> str | None:
    """Build the dedup key for a message, or None when it has no stable identity."""
    message_type = getattr(message, "type", "")
    stamp = getattr(message, "timestamp", None) or ""
    if message_type == "tool-call":
        return f"tool-call|{stamp}|{message.id or ''}|{message.toolName}"
    if message_type == "command":
        return f"command|{stamp}|{message.name}|{message.args or ''}"
    if message_type == "image":
        return f"image|{stamp}|{message.sha256}"
    text = getattr(message, "text", None)
    if isinstance(text, str):
        return f"{message_type}|{stamp}|{text}"
    return None


# ── Conversion context ──────────────────────────────────────────────

@dataclass
class ConversionContext:
    """Mutable state scoped to one conversion call."""

    source: str
    cwd: str | None = None
    messages: list[Any] = field(default_factory=list)
    blobs: BlobStore = field(default_factory=BlobStore)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model_usage: dict[str, TokenUsage] = field(default_factory=dict)
    primary_model: str | None = None
    user_texts: list[str] = field(default_factory=list)
    recorded_cost: float = 0.0
    tool_calls_by_id: dict[str, int] = field(default_factory=dict)
    tool_raw_names: dict[str, str] = field(default_factory=dict)
    completed_tool_calls: set[str] = field(default_factory=set)
    seen_signatures: set[str] = field(default_factory=set)
    dedupe: bool = True
    skipped_records: int = 0

    def add_message(self, message: Any) -> int | None:
        """Append a message unless an identical one was already emitted.

        Returns the index of the stored message, or the index of the earlier
        duplicate for tool calls so later output still lands on it.
        """
        signature = message_signature(message) if self.dedupe else None
        if signature is not None and signature in self.seen_signatures:
            if isinstance(message, ToolCallMessage) and message.id:
                return self.tool_calls_by_id.get(message.id)
            return None
        self.messages.append(message)
        if signature is not None:
            self.seen_signatures.add(signature)
        return len(self.messages) - 1

    def add_tool_call(self, message: ToolCallMessage, raw_name: str | None = None) -> int | None:
        index = self.add_message(message)
        if index is not None:
            key = message.id or ""
            self.tool_calls_by_id.setdefault(key, index)
            if raw_name:
                self.tool_raw_names.setdefault(key, raw_name)
        return index

    def open_tool_call(self, call_id: str | None) -> ToolCallMessage | None:
        if call_id is None:
            return None
        index = self.tool_calls_by_id.get(call_id)
        if index is None:
            return None
        message = self.messages[index]
        return message if isinstance(message, ToolCallMessage) else None

    def complete_tool_call(self, call_id: str | None) -> bool:
        """Mark a call as answered; False when its output was already attached."""
        key = call_id or ""
        if key in self.completed_tool_calls:
            return False
        self.completed_tool_calls.add(key)
        return True

    def observe_model(self, model: str | None) -> None:
        if model and not self.primary_model:
            self.primary_model = model

    def add_model_usage(self, model: str, usage: TokenUsage) -> None:
        self.model_usage.setdefault(model, TokenUsage()).add(usage)

    def model_usage_list(self) -> list[ModelUsage]:
        return [ModelUsage(model=model, usage=usage) for model, usage in self.model_usage.items()]

    def skip(self, reason: str, *args: Any) -> None:
        self.skipped_records += 1
        logger.debug("[%s] skipping record: " + reason, self.source, *args)


def blended_token_total(usage: TokenUsage) -> int:
    """Non-cached input plus output and reasoning output."""
    return max(0, usage.inputTokens - usage.cachedInputTokens) + usage.outputTokens + usage.reasoningOutputTokens
