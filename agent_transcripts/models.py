"""Pydantic models for the unified transcript wire format."""
from __future__ import annotations
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TranscriptSource = Literal["codex", "opencode", "pi", "claude-code", "cline", "unknown"]


# ── Usage ───────────────────────────────────────────────────────────

class TokenUsage(BaseModel):
    inputTokens: int = 0
    cachedInputTokens: int = 0
    outputTokens: int = 0
    reasoningOutputTokens: int = 0
    totalTokens: int = 0

    def add(self, other: TokenUsage) -> None:
        """Accumulate another usage record, ignoring negative components."""
        self.inputTokens += max(0, other.inputTokens)
        self.cachedInputTokens += max(0, other.cachedInputTokens)
        self.outputTokens += max(0, other.outputTokens)
        self.reasoningOutputTokens += max(0, other.reasoningOutputTokens)
        self.totalTokens += max(0, other.totalTokens)


class ModelUsage(BaseModel):
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class GitContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relativeCwd: Optional[str] = None
    branch: Optional[str] = None
    repo: Optional[str] = None


# ── Messages ────────────────────────────────────────────────────────

class ImageRef(BaseModel):
    sha256: str
    mediaType: str


class _MessageBase(BaseModel):
    id: Optional[str] = None
    timestamp: Optional[str] = None


class UserMessage(_MessageBase):
    type: Literal["user"] = "user"
    text: str
    images: Optional[list[ImageRef]] = None


class AgentMessage(_MessageBase):
    type: Literal["agent"] = "agent"
    text: str
    model: Optional[str] = None


class ThinkingMessage(_MessageBase):
    type: Literal["thinking"] = "thinking"
    text: str
    model: Optional[str] = None


class ToolCallMessage(_MessageBase):
    type: Literal["tool-call"] = "tool-call"
    toolName: str
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    isError: Optional[bool] = None
    images: Optional[list[ImageRef]] = None
    model: Optional[str] = None


class CommandMessage(_MessageBase):
    type: Literal["command"] = "command"
    name: str
    args: Optional[str] = None
    output: Optional[str] = None


class CompactionSummaryMessage(_MessageBase):
    type: Literal["compaction-summary"] = "compaction-summary"
    text: str


class ImageMessage(_MessageBase):
    type: Literal["image"] = "image"
    sha256: str
    mediaType: str


UnifiedTranscriptMessage = Annotated[
    Union[
        UserMessage,
        AgentMessage,
        ThinkingMessage,
        ToolCallMessage,
        CommandMessage,
        CompactionSummaryMessage,
        ImageMessage,
    ],
    Field(discriminator="type"),
]


# ── Transcript ──────────────────────────────────────────────────────

class UnifiedTranscript(BaseModel):
    v: Literal[1] = 1
    id: str
    source: TranscriptSource = "unknown"
    timestamp: datetime
    preview: Optional[str] = None
    summary: Optional[str] = None
    model: Optional[str] = None
    clientVersion: Optional[str] = None
    blendedTokens: int = 0
    costUsd: float = 0.0
    messageCount: int = 0
    toolCount: int = 0
    userMessageCount: int = 0
    filesChanged: int = 0
    linesAdded: int = 0
    linesRemoved: int = 0
    linesModified: int = 0
    tokenUsage: TokenUsage = Field(default_factory=TokenUsage)
    modelUsage: list[ModelUsage] = Field(default_factory=list)
    git: Optional[GitContext] = None
    cwd: Optional[str] = None
    messages: list[UnifiedTranscriptMessage] = Field(default_factory=list)


class TranscriptBlob(BaseModel):
    data: bytes
    mediaType: str


class ConversionResult(BaseModel):
    transcript: UnifiedTranscript
    blobs: dict[str, TranscriptBlob] = Field(default_factory=dict)


# ── Pricing ─────────────────────────────────────────────────────────

class ModelPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None
    input_cost_per_token_above_200k_tokens: Optional[float] = None
    output_cost_per_token_above_200k_tokens: Optional[float] = None
    cache_creation_input_token_cost_above_200k_tokens: Optional[float] = None
    cache_read_input_token_cost_above_200k_tokens: Optional[float] = None
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None
    max_tokens: Optional[int] = None


PricingTable = dict[str, ModelPricing]


# ── Session trees ───────────────────────────────────────────────────

class SessionTreeEntry(BaseModel):
    id: str
    parentId: Optional[str] = None
    timestamp: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
