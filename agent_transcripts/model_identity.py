"""Model identity helpers for provider-prefixed model names."""
from __future__ import annotations

from agent_transcripts import config


def standardize_model_name(raw_model: str | None, provider: str | None = None) -> str | None:
    """Ensure a model name carries a ``provider/`` prefix.

    Names that already contain a slash are returned unchanged. Bare names get
    the given provider, or the configured default provider.

    Example:
      gpt-5-codex -> openai/gpt-5-codex
    """
    raw = (raw_model or "").strip()
    if not raw:
        return None
    if "/" in raw:
        return raw
    prefix = (provider or "").strip() or config.DEFAULT_MODEL_PROVIDER
    return f"{prefix}/{raw}"


def split_model_name(model: str | None) -> tuple[str, str]:
    """Split ``provider/name`` into its parts; bare names have no provider."""
    raw = (model or "").strip()
    if "/" not in raw:
        return "", raw
    provider, _, name = raw.partition("/")
    return provider, name
