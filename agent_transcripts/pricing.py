"""Per-token cost estimation against a LiteLLM-style pricing table."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from agent_transcripts import config
from agent_transcripts.models import ModelPricing, PricingTable, TokenUsage

logger = logging.getLogger("agent_transcripts.pricing")

# Order matters: the first candidate present in the table wins.
PROVIDER_PREFIXES: tuple[str, ...] = (
    "anthropic/",
    "claude-3-5-",
    "claude-3-",
    "claude-",
    "openai/",
    "azure/",
    "openrouter/openai/",
    "openrouter/",
    "google/",
    "gemini/",
)


class PricingNotFoundError(LookupError):
    """Raised by the strict cost entry point when a model has no pricing entry."""

    def __init__(self, model_name: str):
        super().__init__(f"Model pricing not found for {model_name}")
        self.model_name = model_name


def load_pricing_table(raw: Mapping[str, Any] | None) -> PricingTable:
    """Build a pricing table from a raw model-name -> rates mapping.

    Records that are not mappings or fail validation are skipped; unknown keys
    inside a record are ignored.
    """
    table: PricingTable = {}
    if not raw:
        return table
    for name, record in raw.items():
        if not isinstance(record, Mapping):
            continue
        try:
            table[str(name)] = ModelPricing.model_validate(dict(record))
        except ValidationError:
            logger.debug("Skipping invalid pricing record for %s", name)
    return table


def _candidate_names(model_name: str) -> list[str]:
    candidates: list[str] = [model_name]
    for prefix in PROVIDER_PREFIXES:
        candidates.append(f"{prefix}{model_name}")
    for prefix in PROVIDER_PREFIXES:
        if model_name.startswith(prefix):
            candidates.append(model_name[len(prefix):])
    unique: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


def resolve_model_pricing(model_name: str | None, pricing: PricingTable | None) -> ModelPricing | None:
    """Find the pricing entry for a model name.

    Tries the exact name, provider-prefixed variants, the name with a known
    prefix stripped, then the first table key that is a case-insensitive
    substring of the name or vice versa.
    """
    name = (model_name or "").strip()
    if not name or not pricing:
        return None

    for candidate in _candidate_names(name):
        entry = pricing.get(candidate)
        if entry is not None:
            return entry

    lower = name.lower()
    matches = [key for key in pricing if key.lower() in lower or lower in key.lower()]
    if not matches:
        return None
    if len(matches) > 1:
        logger.debug(
            "Ambiguous pricing match for %s: using %s out of %d candidates (%s)",
            name,
            matches[0],
            len(matches),
            ", ".join(matches[:5]),
        )
    return pricing[matches[0]]


def tiered_cost(
    tokens: int | None,
    base_rate: float | None,
    tiered_rate: float | None,
    threshold: int | None = None,
) -> float:
    """Bill tokens at the base rate up to the threshold and the tiered rate beyond it."""
    limit = config.TIERED_PRICING_THRESHOLD if threshold is None else threshold
    if tokens is None or tokens <= 0:
        return 0.0
    if tokens > limit and tiered_rate is not None:
        below = min(tokens, limit)
        above = max(0, tokens - limit)
        cost = above * tiered_rate
        if base_rate is not None:
            cost += below * base_rate
        return cost
    if base_rate is not None:
        return tokens * base_rate
    return 0.0


def calculate_cost_from_pricing(tokens: Mapping[str, int], pricing: ModelPricing) -> float:
    """Sum the tiered cost of each token component.

    ``tokens`` uses LiteLLM key names: ``input_tokens``, ``output_tokens``,
    ``cache_creation_input_tokens`` and ``cache_read_input_tokens``.
    """
    return (
        tiered_cost(
            tokens.get("input_tokens"),
            pricing.input_cost_per_token,
            pricing.input_cost_per_token_above_200k_tokens,
        )
        + tiered_cost(
            tokens.get("output_tokens"),
            pricing.output_cost_per_token,
            pricing.output_cost_per_token_above_200k_tokens,
        )
        + tiered_cost(
            tokens.get("cache_creation_input_tokens"),
            pricing.cache_creation_input_token_cost,
            pricing.cache_creation_input_token_cost_above_200k_tokens,
        )
        + tiered_cost(
            tokens.get("cache_read_input_tokens"),
            pricing.cache_read_input_token_cost,
            pricing.cache_read_input_token_cost_above_200k_tokens,
        )
    )


def usage_to_billable_tokens(usage: TokenUsage, *, subtract_cached: bool = True) -> dict[str, int]:
    input_tokens = usage.inputTokens
    if subtract_cached:
        input_tokens = max(0, usage.inputTokens - usage.cachedInputTokens)
    return {
        "input_tokens": input_tokens,
        "output_tokens": usage.outputTokens + usage.reasoningOutputTokens,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": usage.cachedInputTokens,
    }


def estimate_cost(
    model_name: str | None,
    usage: TokenUsage,
    pricing: PricingTable | None,
    *,
    subtract_cached: bool = True,
) -> float:
    """Estimate session cost; unknown models or a missing table cost nothing."""
    if not pricing or not model_name:
        return 0.0
    entry = resolve_model_pricing(model_name, pricing)
    if entry is None:
        logger.debug("No pricing entry for %s; cost left at zero", model_name)
        return 0.0
    return calculate_cost_from_pricing(usage_to_billable_tokens(usage, subtract_cached=subtract_cached), entry)


def calculate_cost_from_tokens(
    tokens: Mapping[str, int],
    model_name: str | None,
    pricing: PricingTable | None,
) -> float:
    """Strict variant of cost estimation.

    Returns 0.0 when no model is named and raises ``PricingNotFoundError``
    when the named model cannot be resolved.
    """
    if not model_name:
        return 0.0
    entry = resolve_model_pricing(model_name, pricing)
    if entry is None:
        raise PricingNotFoundError(model_name)
    return calculate_cost_from_pricing(tokens, entry)


def format_usd(value: float | None) -> str:
    """Format a dollar amount; sub-cent amounts keep four decimals."""
    if value is None or value != value or value <= 0 or value == float("inf"):
        return "$0.00"
    if value < 0.01:
        return f"${value:,.4f}"
    return f"${value:,.2f}"
