"""Agent transcripts configuration."""
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Model naming
DEFAULT_MODEL_PROVIDER = os.getenv("AGENT_TRANSCRIPTS_DEFAULT_PROVIDER", "openai")

# Pricing
TIERED_PRICING_THRESHOLD = _env_int("AGENT_TRANSCRIPTS_TIERED_THRESHOLD", 200_000)

# Transcript presentation
PREVIEW_MAX_LENGTH = _env_int("AGENT_TRANSCRIPTS_PREVIEW_MAX_LENGTH", 80)

# Observability
OTEL_ENABLED = _env_bool("AGENT_TRANSCRIPTS_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("AGENT_TRANSCRIPTS_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("AGENT_TRANSCRIPTS_OTEL_SERVICE_NAME", "agent-transcripts")
PROM_PORT = _env_int("AGENT_TRANSCRIPTS_PROM_PORT", 0)
