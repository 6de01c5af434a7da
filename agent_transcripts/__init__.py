"""Decode coding-agent session logs into unified transcripts."""

from agent_transcripts.models import (
    ConversionResult,
    GitContext,
    ModelPricing,
    TokenUsage,
    TranscriptBlob,
    UnifiedTranscript,
)
from agent_transcripts.parsers.context import UNSET, ConvertOptions
from agent_transcripts.parsers.platforms.claude_code.parser import (
    convert_claude_code_file,
    convert_claude_code_files,
    convert_claude_code_transcript,
)
from agent_transcripts.parsers.platforms.cline.parser import (
    convert_cline_file,
    convert_cline_files,
    convert_cline_transcript,
)
from agent_transcripts.parsers.platforms.codex.parser import (
    convert_codex_file,
    convert_codex_files,
    convert_codex_transcript,
)
from agent_transcripts.parsers.platforms.opencode.parser import (
    convert_opencode_file,
    convert_opencode_files,
    convert_opencode_transcript,
)
from agent_transcripts.parsers.platforms.pi.parser import (
    convert_pi_file,
    convert_pi_files,
    convert_pi_transcript,
)
from agent_transcripts.parsers.platforms.registry import (
    convert_session_file,
    convert_session_files,
    detect_source,
    scan_sessions,
)
from agent_transcripts.pricing import (
    PricingNotFoundError,
    calculate_cost_from_tokens,
    estimate_cost,
    format_usd,
    load_pricing_table,
)
from agent_transcripts.redact import (
    is_sensitive_file,
    redact_content,
    redact_secrets_deep,
    redact_secrets_preserve_length,
    redact_sensitive_file_in_message,
    redact_sensitive_files_in_transcript,
)
from agent_transcripts.schema import TranscriptSchemaError, transcript_to_json, validate_transcript

__all__ = [
    "ConversionResult",
    "ConvertOptions",
    "GitContext",
    "ModelPricing",
    "PricingNotFoundError",
    "TokenUsage",
    "TranscriptBlob",
    "TranscriptSchemaError",
    "UNSET",
    "UnifiedTranscript",
    "calculate_cost_from_tokens",
    "convert_claude_code_file",
    "convert_claude_code_files",
    "convert_claude_code_transcript",
    "convert_cline_file",
    "convert_cline_files",
    "convert_cline_transcript",
    "convert_codex_file",
    "convert_codex_files",
    "convert_codex_transcript",
    "convert_opencode_file",
    "convert_opencode_files",
    "convert_opencode_transcript",
    "convert_pi_file",
    "convert_pi_files",
    "convert_pi_transcript",
    "convert_session_file",
    "convert_session_files",
    "detect_source",
    "estimate_cost",
    "format_usd",
    "is_sensitive_file",
    "load_pricing_table",
    "redact_content",
    "redact_secrets_deep",
    "redact_secrets_preserve_length",
    "redact_sensitive_file_in_message",
    "redact_sensitive_files_in_transcript",
    "scan_sessions",
    "transcript_to_json",
    "validate_transcript",
]
