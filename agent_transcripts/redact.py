"""Mask credential material in transcripts: sensitive file contents and inline secrets."""
from __future__ import annotations

import re
from typing import Any, Union

from agent_transcripts.models import ToolCallMessage, UnifiedTranscript

_NON_WHITESPACE = re.compile(r"\S")

SensitivePattern = Union[str, re.Pattern[str]]

SENSITIVE_FILE_PATTERNS: tuple[SensitivePattern, ...] = (
    # Environment files
    ".env",
    ".env.local",
    ".env.development",
    ".env.production",
    ".env.test",
    ".env.staging",
    re.compile(r"\.env\.(dev|prod|stage|preview|ci|build|docker)$", re.IGNORECASE),
    # Shell configuration and history
    ".zshrc",
    ".bashrc",
    ".bash_profile",
    ".profile",
    ".zprofile",
    ".zshenv",
    ".zsh_history",
    ".bash_history",
    # Private keys
    "id_rsa",
    "id_ed25519",
    "id_ecdsa",
    "id_dsa",
    re.compile(r"^id_[a-z0-9]+$", re.IGNORECASE),
    re.compile(r"\.pem$", re.IGNORECASE),
    re.compile(r"\.key$", re.IGNORECASE),
    # Credential stores
    ".aws/credentials",
    ".aws/config",
    ".docker/config.json",
    ".npmrc",
    ".yarnrc",
    ".yarnrc.yml",
    ".git-credentials",
    ".netrc",
    ".kube/config",
    "kubeconfig",
    # Application secrets
    "database.yml",
    "secrets.yml",
    "secrets.yaml",
    "master.key",
    "credentials.yml.enc",
    # Cloud provider credentials
    ".gcloud/credentials",
    "service-account.json",
    "service_account.json",
    re.compile(r"gcp.*credentials.*\.json$", re.IGNORECASE),
    re.compile(r"firebase.*\.json$", re.IGNORECASE),
)


def is_sensitive_file(file_path: str) -> bool:
    normalized = file_path.replace("\\", "/")
    filename = normalized.rsplit("/", 1)[-1]
    for pattern in SENSITIVE_FILE_PATTERNS:
        if isinstance(pattern, str):
            if filename == pattern or normalized == pattern or normalized.endswith(f"/{pattern}"):
                return True
        elif pattern.search(filename) or pattern.search(normalized):
            return True
    return False


def redact_content(content: str) -> str:
    """Replace every non-whitespace character with ``*``, keeping length and layout."""
    return _NON_WHITESPACE.sub("*", content)


def _redact_read_output(output: Any) -> Any:
    if isinstance(output, str):
        return redact_content(output)
    if not isinstance(output, dict):
        return output
    redacted = dict(output)
    file_block = output.get("file")
    if isinstance(file_block, dict) and isinstance(file_block.get("content"), str):
        redacted["file"] = {**file_block, "content": redact_content(file_block["content"])}
    if isinstance(output.get("content"), str):
        redacted["content"] = redact_content(output["content"])
    return redacted


def redact_sensitive_file_in_message(message: Any) -> Any:
    """Return a copy of a Read/Write tool call with sensitive file content masked.

    Other messages are returned as deep copies, untouched.
    """
    copied = message.model_copy(deep=True)
    if not isinstance(copied, ToolCallMessage) or copied.toolName not in {"Read", "Write"}:
        return copied
    tool_input = copied.input if isinstance(copied.input, dict) else None
    file_path = tool_input.get("file_path") if tool_input else None
    if not isinstance(file_path, str) or not is_sensitive_file(file_path):
        return copied

    if copied.toolName == "Write" and isinstance(tool_input.get("content"), str):
        copied.input = {**tool_input, "content": redact_content(tool_input["content"])}
    if copied.toolName == "Read":
        copied.output = _redact_read_output(copied.output)
    return copied


def redact_sensitive_files_in_transcript(transcript: UnifiedTranscript) -> UnifiedTranscript:
    """Deep-copy a transcript, masking sensitive Read/Write file contents."""
    redacted = transcript.model_copy(deep=True)
    redacted.messages = [redact_sensitive_file_in_message(message) for message in transcript.messages]
    return redacted


# ── Inline secrets ──────────────────────────────────────────────────

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Model providers
    re.compile(r"sk-ant-[a-zA-Z0-9_\-]{20,}"),
    re.compile(r"sk-proj-[a-zA-Z0-9_\-]{20,}"),
    re.compile(r"sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"co-[a-zA-Z0-9]{40,}"),
    re.compile(r"hf_[a-zA-Z0-9]{34,}"),
    re.compile(r"r8_[a-zA-Z0-9]{40}"),
    # Tokens and auth headers
    re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-.+/=]*"),
    re.compile(r"Bearer\s+[a-zA-Z0-9\-._~+/]+=*"),
    re.compile(r"ya29\.[0-9A-Za-z_\-]+"),
    re.compile(r"client_secret['\"\s:=]+[a-zA-Z0-9\-_.~]{10,100}", re.IGNORECASE),
    # Source hosting
    re.compile(r"ghp_[0-9a-zA-Z]{36}"),
    re.compile(r"github_pat_[0-9a-zA-Z_]{20,}"),
    re.compile(r"glpat-[a-zA-Z0-9_\-]{16,}"),
    re.compile(r"glrt-[a-zA-Z0-9_\-]{16,}"),
    # Cloud and infrastructure
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"dop_v1_[a-z0-9]{64}"),
    re.compile(r"https://[a-f0-9]{32}@[a-z0-9.]+\.ingest\.sentry\.io/\d+"),
    re.compile(r"https://discord(?:app)?\.com/api/webhooks/\d+/[a-zA-Z0-9_\-]+"),
    re.compile(r"\d{9}:[a-zA-Z0-9_\-]{35}"),
    # Connection strings
    re.compile(r"mongodb(?:\+srv)?://[^\s'\"]+"),
    re.compile(r"postgres(?:ql)?://[^\s'\"]+"),
    re.compile(r"mysql://[^\s'\"]+"),
    re.compile(r"rediss?://[^\s'\"]+"),
    re.compile(r"jdbc:[a-z]+://[^\s'\"]+"),
    # Payments and SaaS
    re.compile(r"(?:sk|rk|pk)_live_[0-9a-zA-Z]{24,}"),
    re.compile(r"sq0atp-[0-9A-Za-z_\-]{22}"),
    re.compile(r"sq0csp-[0-9A-Za-z_\-]{43}"),
    re.compile(r"SG\.[\w\-]{22}\.[\w\-]{43}"),
    re.compile(r"key-[0-9a-zA-Z]{32}"),
    re.compile(r"shpat_[0-9a-fA-F]{32}"),
    re.compile(r"lin_api_[a-zA-Z0-9]{40}"),
    # Key material
    re.compile(r"-----BEGIN (?:RSA |DSA |EC |OPENSSH |PGP )?PRIVATE KEY( BLOCK)?-----"),
    re.compile(r"-----BEGIN CERTIFICATE-----"),
    # Generic assignments
    re.compile(r"api[_-]?key['\"\s:=]+[a-zA-Z0-9\-_.]{16,}", re.IGNORECASE),
    re.compile(r"(?:secret|password|passwd|pwd)['\"\s:=]+[^\s'\"]{8,}", re.IGNORECASE),
    re.compile(r"token['\"\s:=]+[a-zA-Z0-9\-_.]{16,}", re.IGNORECASE),
)

# Left unmasked inside a match.
_PRESERVED_CHARS = frozenset("\n\r\t\"':,{}[]\\")


def _mask_match(match: re.Match[str], mask: str) -> str:
    return "".join(char if char in _PRESERVED_CHARS else mask for char in match.group(0))


def redact_secrets_preserve_length(content: str, placeholder: str = "*") -> str:
    """Mask every inline secret character by character.

    Only the first character of ``placeholder`` is used; an empty placeholder
    falls back to ``*``. Quotes, brackets, separators and line breaks inside a
    match are kept, so the result has the same length and shape as the input.
    """
    mask = placeholder[:1] or "*"
    result = content
    for pattern in SECRET_PATTERNS:
        result = pattern.sub(lambda match: _mask_match(match, mask), result)
    return result


def redact_secrets_deep(value: Any) -> Any:
    """Return a copy of nested dicts and lists with every string secret-masked.

    Datetimes, numbers and other non-string leaves are returned as they are.
    """
    if isinstance(value, str):
        return redact_secrets_preserve_length(value)
    if isinstance(value, list):
        return [redact_secrets_deep(item) for item in value]
    if isinstance(value, dict):
        return {key: redact_secrets_deep(item) for key, item in value.items()}
    return value
