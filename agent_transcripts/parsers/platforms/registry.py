"""Session decoder registry for platform-specific implementations."""
from __future__ import annotations

import json
import logging
import time
from collections import Counter
from pathlib import Path
from typing import Callable, Iterable, Optional

from agent_transcripts import observability
from agent_transcripts.models import ConversionResult
from agent_transcripts.parsers.context import ConvertOptions
from agent_transcripts.parsers.platforms.claude_code import parser as claude_code_parser
from agent_transcripts.parsers.platforms.cline import parser as cline_parser
from agent_transcripts.parsers.platforms.codex import parser as codex_parser
from agent_transcripts.parsers.platforms.opencode import parser as opencode_parser
from agent_transcripts.parsers.platforms.pi import parser as pi_parser
from agent_transcripts.schema import TranscriptSchemaError

logger = logging.getLogger("agent_transcripts.parsers.registry")

FileConverter = Callable[[Path, Optional[ConvertOptions]], Optional[ConversionResult]]

CONVERTERS: dict[str, FileConverter] = {
    codex_parser.SOURCE: codex_parser.convert_codex_file,
    opencode_parser.SOURCE: opencode_parser.convert_opencode_file,
    pi_parser.SOURCE: pi_parser.convert_pi_file,
    claude_code_parser.SOURCE: claude_code_parser.convert_claude_code_file,
    cline_parser.SOURCE: cline_parser.convert_cline_file,
}

SESSION_SUFFIXES = (".jsonl", ".json")
CLINE_HISTORY_FILENAME = "api_conversation_history.json"
_CLAUDE_CODE_KEYS = ("uuid", "leafUuid", "sessionId")


def _first_record(path: Path) -> dict | None:
    try:
        with path.open(encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    record = json.loads(line)
                    return record if isinstance(record, dict) else None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    return None


def _starts_with_array(path: Path) -> bool:
    try:
        with path.open(encoding="utf-8") as handle:
            head = handle.read(256)
    except (OSError, UnicodeDecodeError):
        return False
    return head.lstrip().startswith("[")


def detect_source(path: Path) -> str | None:
    """Guess the session format from the file suffix and its first record.

    A ``.json`` file holding a top-level array is a Cline task history; other
    ``.json`` files are OpenCode exports. A ``.jsonl`` file whose first line is
    a ``session`` header is a Pi session tree. One whose first record carries
    Claude Code keys and no ``payload`` is a Claude Code transcript. Any other
    ``.jsonl`` is treated as a Codex event stream.
    """
    suffix = path.suffix.lower()
    if suffix == ".json":
        if path.name == CLINE_HISTORY_FILENAME or _starts_with_array(path):
            return cline_parser.SOURCE
        return opencode_parser.SOURCE
    if suffix != ".jsonl":
        return None
    first = _first_record(path)
    if first is not None and first.get("type") == "session":
        return pi_parser.SOURCE
    if first is not None and "payload" not in first and any(key in first for key in _CLAUDE_CODE_KEYS):
        return claude_code_parser.SOURCE
    return codex_parser.SOURCE


def _record_transcript_metrics(source: str, result: ConversionResult) -> None:
    if not observability.is_enabled():
        return
    transcript = result.transcript
    outcomes: Counter[tuple[str, str]] = Counter()
    for message in transcript.messages:
        if message.type == "tool-call":
            outcomes[(message.toolName, "error" if message.isError else "ok")] += 1
    for (tool, status), count in outcomes.items():
        observability.record_tool_result(source, tool, status, count=count)
    for entry in transcript.modelUsage or []:
        observability.record_token_cost(
            model=entry.model,
            token_input=entry.usage.inputTokens,
            token_output=entry.usage.outputTokens + entry.usage.reasoningOutputTokens,
            cost_usd=transcript.costUsd if entry.model == transcript.model else 0.0,
        )


def convert_session_file(
    path: Path,
    source: str | None = None,
    options: ConvertOptions | None = None,
) -> ConversionResult | None:
    """Convert a session file by delegating to the matching platform decoder.

    ``source`` forces a decoder; otherwise it is detected from the file.
    ``TranscriptSchemaError`` propagates after being counted as a parser failure.
    """
    path = Path(path)
    resolved = source or detect_source(path)
    converter = CONVERTERS.get(resolved or "")
    if converter is None:
        logger.debug("No decoder for %s (source=%s)", path, resolved)
        return None

    started = time.perf_counter()
    with observability.start_span("transcript.convert", {"source": resolved, "path": str(path)}):
        try:
            result = converter(path, options)
        except TranscriptSchemaError:
            observability.record_parser_failure(resolved)
            observability.record_conversion(resolved, "error", (time.perf_counter() - started) * 1000)
            raise
    duration_ms = (time.perf_counter() - started) * 1000
    observability.record_conversion(resolved, "ok" if result else "empty", duration_ms)
    if result is not None:
        _record_transcript_metrics(resolved, result)
    return result


def convert_session_files(
    paths: Iterable[Path],
    source: str | None = None,
    options: ConvertOptions | None = None,
) -> list[ConversionResult]:
    """Convert several session files in order; failures are logged and skipped."""
    results: list[ConversionResult] = []
    failures = 0
    for path in paths:
        try:
            result = convert_session_file(path, source, options)
        except TranscriptSchemaError as exc:
            failures += 1
            logger.warning("Skipping %s: %s", path, exc)
            continue
        if result is not None:
            results.append(result)
    if failures:
        logger.info("Converted %d sessions, %d failed validation", len(results), failures)
    return results


def scan_sessions(
    sessions_dir: Path,
    source: str | None = None,
    max_files: int = 50,
    options: ConvertOptions | None = None,
) -> list[ConversionResult]:
    """Scan and convert the most recently modified session files in a directory."""
    sessions_dir = Path(sessions_dir)
    if not sessions_dir.exists():
        return []

    candidates = [
        path
        for path in sessions_dir.iterdir()
        if path.is_file() and path.suffix.lower() in SESSION_SUFFIXES
    ]
    recent = sorted(candidates, key=lambda p: p.stat().st_mtime, reverse=True)[:max_files]
    return convert_session_files(recent, source, options)
