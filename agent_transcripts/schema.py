"""Final normalization and validation of assembled transcripts."""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from agent_transcripts.date_utils import iso_to_epoch
from agent_transcripts.models import UnifiedTranscript
from agent_transcripts.transcript_stats import calculate_transcript_stats

logger = logging.getLogger("agent_transcripts.schema")


class TranscriptSchemaError(RuntimeError):
    """An assembled transcript violated the unified schema.

    This signals a defect in a decoder, not bad input.
    """


def order_messages(messages: list[Any]) -> list[Any]:
    """Stable-sort messages by timestamp.

    Messages without a timestamp keep their position relative to the message
    before them.
    """
    keys: list[float] = []
    previous = 0.0
    for message in messages:
        stamp = getattr(message, "timestamp", None)
        epoch = iso_to_epoch(stamp) if stamp else 0.0
        if not epoch:
            epoch = previous
        keys.append(epoch)
        previous = epoch
    if all(keys[index] <= keys[index + 1] for index in range(len(keys) - 1)):
        return list(messages)
    logger.debug("Reordering %d messages by timestamp", len(messages))
    order = sorted(range(len(messages)), key=lambda index: keys[index])
    return [messages[index] for index in order]


def validate_transcript(data: Any) -> UnifiedTranscript:
    """Validate a transcript mapping or model against the unified schema."""
    try:
        return UnifiedTranscript.model_validate(data)
    except ValidationError as exc:
        raise TranscriptSchemaError(f"Transcript failed schema validation: {exc}") from exc


def assemble_transcript(messages: list[Any], **fields: Any) -> UnifiedTranscript:
    """Order messages, derive counters and validate the finished transcript."""
    ordered = order_messages(messages)
    payload: dict[str, Any] = {
        **fields,
        **calculate_transcript_stats(ordered),
        "messageCount": len(ordered),
        "messages": ordered,
    }
    return validate_transcript(payload)


def transcript_to_json(transcript: UnifiedTranscript) -> dict[str, Any]:
    return transcript.model_dump(mode="json", exclude_none=True)
