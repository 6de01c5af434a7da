"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except Exception:
        parsed = None
    if parsed is None:
        for fmt in ("%Y/%m/%d", "%Y-%m-%d %H:%M:%S"):
            try:
                parsed = datetime.strptime(cleaned, fmt)
                break
            except Exception:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse ISO strings, datetimes or epoch milliseconds into aware datetimes."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        return _parse_datetime_token(value)
    return None


def epoch_ms_to_iso(value: Any) -> str | None:
    parsed = parse_iso_datetime(value) if isinstance(value, (int, float)) else None
    if parsed is None:
        return None
    return _format_datetime_utc(parsed)


def iso_to_epoch(value: Any) -> float:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return 0.0
    return parsed.astimezone(timezone.utc).timestamp()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def file_mtime(path: Path) -> datetime | None:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
    except OSError:
        return None
