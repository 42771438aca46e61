"""Shaping agent replies for a text-message channel."""

from __future__ import annotations

import re
import time

import structlog

from textme_relay.models import FileDirective

logger = structlog.get_logger(__name__)

MAX_RESPONSE_CHARS = 15000
TRUNCATED_MARKER = "[Truncated]"

# <send_file path="..." /> or <send_file path="...">caption</send_file>
_SEND_FILE_RE = re.compile(
    r"<send_file\s+path=[\"']([^\"']+)[\"']\s*(?:/>|>([^<]*)</send_file>)",
    re.IGNORECASE,
)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

_DEDUP_MIN_LENGTH = 100
_DEDUP_SPLIT_WINDOW = 50
_DEDUP_MIN_HALF = 50
_DEDUP_TAIL_STEP = 10


def parse_send_file_tags(response: str) -> tuple[list[FileDirective], str]:
    """Pull file directives out of a reply. Returns (directives, reply without tags)."""
    files = [
        FileDirective(path=m.group(1), caption=(m.group(2) or "").strip() or None)
        for m in _SEND_FILE_RE.finditer(response)
    ]
    cleaned = _SEND_FILE_RE.sub("", response).strip()
    return files, _BLANK_RUN_RE.sub("\n\n", cleaned)


def deduplicate_response(response: str) -> str:
    """Drop a reply's accidental second copy of itself.

    Two heuristics, in order: the reply splits (within 50 chars of its
    midpoint) into two identical halves longer than 50 chars; or the reply
    ends with a repeat of its own opening, tried from half its length down to
    100 chars. Replies shorter than 100 chars are returned untouched.
    Legitimately repeated content can be cut as well.
    """
    if not response or len(response) < _DEDUP_MIN_LENGTH:
        return response

    trimmed = response.strip()
    half = len(trimmed) // 2
    for split in range(half - _DEDUP_SPLIT_WINDOW, half + _DEDUP_SPLIT_WINDOW + 1):
        if split <= 0 or split >= len(trimmed):
            continue
        first = trimmed[:split].strip()
        if len(first) > _DEDUP_MIN_HALF and first == trimmed[split:].strip():
            logger.info("response_deduplicated", kind="halves", duplicated_chars=len(first))
            return first

    for length in range(half, _DEDUP_MIN_LENGTH - 1, -_DEDUP_TAIL_STEP):
        start = trimmed[:length].strip()
        if trimmed.endswith(start):
            logger.info("response_deduplicated", kind="trailing", duplicated_chars=len(start))
            return trimmed[: len(trimmed) - len(start)].strip()

    return response


def truncate(text: str, limit: int = MAX_RESPONSE_CHARS, marker: str = TRUNCATED_MARKER) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}\n\n{marker}"


def preview(text: str, length: int) -> str:
    """First ``length`` chars, with an ellipsis when cut."""
    return text[:length] + ("..." if len(text) > length else "")


def format_time_ago(timestamp: float, now: float | None = None) -> str:
    seconds = int((time.time() if now is None else now) - timestamp)
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
