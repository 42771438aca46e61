"""Attachment classification and the notices that stand in for them in a turn."""

from __future__ import annotations

import re
from typing import Literal, Protocol, Sequence

import structlog

logger = structlog.get_logger(__name__)

MediaType = Literal["image", "audio", "video", "file"]

_EXTENSION_RULES: tuple[tuple[re.Pattern[str], MediaType], ...] = (
    (re.compile(r"\.(jpg|jpeg|png|gif|webp|heic|heif|bmp|tiff?)(\?|$)", re.IGNORECASE), "image"),
    (re.compile(r"\.(mp3|m4a|wav|aac|ogg|caf|amr)(\?|$)", re.IGNORECASE), "audio"),
    (re.compile(r"\.(mp4|mov|avi|webm|mkv)(\?|$)", re.IGNORECASE), "video"),
)


class Transcriber(Protocol):
    """Speech-to-text for voice notes. Returns None when it cannot transcribe."""

    async def transcribe(self, url: str) -> str | None: ...


def detect_media_type(url: str) -> MediaType:
    for pattern, media_type in _EXTENSION_RULES:
        if pattern.search(url):
            return media_type
    # Carrier media URLs often have no extension.
    lowered = url.lower()
    if "image" in lowered or "photo" in lowered:
        return "image"
    if "audio" in lowered or "voice" in lowered:
        return "audio"
    return "file"


async def _voice_notice(url: str, transcriber: Transcriber | None) -> str:
    if transcriber is not None:
        try:
            transcription = await transcriber.transcribe(url)
        except Exception as exc:
            logger.error("transcription_failed", url=url[:50], error=str(exc))
            transcription = None
        if transcription:
            return f'[Voice note transcription: "{transcription}"]'
    return f"[User sent a voice note: {url}]"


async def annotate_attachments(
    text: str,
    attachments: Sequence[str],
    transcriber: Transcriber | None = None,
) -> str:
    """Append one notice per attachment to the turn text."""
    parts = [text] if text else []
    for url in attachments:
        media_type = detect_media_type(url)
        logger.info("attachment_received", media_type=media_type, url=url[:50])
        if media_type == "image":
            parts.append(f"[User sent an image: {url}]")
        elif media_type == "audio":
            parts.append(await _voice_notice(url, transcriber))
        else:
            parts.append(f"[User sent a file: {url}]")
    return "\n\n".join(parts)
