"""Messaging transport: the Transport protocol and the Sendblue HTTP client.

Requests go through ``http.client`` over a default TLS context and run in a
worker thread via ``asyncio.to_thread`` so the event loop keeps polling and
forwarding activity while a request is in flight.
"""

from __future__ import annotations

import asyncio
import datetime
import http.client
import json
import mimetypes
from pathlib import Path
import ssl
import time
from typing import Any, Protocol
from urllib.parse import urlencode, urlparse
import uuid

import structlog

from textme_relay.models import Turn

logger = structlog.get_logger(__name__)

SENDBLUE_API_URL = "https://api.sendblue.co"
REQUEST_TIMEOUT_S = 30


class TransportError(RuntimeError):
    """A transport request failed (network error or non-2xx status)."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class Transport(Protocol):
    async def poll_inbound(self, since: float) -> list[Turn]: ...

    async def send_text(self, recipient: str, text: str) -> None: ...

    async def send_file(self, recipient: str, path_or_url: str, caption: str | None = None) -> None: ...

    async def upload_file(self, path: str) -> str: ...


def _parse_timestamp(value: Any) -> float:
    if isinstance(value, str) and value:
        try:
            return datetime.datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    return time.time()


def _encode_multipart(field: str, filename: str, data: bytes) -> tuple[bytes, str]:
    boundary = uuid.uuid4().hex
    content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode()
    return head + data + f"\r\n--{boundary}--\r\n".encode(), f"multipart/form-data; boundary={boundary}"


class SendblueTransport:
    """Sendblue REST API client."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        from_number: str,
        *,
        base_url: str = SENDBLUE_API_URL,
        timeout: int = REQUEST_TIMEOUT_S,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.from_number = from_number
        self.base_url = base_url
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: bytes | None = None,
        content_type: str = "application/json",
        query: dict[str, str] | None = None,
    ) -> Any:
        parsed = urlparse(self.base_url)
        target = path + (f"?{urlencode(query)}" if query else "")
        headers = {
            "sb-api-key-id": self.api_key,
            "sb-api-secret-key": self.api_secret,
            "Accept": "application/json",
        }
        if body is not None:
            headers["Content-Type"] = content_type
        try:
            conn = http.client.HTTPSConnection(
                parsed.hostname,
                parsed.port or 443,
                timeout=self.timeout,
                context=ssl.create_default_context(),
            )
            try:
                conn.request(method, target, body=body, headers=headers)
                resp = conn.getresponse()
                raw = resp.read().decode("utf-8", errors="replace")
            finally:
                conn.close()
        except (OSError, http.client.HTTPException) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status < 200 or resp.status >= 300:
            raise TransportError(f"{method} {path}: HTTP {resp.status} {resp.reason}", status=resp.status, body=raw[:500])
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransportError(f"{method} {path}: invalid JSON response", status=resp.status, body=raw[:500]) from exc

    def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        return self._request("POST", path, body=json.dumps(payload).encode())

    async def poll_inbound(self, since: float) -> list[Turn]:
        """Inbound messages created at or after ``since`` (epoch seconds), oldest first."""
        since_iso = datetime.datetime.fromtimestamp(since, datetime.timezone.utc).isoformat()
        data = await asyncio.to_thread(
            self._request,
            "GET",
            "/api/v2/messages",
            query={"is_outbound": "false", "created_at_gte": since_iso, "order_direction": "asc"},
        )
        items = data.get("data", []) if isinstance(data, dict) else data
        turns = []
        for item in items or []:
            if item.get("is_outbound"):
                continue
            handle = item.get("message_handle")
            sender = item.get("from_number")
            if not handle or not sender:
                logger.warning("inbound_message_malformed", keys=sorted(item))
                continue
            media_url = item.get("media_url") or ""
            turns.append(
                Turn(
                    sender=sender,
                    text=(item.get("content") or "").strip(),
                    handle=handle,
                    arrived_at=_parse_timestamp(item.get("date_sent") or item.get("date_created")),
                    attachments=(media_url,) if media_url else (),
                )
            )
        turns.sort(key=lambda t: t.arrived_at)
        return turns

    async def send_text(self, recipient: str, text: str) -> None:
        await self._send(recipient, text)

    async def _send(self, recipient: str, text: str, media_url: str | None = None) -> None:
        payload: dict[str, Any] = {"number": recipient, "from_number": self.from_number, "content": text}
        if media_url:
            payload["media_url"] = media_url
        await asyncio.to_thread(self._post_json, "/api/send-message", payload)
        logger.debug("message_sent", recipient=recipient, chars=len(text), media=bool(media_url))

    async def upload_file(self, path: str) -> str:
        """Upload a local file to the Sendblue CDN and return its media URL."""
        file_path = Path(path)
        data = await asyncio.to_thread(file_path.read_bytes)
        body, content_type = _encode_multipart("file", file_path.name, data)
        result = await asyncio.to_thread(
            self._request, "POST", "/api/upload-file", body=body, content_type=content_type
        )
        media_url = result.get("media_url") if isinstance(result, dict) else None
        if not media_url:
            raise TransportError(f"upload of {file_path.name} returned no media_url")
        logger.info("file_uploaded", path=str(file_path), bytes=len(data))
        return media_url

    async def send_file(self, recipient: str, path_or_url: str, caption: str | None = None) -> None:
        """Send a local file (uploaded first) or a remote URL as a media message.

        Raises FileNotFoundError for a missing local path.
        """
        if path_or_url.startswith(("http://", "https://")):
            media_url = path_or_url
        else:
            if not Path(path_or_url).is_file():
                raise FileNotFoundError(path_or_url)
            media_url = await self.upload_file(path_or_url)
        await self._send(recipient, caption or "", media_url)
