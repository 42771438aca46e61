"""Content guard: allow-list, rate limiting, sanitization, suspicious-path scan.

Every decision that filters, throttles, or flags content is written to a
dedicated append-only audit log (JSON lines), separate from the structlog
application log.

Failure policy is asymmetric. Rate limiting fails closed (an internal error
denies the turn). Sanitizing and scanning fail open (a scanner bug must never
block delivery).
"""

from __future__ import annotations

from dataclasses import dataclass
import datetime
import json
import os
from pathlib import Path
import re
import stat
import time
from typing import Any, Callable, Iterable, Literal

import structlog

logger = structlog.get_logger(__name__)

FILTERED_MARKER = "[FILTERED]"
DEFAULT_RATE_LIMIT = 30
RATE_WINDOW_S = 3600.0

AuditEvent = Literal[
    "sender_rejected",
    "content_sanitized",
    "rate_limit_exceeded",
    "suspicious_content_detected",
    "config_permissions_fixed",
]

# Patterns that impersonate message metadata or system/admin roles.
SANITIZE_RULES: tuple[re.Pattern[str], ...] = (
    re.compile(r"is_from_me\s*:\s*(?:true|false)", re.IGNORECASE),
    re.compile(r"sender\s*:\s*\+?\d+", re.IGNORECASE),
    re.compile(r"date\s*:\s*\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}", re.IGNORECASE),
    re.compile(r"message_handle\s*:\s*[a-zA-Z0-9-]+", re.IGNORECASE),
    re.compile(r"\[system\]", re.IGNORECASE),
    re.compile(r"\[daemon\]", re.IGNORECASE),
    re.compile(r"\[admin\]", re.IGNORECASE),
)

SUSPICIOUS_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"~?/\.ssh/", re.IGNORECASE), "SSH directory access"),
    (re.compile(r"/etc/passwd", re.IGNORECASE), "Password file access"),
    (re.compile(r"/etc/shadow", re.IGNORECASE), "Shadow file access"),
    (re.compile(r"\.aws/credentials", re.IGNORECASE), "AWS credentials access"),
    (re.compile(r"\.env", re.IGNORECASE), "Environment file access"),
    (re.compile(r"id_rsa|id_dsa|id_ecdsa|id_ed25519", re.IGNORECASE), "SSH key access"),
)


class GuardRejection(Exception):
    """A turn was refused before reaching the agent."""

    def __init__(self, reason: Literal["not_allowed", "rate_limited"], sender: str) -> None:
        super().__init__(f"{reason}: {sender}")
        self.reason = reason
        self.sender = sender


@dataclass(frozen=True)
class SanitizeResult:
    text: str
    was_filtered: bool


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int


@dataclass
class _RateCounter:
    count: int
    reset_at: float


def normalize_number(number: str) -> str:
    """Reduce a phone number to its digits so formatting differences don't matter."""
    return re.sub(r"\D", "", number or "")


class AuditLog:
    """Append-only JSON-lines sink for security events."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def emit(self, event: AuditEvent, details: dict[str, Any]) -> None:
        entry = {
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "event": event,
            "details": details,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except OSError as exc:
            logger.error("audit_write_failed", audit_event=event, path=str(self.path), error=str(exc))
            return
        if event in ("sender_rejected", "rate_limit_exceeded", "content_sanitized"):
            logger.warning("security_event", audit_event=event, **details)

    def read_events(self) -> list[dict[str, Any]]:
        """Return every recorded event (oldest first)."""
        if not self.path.exists():
            return []
        events = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return events


class ContentGuard:
    """Pre-dispatch safety checks for inbound turns.

    Rate-limit counters live on the instance only. Restarting the process
    resets them; this is an accepted limitation, not a bug.
    """

    def __init__(
        self,
        allowed_senders: Iterable[str],
        *,
        audit: AuditLog,
        rate_limit: int = DEFAULT_RATE_LIMIT,
        window_s: float = RATE_WINDOW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._allowed = {normalize_number(s) for s in allowed_senders if normalize_number(s)}
        self.audit = audit
        self.rate_limit = rate_limit
        self.window_s = window_s
        self._clock = clock
        self._counters: dict[str, _RateCounter] = {}

    # -- allow-list + rate limit ------------------------------------------

    def is_allowed(self, sender: str) -> bool:
        return normalize_number(sender) in self._allowed

    def admit(self, sender: str) -> RateDecision:
        """Run the allow-list and rate-limit checks; raise GuardRejection on refusal."""
        if not self.is_allowed(sender):
            self.audit.emit("sender_rejected", {"sender": sender})
            raise GuardRejection("not_allowed", sender)
        decision = self.check_rate(sender)
        if not decision.allowed:
            raise GuardRejection("rate_limited", sender)
        return decision

    def check_rate(self, sender: str, limit: int | None = None) -> RateDecision:
        """Fixed one-hour window per sender. Denies on any internal error."""
        max_per_window = self.rate_limit if limit is None else limit
        try:
            now = self._clock()
            counter = self._counters.get(sender)
            if counter is None or now > counter.reset_at:
                self._counters[sender] = _RateCounter(count=1, reset_at=now + self.window_s)
                return RateDecision(allowed=True, remaining=max_per_window - 1)

            if counter.count >= max_per_window:
                self.audit.emit("rate_limit_exceeded", {"sender": sender, "count": counter.count})
                return RateDecision(allowed=False, remaining=0)

            counter.count += 1
            return RateDecision(allowed=True, remaining=max_per_window - counter.count)
        except Exception as exc:
            logger.error("rate_limit_check_failed", sender=sender, error=str(exc))
            return RateDecision(allowed=False, remaining=0)

    # -- content ----------------------------------------------------------

    def sanitize(self, text: str) -> SanitizeResult:
        """Replace metadata-spoofing substrings with the filtered marker."""
        try:
            sanitized = text
            replaced = 0
            for pattern in SANITIZE_RULES:
                sanitized, count = pattern.subn(FILTERED_MARKER, sanitized)
                replaced += count
        except Exception as exc:
            logger.error("sanitize_failed", error=str(exc))
            return SanitizeResult(text=text, was_filtered=False)

        if replaced:
            self.audit.emit(
                "content_sanitized",
                {"original_length": len(text), "filtered_count": replaced},
            )
        return SanitizeResult(text=sanitized, was_filtered=bool(replaced))

    def scan_suspicious(self, text: str) -> list[str]:
        """Describe sensitive-path references in ``text``. Advisory only."""
        try:
            hits = [description for pattern, description in SUSPICIOUS_RULES if pattern.search(text)]
        except Exception as exc:
            logger.error("suspicious_scan_failed", error=str(exc))
            return []

        if hits:
            self.audit.emit(
                "suspicious_content_detected",
                {"patterns": hits, "content_preview": text[:100]},
            )
        return hits

    def stats(self) -> dict[str, Any]:
        return {"active_rate_limits": len(self._counters), "audit_log": str(self.audit.path)}


def validate_config_permissions(path: str | Path, audit: AuditLog) -> bool:
    """Force a config file holding API keys to 0600. Returns True if it was changed."""
    config_path = Path(path)
    try:
        mode = stat.S_IMODE(config_path.stat().st_mode)
        if mode == 0o600:
            return False
        os.chmod(config_path, stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError as exc:
        logger.error("config_permissions_check_failed", path=str(config_path), error=str(exc))
        return False

    logger.warning("config_permissions_fixed", path=str(config_path), old=oct(mode))
    audit.emit(
        "config_permissions_fixed",
        {"path": str(config_path), "old": format(mode, "o"), "new": "600"},
    )
    return True
