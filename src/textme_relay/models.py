"""Value types shared by the relay: turns, queue entries, history records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Role = Literal["user", "agent"]


@dataclass(frozen=True)
class Turn:
    """One inbound message plus any attachment URLs."""

    sender: str
    text: str
    handle: str
    arrived_at: float
    attachments: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class QueuedTurn:
    """A turn parked in the durable queue while the agent is busy."""

    position: int
    handle: str
    sender: str
    text: str
    queued_at: float


@dataclass(frozen=True)
class ConversationRecord:
    sender: str
    role: Role
    text: str
    timestamp: float


@dataclass(frozen=True)
class RunningTask:
    """The single in-flight agent task."""

    id: str
    description: str
    started_at: float
    pid: int | None = None


@dataclass(frozen=True)
class FileDirective:
    """A ``<send_file>`` request embedded in an agent response."""

    path: str
    caption: str | None = None

    @property
    def is_remote(self) -> bool:
        return self.path.startswith(("http://", "https://"))


@dataclass(frozen=True)
class PendingApproval:
    id: int
    sender: str
    description: str
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class DirectoryUse:
    path: str
    last_used: float
    use_count: int
