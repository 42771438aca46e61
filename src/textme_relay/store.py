"""SQLite persistence for the relay.

One database file holds conversation history, the processed-message ledger,
the durable turn queue, the single running-task slot, key-value state,
pending approvals and working-directory history. Timestamps are epoch seconds.
"""

from __future__ import annotations

from pathlib import Path
import sqlite3
import time
from typing import Callable

import structlog

from textme_relay.models import (
    ConversationRecord,
    DirectoryUse,
    PendingApproval,
    QueuedTurn,
    Role,
    RunningTask,
)

logger = structlog.get_logger(__name__)

PROCESSED_RETENTION_S = 7 * 24 * 3600.0
DEFAULT_APPROVAL_TTL_S = 5 * 60.0

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sender TEXT NOT NULL,
    role TEXT NOT NULL,
    text TEXT NOT NULL,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conversations_sender ON conversations (sender, id);

CREATE TABLE IF NOT EXISTS processed_messages (
    handle TEXT PRIMARY KEY,
    processed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS message_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    handle TEXT NOT NULL,
    sender TEXT NOT NULL,
    text TEXT NOT NULL,
    queued_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS running_task (
    slot INTEGER PRIMARY KEY CHECK (slot = 1),
    id TEXT NOT NULL,
    description TEXT NOT NULL,
    started_at REAL NOT NULL,
    pid INTEGER
);

CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_approvals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sender TEXT NOT NULL,
    description TEXT NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS directory_history (
    path TEXT PRIMARY KEY,
    last_used REAL NOT NULL,
    use_count INTEGER NOT NULL DEFAULT 1
);
"""


class RelayStore:
    """Relay state on a single SQLite connection (WAL mode)."""

    def __init__(self, path: str | Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(path), check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.executescript(_SCHEMA)
        self._db.commit()
        logger.info("store_opened", path=str(path))

    def close(self) -> None:
        self._db.close()

    # -- conversations ----------------------------------------------------

    def add_message(self, sender: str, role: Role, text: str) -> None:
        with self._db:
            self._db.execute(
                "INSERT INTO conversations (sender, role, text, timestamp) VALUES (?, ?, ?, ?)",
                (sender, role, text, self._clock()),
            )

    def recent_messages(self, sender: str, limit: int) -> list[ConversationRecord]:
        """The last ``limit`` records for ``sender``, oldest first."""
        rows = self._db.execute(
            "SELECT sender, role, text, timestamp FROM conversations "
            "WHERE sender = ? ORDER BY id DESC LIMIT ?",
            (sender, limit),
        ).fetchall()
        return [ConversationRecord(r["sender"], r["role"], r["text"], r["timestamp"]) for r in reversed(rows)]

    def last_message(self, sender: str) -> ConversationRecord | None:
        recent = self.recent_messages(sender, 1)
        return recent[0] if recent else None

    def trim_messages(self, sender: str, keep: int) -> int:
        """Drop all but the newest ``keep`` records for ``sender``."""
        with self._db:
            cur = self._db.execute(
                "DELETE FROM conversations WHERE sender = ? AND id NOT IN "
                "(SELECT id FROM conversations WHERE sender = ? ORDER BY id DESC LIMIT ?)",
                (sender, sender, keep),
            )
        return cur.rowcount

    def clear_messages(self, sender: str) -> None:
        with self._db:
            self._db.execute("DELETE FROM conversations WHERE sender = ?", (sender,))

    # -- processed-message ledger -----------------------------------------

    def is_processed(self, handle: str) -> bool:
        row = self._db.execute("SELECT 1 FROM processed_messages WHERE handle = ?", (handle,)).fetchone()
        return row is not None

    def mark_processed(self, handle: str) -> None:
        with self._db:
            self._db.execute(
                "INSERT OR IGNORE INTO processed_messages (handle, processed_at) VALUES (?, ?)",
                (handle, self._clock()),
            )

    def cleanup_processed(self, max_age_s: float = PROCESSED_RETENTION_S) -> int:
        with self._db:
            cur = self._db.execute(
                "DELETE FROM processed_messages WHERE processed_at < ?",
                (self._clock() - max_age_s,),
            )
        if cur.rowcount:
            logger.info("processed_ledger_cleaned", removed=cur.rowcount)
        return cur.rowcount

    # -- durable FIFO queue -----------------------------------------------

    def enqueue(self, handle: str, sender: str, text: str) -> int:
        """Append a turn and return its position (row id)."""
        with self._db:
            cur = self._db.execute(
                "INSERT INTO message_queue (handle, sender, text, queued_at) VALUES (?, ?, ?, ?)",
                (handle, sender, text, self._clock()),
            )
        return int(cur.lastrowid)

    def next_queued(self) -> QueuedTurn | None:
        row = self._db.execute("SELECT * FROM message_queue ORDER BY id ASC LIMIT 1").fetchone()
        return _queued(row) if row is not None else None

    def remove_queued(self, position: int) -> None:
        with self._db:
            self._db.execute("DELETE FROM message_queue WHERE id = ?", (position,))

    def queued(self) -> list[QueuedTurn]:
        return [_queued(r) for r in self._db.execute("SELECT * FROM message_queue ORDER BY id ASC")]

    def queue_length(self) -> int:
        return int(self._db.execute("SELECT COUNT(*) FROM message_queue").fetchone()[0])

    # -- running task (TaskTracker) ---------------------------------------

    def begin_task(self, task_id: str, description: str) -> None:
        with self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO running_task (slot, id, description, started_at, pid) "
                "VALUES (1, ?, ?, ?, NULL)",
                (task_id, description, self._clock()),
            )

    def attach_pid(self, task_id: str, pid: int) -> None:
        with self._db:
            self._db.execute("UPDATE running_task SET pid = ? WHERE id = ?", (pid, task_id))

    def clear_task(self, task_id: str | None = None) -> None:
        """Clear the running task; with ``task_id``, only if it is still that task."""
        with self._db:
            if task_id is None:
                self._db.execute("DELETE FROM running_task")
            else:
                self._db.execute("DELETE FROM running_task WHERE id = ?", (task_id,))

    def running_task(self) -> RunningTask | None:
        row = self._db.execute("SELECT id, description, started_at, pid FROM running_task").fetchone()
        if row is None:
            return None
        return RunningTask(row["id"], row["description"], row["started_at"], row["pid"])

    # -- key-value state --------------------------------------------------

    def get_state(self, key: str) -> str | None:
        row = self._db.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None else None

    def set_state(self, key: str, value: str) -> None:
        with self._db:
            self._db.execute("INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)", (key, value))

    # -- approvals --------------------------------------------------------

    def add_approval(self, sender: str, description: str, ttl_s: float = DEFAULT_APPROVAL_TTL_S) -> int:
        now = self._clock()
        with self._db:
            cur = self._db.execute(
                "INSERT INTO pending_approvals (sender, description, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (sender, description, now, now + ttl_s),
            )
        return int(cur.lastrowid)

    def pending_approval(self, sender: str) -> PendingApproval | None:
        """Newest unexpired approval for ``sender``."""
        row = self._db.execute(
            "SELECT * FROM pending_approvals WHERE sender = ? AND expires_at > ? ORDER BY id DESC LIMIT 1",
            (sender, self._clock()),
        ).fetchone()
        if row is None:
            return None
        return PendingApproval(row["id"], row["sender"], row["description"], row["created_at"], row["expires_at"])

    def remove_approval(self, approval_id: int) -> None:
        with self._db:
            self._db.execute("DELETE FROM pending_approvals WHERE id = ?", (approval_id,))

    def cleanup_expired_approvals(self) -> int:
        with self._db:
            cur = self._db.execute("DELETE FROM pending_approvals WHERE expires_at <= ?", (self._clock(),))
        return cur.rowcount

    # -- directory history ------------------------------------------------

    def record_directory(self, path: str) -> None:
        with self._db:
            self._db.execute(
                "INSERT INTO directory_history (path, last_used, use_count) VALUES (?, ?, 1) "
                "ON CONFLICT(path) DO UPDATE SET last_used = excluded.last_used, use_count = use_count + 1",
                (path, self._clock()),
            )

    def recent_directories(self, limit: int = 10) -> list[DirectoryUse]:
        rows = self._db.execute(
            "SELECT path, last_used, use_count FROM directory_history ORDER BY last_used DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [DirectoryUse(r["path"], r["last_used"], r["use_count"]) for r in rows]


def _queued(row: sqlite3.Row) -> QueuedTurn:
    return QueuedTurn(
        position=row["id"],
        handle=row["handle"],
        sender=row["sender"],
        text=row["text"],
        queued_at=row["queued_at"],
    )
