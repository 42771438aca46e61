"""Control commands handled by the relay itself, never forwarded to the agent.

Commands are answered immediately, even while the agent is busy. Matching is
on the trimmed text, case-insensitive, first rule wins.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import time
from typing import Callable

import structlog

from textme_relay.prompts import HELP_MESSAGE
from textme_relay.responses import format_time_ago, preview, truncate
from textme_relay.session import SessionRegistry
from textme_relay.store import RelayStore
from textme_relay.workspace import Workspace, WorkspaceError

logger = structlog.get_logger(__name__)

HISTORY_RECORDS = 20
HISTORY_SHOWN = 10
HISTORY_EXPAND_CHARS = 1500
INTERRUPT_PARTIAL_CHARS = 10000


@dataclass(frozen=True)
class CommandRule:
    name: str
    pattern: re.Pattern[str]


@dataclass(frozen=True)
class CommandMatch:
    name: str
    argument: str | None = None


COMMAND_RULES: tuple[CommandRule, ...] = (
    CommandRule("help", re.compile(r"^(?:help|\?)$", re.IGNORECASE)),
    CommandRule("status", re.compile(r"^status\??$", re.IGNORECASE)),
    CommandRule("queue", re.compile(r"^(?:queue|q)$", re.IGNORECASE)),
    CommandRule("history", re.compile(r"^(?:history|h)(?:\s+(\d+))?$", re.IGNORECASE)),
    CommandRule("interrupt", re.compile(r"^(?:interrupt|stop|cancel)$", re.IGNORECASE)),
    CommandRule("home", re.compile(r"^home$", re.IGNORECASE)),
    CommandRule("reset", re.compile(r"^(?:reset|fresh|new session)$", re.IGNORECASE)),
    CommandRule("dirs", re.compile(r"^/?(?:dirs|projects)$", re.IGNORECASE)),
    CommandRule("cd", re.compile(r"^cd\s+(.+)$", re.IGNORECASE)),
    # Approval words only count while the sender has a pending approval.
    CommandRule("approve", re.compile(r"^(?:yes|y|approve|ok|go|run it|do it)$", re.IGNORECASE)),
    CommandRule("reject", re.compile(r"^(?:no|n|reject|deny)$", re.IGNORECASE)),
)

_APPROVAL_COMMANDS = frozenset({"approve", "reject"})


def match_command(text: str) -> CommandMatch | None:
    stripped = text.strip()
    for rule in COMMAND_RULES:
        match = rule.pattern.match(stripped)
        if match is not None:
            argument = match.group(1) if match.groups() else None
            return CommandMatch(rule.name, argument)
    return None


class ControlCommands:
    """Executes control commands against the relay state and returns the reply."""

    def __init__(
        self,
        store: RelayStore,
        workspace: Workspace,
        sessions: SessionRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.sessions = sessions
        self._clock = clock

    def dispatch(self, sender: str, text: str) -> str | None:
        """Reply for a control command, or None when ``text`` is not one."""
        command = match_command(text)
        if command is None:
            return None
        if command.name in _APPROVAL_COMMANDS and self.store.pending_approval(sender) is None:
            return None
        logger.info("control_command", command=command.name, sender=sender)
        handler = getattr(self, f"_cmd_{command.name}")
        return handler(sender, command.argument)

    # -- shared views -----------------------------------------------------

    def status_text(self) -> str:
        session = self.sessions.current
        task = self.store.running_task()
        queued = self.store.queue_length()

        lines = [
            f"Status: {'Active' if session is not None else 'No session'}",
            f"Directory: {self.workspace.current}",
        ]
        if task is not None:
            elapsed = round(self._clock() - task.started_at)
            lines.append(f"Working on: {task.description[:60]}...")
            lines.append(f"Elapsed: {elapsed}s")
        else:
            lines.append("Ready for input")
        if queued:
            lines.append(f"{queued} message{'s' if queued > 1 else ''} queued")
        return "\n".join(lines)

    def interrupt(self) -> str:
        task = self.store.running_task()
        if task is None:
            return "Nothing to interrupt."
        logger.info("interrupt_requested", task_id=task.id)
        partial = self.sessions.interrupt_current()
        # Drop the slot even if the session was already torn down.
        self.store.clear_task(task.id)
        if partial and partial.strip():
            if len(partial) > INTERRUPT_PARTIAL_CHARS:
                partial = partial[:INTERRUPT_PARTIAL_CHARS] + "\n\n..."
            return f"[Interrupted]\n\nPartial output:\n{partial}"
        return "[Interrupted] - No output yet."

    # -- handlers ---------------------------------------------------------

    def _cmd_help(self, sender: str, argument: str | None) -> str:
        return HELP_MESSAGE

    def _cmd_status(self, sender: str, argument: str | None) -> str:
        return self.status_text()

    def _cmd_interrupt(self, sender: str, argument: str | None) -> str:
        return self.interrupt()

    def _cmd_queue(self, sender: str, argument: str | None) -> str:
        queued = self.store.queued()
        if not queued:
            return "📭 Queue is empty"
        now = self._clock()
        lines = [f"📥 Queue ({len(queued)}):"]
        for i, entry in enumerate(queued, start=1):
            lines.append(f'{i}. "{preview(entry.text, 40)}" ({format_time_ago(entry.queued_at, now)})')
        return "\n".join(lines)

    def _cmd_history(self, sender: str, argument: str | None) -> str:
        records = self.store.recent_messages(sender, HISTORY_RECORDS)
        pairs = []
        for i, record in enumerate(records):
            if record.role != "user":
                continue
            reply = records[i + 1].text if i + 1 < len(records) and records[i + 1].role == "agent" else None
            pairs.append((record, reply))
        pairs.reverse()

        if not pairs:
            return "📜 No history yet"
        now = self._clock()

        if argument is not None:
            index = int(argument)
            if not 1 <= index <= len(pairs):
                return f"❌ Invalid index. Use 1-{len(pairs)}"
            record, reply = pairs[index - 1]
            detail = f"📜 #{index} ({format_time_ago(record.timestamp, now)})\n\n"
            detail += f'📤 You: "{record.text}"\n\n'
            if reply is not None:
                detail += f"📥 Claude: {truncate(reply, HISTORY_EXPAND_CHARS)}"
            else:
                detail += "⏳ No response yet (may be processing)"
            return detail

        lines = [f"📜 History ({len(pairs)}):"]
        for i, (record, reply) in enumerate(pairs[:HISTORY_SHOWN], start=1):
            mark = "✓" if reply is not None else "⏳"
            lines.append(f'{i}. {mark} "{preview(record.text, 35)}" ({format_time_ago(record.timestamp, now)})')
        if len(pairs) > HISTORY_SHOWN:
            lines.append(f"\n...and {len(pairs) - HISTORY_SHOWN} more")
        lines.append('\nUse "history N" to expand')
        return "\n".join(lines)

    def _cmd_home(self, sender: str, argument: str | None) -> str:
        home = self.workspace.go_home()
        self.sessions.kill_current()
        return f"🏠 Now in: {home}"

    def _cmd_reset(self, sender: str, argument: str | None) -> str:
        home = self.workspace.go_home()
        self.store.clear_messages(sender)
        self.sessions.kill_current()
        return f"🔄 Fresh start!\nDirectory: {home}\nChat history cleared."

    def _cmd_dirs(self, sender: str, argument: str | None) -> str:
        dirs = self.store.recent_directories(10)
        if not dirs:
            return "📂 No directory history yet"
        current = self.workspace.current
        now = self._clock()
        entries = []
        for i, use in enumerate(dirs, start=1):
            marker = " ← current" if use.path == current else ""
            entries.append(
                f"{i}. {self.workspace.shorten(use.path)}\n"
                f"   {format_time_ago(use.last_used, now)} ({use.use_count}x){marker}"
            )
        return "📂 Recent directories:\n\n" + "\n\n".join(entries)

    def _cmd_cd(self, sender: str, argument: str | None) -> str:
        try:
            target = self.workspace.resolve_cd_target(argument or "")
        except WorkspaceError as exc:
            return f"❌ {exc}"
        self.workspace.set_current(target)
        self.sessions.kill_current()
        return f"📂 Now in: {target}"

    def _cmd_approve(self, sender: str, argument: str | None) -> str:
        return self._resolve_approval(sender, approved=True)

    def _cmd_reject(self, sender: str, argument: str | None) -> str:
        return self._resolve_approval(sender, approved=False)

    def _resolve_approval(self, sender: str, *, approved: bool) -> str:
        approval = self.store.pending_approval(sender)
        if approval is not None:
            self.store.remove_approval(approval.id)
            logger.info("approval_resolved", approval_id=approval.id, approved=approved)
        return "✅ Approved. Executing..." if approved else "❌ Rejected. Command cancelled."
