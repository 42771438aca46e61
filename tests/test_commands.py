"""Tests for textme_relay.commands — control-command matching and replies."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from textme_relay.commands import ControlCommands, match_command
from textme_relay.prompts import HELP_MESSAGE
from textme_relay.session import AgentSession, SessionRegistry
from textme_relay.store import RelayStore
from textme_relay.workspace import Workspace

SENDER = "+15550100"


def _fake_session(directory: str) -> MagicMock:
    session = MagicMock(spec=AgentSession)
    session.working_directory = directory
    session.is_active = True
    session.is_processing = False
    session.start = AsyncMock()
    session.exit = AsyncMock()
    return session


class Clock:
    now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def env(tmp_path: Path):
    home = tmp_path / "home"
    (home / "app").mkdir(parents=True)
    clock = Clock()
    store = RelayStore(tmp_path / "textme.db", clock=clock)
    workspace = Workspace(store, home=str(home))
    sessions = SessionRegistry(_fake_session)
    commands = ControlCommands(store, workspace, sessions, clock=clock)
    yield commands
    store.close()


class TestMatchCommand:
    """First rule wins; matching is case-insensitive on trimmed text."""

    @pytest.mark.parametrize(
        ("text", "name"),
        [
            ("help", "help"),
            (" ? ", "help"),
            ("Status?", "status"),
            ("q", "queue"),
            ("STOP", "interrupt"),
            ("cancel", "interrupt"),
            ("new session", "reset"),
            ("/projects", "dirs"),
            ("cd ~/app", "cd"),
            ("run it", "approve"),
            ("deny", "reject"),
        ],
    )
    def test_names(self, text: str, name: str):
        """Each alias resolves to its command name."""
        assert match_command(text).name == name

    def test_history_index(self):
        """The optional history index is captured as the argument."""
        assert match_command("history 3").argument == "3"
        assert match_command("h").argument is None

    def test_cd_keeps_path_case(self):
        """Matching ignores case but the path keeps its original case."""
        assert match_command("CD ~/MyProject").argument == "~/MyProject"

    def test_plain_text_is_not_a_command(self):
        """Sentences that merely contain a keyword go to the agent."""
        assert match_command("please fix the tests") is None
        assert match_command("status of the build?") is None


class TestDispatch:
    def test_help(self, env: ControlCommands):
        assert env.dispatch(SENDER, "help") == HELP_MESSAGE

    def test_not_a_command(self, env: ControlCommands):
        """Non-commands return None so the caller dispatches to the agent."""
        assert env.dispatch(SENDER, "refactor the parser") is None

    def test_status_idle(self, env: ControlCommands):
        """Idle status shows the directory and readiness."""
        reply = env.dispatch(SENDER, "status")
        assert reply.splitlines() == ["Status: No session", f"Directory: {env.workspace.home}", "Ready for input"]

    def test_status_busy(self, env: ControlCommands):
        """Busy status shows the task preview, elapsed time and queue size."""
        env.store.begin_task("task-1", "fix the flaky login test")
        env.store.enqueue("h1", SENDER, "next")
        env._clock.now += 42
        reply = env.dispatch(SENDER, "status")
        assert "Working on: fix the flaky login test..." in reply
        assert "Elapsed: 42s" in reply
        assert reply.endswith("1 message queued")

    def test_queue_listing(self, env: ControlCommands):
        """Queued turns are listed oldest first with their age."""
        assert env.dispatch(SENDER, "queue") == "📭 Queue is empty"
        env.store.enqueue("h1", SENDER, "task A")
        env.store.enqueue("h2", SENDER, "task B")
        assert env.dispatch(SENDER, "q") == '📥 Queue (2):\n1. "task A" (just now)\n2. "task B" (just now)'

    def test_interrupt_when_idle(self, env: ControlCommands):
        assert env.dispatch(SENDER, "interrupt") == "Nothing to interrupt."

    def test_interrupt_returns_partial(self, env: ControlCommands):
        """Partial output is returned and the task slot cleared."""
        env.store.begin_task("task-1", "long job")
        env.sessions.interrupt_current = MagicMock(return_value="step 1 done")
        assert env.dispatch(SENDER, "stop") == "[Interrupted]\n\nPartial output:\nstep 1 done"
        assert env.store.running_task() is None

    def test_interrupt_without_output(self, env: ControlCommands):
        env.store.begin_task("task-1", "long job")
        env.sessions.interrupt_current = MagicMock(return_value=None)
        assert env.dispatch(SENDER, "cancel") == "[Interrupted] - No output yet."

    def test_interrupt_partial_capped(self, env: ControlCommands):
        """Long partial output is capped with an ellipsis."""
        env.store.begin_task("task-1", "long job")
        env.sessions.interrupt_current = MagicMock(return_value="x" * 12000)
        reply = env.dispatch(SENDER, "interrupt")
        assert reply.endswith("x" * 10 + "\n\n...")
        assert len(reply) < 10100


class TestHistory:
    def test_empty(self, env: ControlCommands):
        assert env.dispatch(SENDER, "history") == "📜 No history yet"

    def test_pairs_newest_first(self, env: ControlCommands):
        """Exchanges are listed newest first; an unanswered one shows as pending."""
        env.store.add_message(SENDER, "user", "first question")
        env.store.add_message(SENDER, "agent", "first answer")
        env.store.add_message(SENDER, "user", "second question")
        reply = env.dispatch(SENDER, "history")
        lines = reply.splitlines()
        assert lines[0] == "📜 History (2):"
        assert lines[1] == '1. ⏳ "second question" (just now)'
        assert lines[2] == '2. ✓ "first question" (just now)'
        assert reply.endswith('Use "history N" to expand')

    def test_expand(self, env: ControlCommands):
        """Expanding an entry shows both sides, truncating the reply."""
        env.store.add_message(SENDER, "user", "what broke?")
        env.store.add_message(SENDER, "agent", "y" * 2000)
        reply = env.dispatch(SENDER, "history 1")
        assert reply.startswith('📜 #1 (just now)\n\n📤 You: "what broke?"')
        assert reply.endswith("[Truncated]")

    def test_invalid_index(self, env: ControlCommands):
        """Out-of-range indexes name the valid range."""
        env.store.add_message(SENDER, "user", "q")
        assert env.dispatch(SENDER, "h 5") == "❌ Invalid index. Use 1-1"


class TestNavigation:
    @pytest.mark.asyncio
    async def test_cd_kills_session_and_sets_directory(self, env: ControlCommands):
        """Changing directory tears down the session bound to the old one."""
        session = await env.sessions.get_or_create(env.workspace.current)
        target = str(Path(env.workspace.home) / "app")
        assert env.dispatch(SENDER, "cd ~/app") == f"📂 Now in: {target}"
        assert env.workspace.current == target
        session.kill.assert_called_once()
        assert env.sessions.current is None

    def test_cd_missing(self, env: ControlCommands):
        """A nonexistent target is reported and nothing changes."""
        reply = env.dispatch(SENDER, "cd ~/missing")
        assert reply.startswith("❌ Directory not found")

    def test_home(self, env: ControlCommands):
        env.workspace.set_current(str(Path(env.workspace.home) / "app"))
        assert env.dispatch(SENDER, "home") == f"🏠 Now in: {env.workspace.home}"
        assert env.workspace.current == env.workspace.home

    def test_reset_clears_only_this_sender(self, env: ControlCommands):
        """Reset wipes the caller's history and leaves other senders alone."""
        env.store.add_message(SENDER, "user", "mine")
        env.store.add_message("+1999", "user", "theirs")
        reply = env.dispatch(SENDER, "fresh")
        assert reply.startswith("🔄 Fresh start!")
        assert env.store.recent_messages(SENDER, 10) == []
        assert len(env.store.recent_messages("+1999", 10)) == 1

    def test_dirs(self, env: ControlCommands):
        """Directory history marks the current directory."""
        assert env.dispatch(SENDER, "dirs") == "📂 No directory history yet"
        env.workspace.set_current(str(Path(env.workspace.home) / "app"))
        reply = env.dispatch(SENDER, "projects")
        assert "1. ~/app" in reply
        assert "(1x) ← current" in reply


class TestApprovals:
    """Approval words are commands only while an approval is pending."""

    def test_yes_without_pending_goes_to_agent(self, env: ControlCommands):
        """Without a pending approval, "yes" is ordinary text."""
        assert env.dispatch(SENDER, "yes") is None

    def test_approve(self, env: ControlCommands):
        """Approving consumes the pending approval."""
        env.store.add_approval(SENDER, "deploy to prod")
        assert env.dispatch(SENDER, "ok") == "✅ Approved. Executing..."
        assert env.store.pending_approval(SENDER) is None

    def test_reject(self, env: ControlCommands):
        env.store.add_approval(SENDER, "drop table")
        assert env.dispatch(SENDER, "no") == "❌ Rejected. Command cancelled."
