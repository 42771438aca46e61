"""Tests for textme_relay.session — agent subprocess lifecycle and registry.

Sessions run against real throwaway subprocesses: the Python interpreter
executing a small script in place of the agent CLI.
"""

import asyncio
import sys
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from textme_relay.session import (
    NO_RESPONSE,
    AgentInterruptedError,
    AgentProcessError,
    AgentSession,
    AgentTimeoutError,
    SessionRegistry,
    SessionState,
    find_agent_binary,
)


class RecordingTracker:
    def __init__(self):
        self.calls: list[tuple] = []
        self.current: str | None = None

    def begin_task(self, task_id, description):
        self.calls.append(("begin", task_id, description))
        self.current = task_id

    def attach_pid(self, task_id, pid):
        self.calls.append(("pid", task_id, pid))

    def clear_task(self, task_id=None):
        self.calls.append(("clear", task_id))
        self.current = None


def _agent(tmp_path: Path, body: str, **kwargs) -> AgentSession:
    script = tmp_path / "fake_agent.py"
    script.write_text(textwrap.dedent(body))
    return AgentSession(tmp_path, binary=sys.executable, args=(str(script),), **kwargs)


async def _wait_for_output(session: AgentSession, needle: str, timeout: float = 5.0) -> None:
    async def poll():
        while needle not in session.partial_output:
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)


async def _wait_until_processing(session: AgentSession, timeout: float = 5.0) -> None:
    async def poll():
        while not session.is_processing:
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout)
    # Let the child start and block before it is signalled.
    await asyncio.sleep(0.1)


class TestSend:
    """One subprocess per turn; reply extracted from stdout."""

    @pytest.mark.asyncio
    async def test_returns_cleaned_reply_and_forwards_activity(self, tmp_path: Path):
        """The prompt arrives on stdin and activity lines are forwarded."""
        session = _agent(
            tmp_path,
            """
            import sys
            prompt = sys.stdin.read()
            print("Read src/app.py", flush=True)
            print("Prompt had", len(prompt), "chars")
            """,
        )
        seen = []
        reply = await session.send("hello agent", on_activity=seen.append)
        assert reply == "Prompt had 11 chars"
        assert seen == ["Reading: src/app.py"]
        assert session.state == SessionState.COMPLETED
        assert not session.is_processing

    @pytest.mark.asyncio
    async def test_async_activity_callback(self, tmp_path: Path):
        """Coroutine callbacks are awaited."""
        session = _agent(tmp_path, 'print("Bash ls -la")\nprint("done")\n')
        callback = AsyncMock()
        await session.send("x", on_activity=callback)
        callback.assert_awaited_once_with("Running: ls -la")

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_turn(self, tmp_path: Path):
        """A raising callback is logged and the turn still completes."""
        session = _agent(tmp_path, 'print("Read a.py")\nprint("ok")\n')

        def boom(activity):
            raise RuntimeError("transport down")

        assert await session.send("x", on_activity=boom) == "ok"

    @pytest.mark.asyncio
    async def test_runs_in_working_directory_with_nested_guard_env(self, tmp_path: Path):
        """The child runs in the bound directory with CLAUDECODE cleared."""
        session = _agent(
            tmp_path,
            """
            import os
            print(os.getcwd())
            print(repr(os.environ.get("CLAUDECODE")))
            """,
        )
        reply = await session.send("x")
        cwd, env_value = reply.splitlines()
        assert Path(cwd).resolve() == tmp_path.resolve()
        assert env_value == "''"

    @pytest.mark.asyncio
    async def test_clean_exit_without_output_is_sentinel(self, tmp_path: Path):
        """A clean exit with no output resolves to the no-response sentinel."""
        session = _agent(tmp_path, "import sys\nsys.stdin.read()\n")
        assert await session.send("x") == NO_RESPONSE

    @pytest.mark.asyncio
    async def test_noise_only_output_is_sentinel(self, tmp_path: Path):
        session = _agent(tmp_path, 'print("⠋ thinking")\nprint("Grep TODO")\n')
        assert await session.send("x") == NO_RESPONSE

    @pytest.mark.asyncio
    async def test_abnormal_exit_without_output_raises(self, tmp_path: Path):
        """A failing exit with nothing usable raises with status and stderr."""
        session = _agent(
            tmp_path,
            """
            import sys
            sys.stderr.write("auth failed\\n")
            sys.exit(3)
            """,
        )
        with pytest.raises(AgentProcessError) as exc_info:
            await session.send("x")
        assert exc_info.value.exit_status == 3
        assert "auth failed" in exc_info.value.stderr
        assert session.state == SessionState.ERRORED

    @pytest.mark.asyncio
    async def test_abnormal_exit_with_output_returns_output(self, tmp_path: Path):
        """Usable output wins over a non-zero exit status."""
        session = _agent(tmp_path, 'import sys\nprint("half an answer")\nsys.exit(1)\n')
        assert await session.send("x") == "half an answer"

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path: Path):
        """A missing binary raises AgentProcessError and errors the session."""
        tracker = RecordingTracker()
        session = AgentSession(tmp_path, binary=str(tmp_path / "missing-agent"), tracker=tracker)
        with pytest.raises(AgentProcessError):
            await session.send("x", task_id="task-1")
        assert tracker.current is None

    @pytest.mark.asyncio
    async def test_tracker_lifecycle(self, tmp_path: Path):
        """The running task is begun, given a PID, then cleared."""
        tracker = RecordingTracker()
        session = _agent(tmp_path, 'print("hi")\n', tracker=tracker)
        await session.send("describe me", task_id="task-7")
        kinds = [c[0] for c in tracker.calls]
        assert kinds == ["begin", "pid", "clear"]
        assert tracker.calls[0] == ("begin", "task-7", "describe me")
        assert tracker.current is None

    @pytest.mark.asyncio
    async def test_rejects_concurrent_send(self, tmp_path: Path):
        """Only one turn may run per session."""
        session = _agent(tmp_path, "import time\ntime.sleep(30)\n", timeout_s=5)
        first = asyncio.create_task(session.send("one"))
        await _wait_until_processing(session)
        with pytest.raises(AgentProcessError, match="already processing"):
            await session.send("two")
        session.interrupt()
        with pytest.raises(AgentInterruptedError):
            await first

    @pytest.mark.asyncio
    async def test_send_after_exit_raises(self, tmp_path: Path):
        session = _agent(tmp_path, 'print("hi")\n')
        await session.exit()
        assert session.state == SessionState.TERMINAL
        with pytest.raises(AgentProcessError, match="not active"):
            await session.send("x")


class TestTimeout:
    """Hard timeout kills the process and salvages partial output."""

    @pytest.mark.asyncio
    async def test_partial_output_returned_with_marker(self, tmp_path: Path):
        """On timeout, partial output is returned with the timeout marker."""
        tracker = RecordingTracker()
        session = _agent(
            tmp_path,
            """
            import time
            print("foo", flush=True)
            time.sleep(30)
            """,
            timeout_s=1.0,
            tracker=tracker,
        )
        reply = await session.send("x", task_id="task-1")
        assert reply == "foo\n\n[Response timed out]"
        assert session.state == SessionState.TIMED_OUT
        assert tracker.current is None

    @pytest.mark.asyncio
    async def test_deadline_covers_unread_large_prompt(self, tmp_path: Path):
        """A prompt bigger than the pipe buffer must not outlive the timeout."""
        session = _agent(
            tmp_path,
            """
            import time
            print("foo", flush=True)
            time.sleep(30)
            """,
            timeout_s=1.0,
        )
        reply = await asyncio.wait_for(session.send("x" * 2_000_000), timeout=15.0)
        assert reply == "foo\n\n[Response timed out]"
        assert not session.is_processing

    @pytest.mark.asyncio
    async def test_no_output_raises_timeout(self, tmp_path: Path):
        """A timeout with nothing captured raises AgentTimeoutError."""
        session = _agent(tmp_path, "import time\ntime.sleep(30)\n", timeout_s=0.3)
        with pytest.raises(AgentTimeoutError):
            await session.send("x")


class TestInterrupt:
    """interrupt() hands back the partial reply and settles send()."""

    @pytest.mark.asyncio
    async def test_interrupt_returns_partial(self, tmp_path: Path):
        """Interrupting hands back what was printed so far."""
        session = _agent(
            tmp_path,
            """
            import time
            print("partial work", flush=True)
            time.sleep(30)
            """,
        )
        task = asyncio.create_task(session.send("x"))
        await _wait_for_output(session, "partial work")

        assert session.interrupt() == "partial work"
        with pytest.raises(AgentInterruptedError) as exc_info:
            await task
        assert exc_info.value.partial == "partial work"
        assert session.state == SessionState.INTERRUPTED

    @pytest.mark.asyncio
    async def test_interrupt_with_no_output(self, tmp_path: Path):
        """Interrupting before any output yields None."""
        session = _agent(tmp_path, "import time\ntime.sleep(30)\n")
        task = asyncio.create_task(session.send("x"))
        await _wait_until_processing(session)
        assert session.interrupt() is None
        with pytest.raises(AgentInterruptedError) as exc_info:
            await task
        assert exc_info.value.partial is None

    def test_interrupt_when_idle(self, tmp_path: Path):
        assert AgentSession(tmp_path).interrupt() is None

    def test_kill_when_idle_is_noop(self, tmp_path: Path):
        session = AgentSession(tmp_path)
        session.kill()
        session.kill()


class TestFindAgentBinary:
    """PATH first, then known install locations, then the bare name."""

    def setup_method(self):
        find_agent_binary.cache_clear()

    def teardown_method(self):
        find_agent_binary.cache_clear()

    def test_path_lookup_wins(self):
        """A binary on PATH is preferred."""
        with patch("textme_relay.session.shutil.which", return_value="/usr/bin/claude"):
            assert find_agent_binary() == "/usr/bin/claude"

    def test_known_location(self, tmp_path: Path):
        """Well-known install locations are searched after PATH."""
        candidate = tmp_path / "claude"
        candidate.write_text("#!/bin/sh\n")
        candidate.chmod(0o755)
        with (
            patch("textme_relay.session.shutil.which", return_value=None),
            patch("textme_relay.session._known_install_locations", return_value=[tmp_path / "nope", candidate]),
        ):
            assert find_agent_binary() == str(candidate)

    def test_falls_back_to_bare_name(self):
        """With nothing found, the bare name is left to PATH at spawn time."""
        with (
            patch("textme_relay.session.shutil.which", return_value=None),
            patch("textme_relay.session._known_install_locations", return_value=[]),
        ):
            assert find_agent_binary() == "claude"

    def test_cached(self):
        with patch("textme_relay.session.shutil.which", return_value="/a/claude") as mock_which:
            find_agent_binary()
            find_agent_binary()
        assert mock_which.call_count == 1


def _fake_session(directory: str) -> MagicMock:
    session = MagicMock(spec=AgentSession)
    session.working_directory = directory
    session.is_active = True
    session.is_processing = False
    session.start = AsyncMock()
    session.exit = AsyncMock()
    return session


class TestSessionRegistry:
    """One session at a time, keyed by working directory."""

    @pytest.mark.asyncio
    async def test_reuses_session_for_same_directory(self):
        """The same directory reuses the live session."""
        factory = MagicMock(side_effect=_fake_session)
        registry = SessionRegistry(factory)
        first = await registry.get_or_create("/home/u/a")
        second = await registry.get_or_create("/home/u/a")
        assert first is second
        assert factory.call_count == 1
        first.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_new_directory_tears_down_old(self):
        """A new directory exits the old session before creating another."""
        registry = SessionRegistry(_fake_session)
        old = await registry.get_or_create("/home/u/a")
        new = await registry.get_or_create("/home/u/b")
        assert new is not old
        old.exit.assert_awaited_once()
        assert new.working_directory == "/home/u/b"
        assert registry.directory == "/home/u/b"

    @pytest.mark.asyncio
    async def test_inactive_session_replaced(self):
        registry = SessionRegistry(_fake_session)
        old = await registry.get_or_create("/home/u/a")
        old.is_active = False
        assert registry.current is None
        assert await registry.get_or_create("/home/u/a") is not old

    @pytest.mark.asyncio
    async def test_kill_current_forgets_session(self):
        registry = SessionRegistry(_fake_session)
        session = await registry.get_or_create("/home/u/a")
        registry.kill_current()
        session.kill.assert_called_once()
        assert registry.current is None

    @pytest.mark.asyncio
    async def test_interrupt_current_only_when_processing(self):
        """Interrupt is a no-op when nothing is running."""
        registry = SessionRegistry(_fake_session)
        session = await registry.get_or_create("/home/u/a")
        assert registry.interrupt_current() is None
        session.is_processing = True
        session.interrupt.return_value = "so far"
        assert registry.interrupt_current() == "so far"
