"""Agent session: one ``claude`` CLI subprocess bound to a working directory.

The CLI runs with ``--verbose`` so tool calls are visible on the stream while
it works, and ``--continue`` so it keeps its own context between turns. Each
``send`` spawns one process, writes the composed prompt to stdin, closes it,
and reads stdout/stderr incrementally until exit.

CLAUDECODE="" prevents the CLI from detecting a nested session when the relay
itself is started from inside one.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import functools
import glob
import inspect
import os
from pathlib import Path
import shutil
import time as _time
from typing import Awaitable, Callable, Protocol

import structlog

from textme_relay.interpreter import (
    ActivityGate,
    LineSplitter,
    extract_final_response,
    iter_activities,
)

logger = structlog.get_logger(__name__)

AGENT_BINARY_NAME = "claude"
DEFAULT_AGENT_ARGS: tuple[str, ...] = (
    "--verbose",
    "--continue",
    "--permission-mode",
    "bypassPermissions",
)
DEFAULT_TIMEOUT_S = 10 * 60.0
KILL_GRACE_S = 5.0
_READ_CHUNK = 4096

NO_RESPONSE = "No response from Claude."
TIMEOUT_MARKER = "[Response timed out]"

ActivityCallback = Callable[[str], "Awaitable[None] | None"]


class AgentProcessError(RuntimeError):
    """The agent process could not be spawned or exited without usable output."""

    def __init__(self, message: str, *, exit_status: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


class AgentTimeoutError(AgentProcessError):
    """Hard timeout fired before the agent produced anything usable."""


class AgentInterruptedError(AgentProcessError):
    """The turn was cancelled by the user; ``partial`` holds what was captured."""

    def __init__(self, partial: str | None) -> None:
        super().__init__("agent turn interrupted")
        self.partial = partial


class SessionState(str, enum.Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"
    INTERRUPTED = "interrupted"
    TERMINAL = "terminal"


class TaskTracker(Protocol):
    """Records the single running task (implemented by the store)."""

    def begin_task(self, task_id: str, description: str) -> None: ...

    def attach_pid(self, task_id: str, pid: int) -> None: ...

    def clear_task(self, task_id: str | None = None) -> None: ...


def _known_install_locations(name: str) -> list[Path]:
    home = Path.home()
    nvm = sorted(glob.glob(str(home / ".nvm" / "versions" / "node" / "*" / "bin" / name)), reverse=True)
    return [
        *(Path(p) for p in nvm),
        Path("/usr/local/bin") / name,
        home / ".local" / "bin" / name,
        Path("/opt/homebrew/bin") / name,
    ]


@functools.lru_cache(maxsize=None)
def find_agent_binary(name: str = AGENT_BINARY_NAME) -> str:
    """Locate the agent executable once per process.

    PATH lookup first, then well-known install locations, then the bare name
    (left to PATH resolution at spawn time).
    """
    found = shutil.which(name)
    if found:
        return found
    for candidate in _known_install_locations(name):
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    logger.warning("agent_binary_not_found", name=name)
    return name


def build_agent_env() -> dict[str, str]:
    """Environment for the agent subprocess."""
    env = dict(os.environ)
    env["CLAUDECODE"] = ""
    return env


class AgentSession:
    """A working-directory binding that runs one agent process per turn."""

    def __init__(
        self,
        working_directory: str | Path,
        *,
        binary: str | None = None,
        args: tuple[str, ...] | list[str] = DEFAULT_AGENT_ARGS,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        activity_interval_s: float = 1.0,
        tracker: TaskTracker | None = None,
    ) -> None:
        self.working_directory = str(working_directory)
        self._binary = binary
        self.args = tuple(args)
        self.timeout_s = timeout_s
        self.activity_interval_s = activity_interval_s
        self._tracker = tracker
        self.state = SessionState.IDLE
        self._active = True
        self._process: asyncio.subprocess.Process | None = None
        self._task_id: str | None = None
        self._stdout_chunks: list[str] = []
        self._interrupted = False

    @property
    def binary(self) -> str:
        return self._binary or find_agent_binary()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_processing(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def partial_output(self) -> str:
        """Raw (undecorated) stdout captured so far for the current turn."""
        return "".join(self._stdout_chunks)

    async def start(self) -> None:
        logger.info("agent_session_ready", cwd=self.working_directory, binary=self.binary)

    async def send(
        self,
        message: str,
        task_id: str | None = None,
        on_activity: ActivityCallback | None = None,
    ) -> str:
        """Run one turn through a fresh agent process and return the cleaned reply."""
        if not self._active:
            raise AgentProcessError("agent session is not active")
        if self._process is not None:
            raise AgentProcessError("agent session is already processing a turn")

        self.state = SessionState.DISPATCHING
        self._stdout_chunks = []
        self._interrupted = False
        if task_id and self._tracker is not None:
            self._task_id = task_id
            self._tracker.begin_task(task_id, message[:100])

        logger.info(
            "agent_request_started",
            task_id=task_id or "",
            prompt_chars=len(message),
            cwd=self.working_directory,
            activity_callback=on_activity is not None,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *self.args,
                cwd=self.working_directory,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_agent_env(),
            )
        except OSError as exc:
            self.state = SessionState.ERRORED
            self._clear_task()
            logger.error("agent_spawn_failed", binary=self.binary, error=str(exc))
            raise AgentProcessError(f"failed to start agent: {exc}") from exc

        self._process = proc
        if self._task_id and self._tracker is not None:
            self._tracker.attach_pid(self._task_id, proc.pid)
        logger.info("agent_spawned", pid=proc.pid, args=list(self.args))

        try:
            return await self._run(proc, message, on_activity)
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        finally:
            self._process = None
            self._clear_task()

    async def _run(
        self,
        proc: asyncio.subprocess.Process,
        message: str,
        on_activity: ActivityCallback | None,
    ) -> str:
        started_at = _time.monotonic()
        gate = ActivityGate(self.activity_interval_s)
        channel: asyncio.Queue[str | None] = asyncio.Queue()
        stderr_chunks: list[str] = []

        forwarder = asyncio.create_task(self._forward_activity(channel, on_activity))
        readers = {
            asyncio.create_task(self._pump(proc.stdout, gate, channel, self._stdout_chunks)),
            asyncio.create_task(self._pump(proc.stderr, gate, channel, stderr_chunks)),
        }
        # The deadline covers the stdin write: a child that never reads would block drain().
        writer = asyncio.create_task(self._write_prompt(proc, message))
        self.state = SessionState.STREAMING

        exit_waiter = asyncio.ensure_future(proc.wait())
        done, _ = await asyncio.wait({exit_waiter}, timeout=self.timeout_s)
        timed_out = not done
        if timed_out:
            logger.error("agent_timeout", pid=proc.pid, timeout_s=self.timeout_s)
            self.kill()

        await self._reap(proc, exit_waiter, readers)
        if not writer.done():
            writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
        channel.put_nowait(None)
        _, pending = await asyncio.wait({forwarder}, timeout=KILL_GRACE_S)
        for task in pending:
            task.cancel()

        stderr = "".join(stderr_chunks)
        clean = extract_final_response(self.partial_output)
        logger.info(
            "agent_process_closed",
            pid=proc.pid,
            exit_status=proc.returncode,
            duration_s=round(_time.monotonic() - started_at, 1),
            raw_chars=len(self.partial_output),
            clean_chars=len(clean),
            activities=gate.admitted,
            activities_dropped=gate.dropped,
            stderr_preview=stderr[:200],
        )

        if self._interrupted:
            self.state = SessionState.INTERRUPTED
            raise AgentInterruptedError(clean or None)
        if timed_out:
            self.state = SessionState.TIMED_OUT
            if clean:
                return f"{clean}\n\n{TIMEOUT_MARKER}"
            raise AgentTimeoutError("agent response timed out", exit_status=proc.returncode, stderr=stderr)
        if clean:
            self.state = SessionState.COMPLETED
            return clean
        if proc.returncode != 0:
            self.state = SessionState.ERRORED
            raise AgentProcessError(
                f"agent exited with status {proc.returncode}",
                exit_status=proc.returncode,
                stderr=stderr,
            )
        self.state = SessionState.COMPLETED
        return NO_RESPONSE

    async def _write_prompt(self, proc: asyncio.subprocess.Process, message: str) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(message.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The process died before reading its input; the exit status decides.
            logger.warning("agent_stdin_closed_early", pid=proc.pid, error=str(exc))

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        gate: ActivityGate,
        channel: asyncio.Queue[str | None],
        sink: list[str],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        splitter = LineSplitter()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            sink.append(text)
            self._publish(splitter.feed(text), gate, channel)
        tail = decoder.decode(b"", final=True)
        if tail:
            sink.append(tail)
        self._publish(splitter.feed(tail) + splitter.flush(), gate, channel)

    @staticmethod
    def _publish(lines: list[str], gate: ActivityGate, channel: asyncio.Queue[str | None]) -> None:
        for activity in gate.filter(iter_activities(lines)):
            channel.put_nowait(activity)

    async def _forward_activity(
        self,
        channel: asyncio.Queue[str | None],
        on_activity: ActivityCallback | None,
    ) -> None:
        while True:
            activity = await channel.get()
            if activity is None:
                return
            logger.debug("agent_tool_activity", activity=activity)
            if on_activity is None:
                continue
            try:
                result = on_activity(activity)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("activity_callback_failed", activity=activity, error=str(exc))

    async def _reap(
        self,
        proc: asyncio.subprocess.Process,
        exit_waiter: asyncio.Future,
        readers: set[asyncio.Task],
    ) -> None:
        """Wait for exit (escalating to SIGKILL) and for the pipes to drain."""
        try:
            await asyncio.wait_for(asyncio.shield(exit_waiter), KILL_GRACE_S)
        except asyncio.TimeoutError:
            logger.warning("agent_kill_escalated", pid=proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await exit_waiter

        done, pending = await asyncio.wait(readers, timeout=KILL_GRACE_S)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.warning("agent_stream_read_failed", error=str(exc))

    def _clear_task(self) -> None:
        if self._task_id is not None and self._tracker is not None:
            self._tracker.clear_task(self._task_id)
        self._task_id = None

    def kill(self) -> None:
        """Terminate the running process, if any. Idempotent.

        The in-flight ``send`` settles on its own once the process exits.
        """
        proc = self._process
        if proc is not None and proc.returncode is None:
            logger.info("agent_killing", pid=proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        self._clear_task()

    def interrupt(self) -> str | None:
        """Return the cleaned partial output (None if nothing usable), then kill."""
        if self._process is None:
            return None
        partial = extract_final_response(self.partial_output)
        self._interrupted = True
        self.kill()
        return partial or None

    async def exit(self) -> None:
        """Deactivate the session and wait for its process to go away."""
        self._active = False
        proc = self._process
        self.kill()
        if proc is not None:
            try:
                await asyncio.wait_for(proc.wait(), KILL_GRACE_S)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        self.state = SessionState.TERMINAL
        logger.info("agent_session_ended", cwd=self.working_directory)


SessionFactory = Callable[[str], AgentSession]


class SessionRegistry:
    """Holds the one agent session, keyed by working directory.

    Changing directory invalidates the agent's context, so the old session is
    torn down rather than re-pointed.
    """

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._session: AgentSession | None = None
        self._directory = ""

    @property
    def current(self) -> AgentSession | None:
        if self._session is not None and self._session.is_active:
            return self._session
        return None

    @property
    def directory(self) -> str:
        return self._directory

    async def get_or_create(self, working_directory: str | Path) -> AgentSession:
        directory = str(working_directory)
        current = self.current
        if current is not None and self._directory == directory:
            return current

        if self._session is not None:
            logger.info("agent_session_recycled", old_cwd=self._directory, new_cwd=directory)
            await self._session.exit()

        self._directory = directory
        self._session = self._factory(directory)
        await self._session.start()
        return self._session

    def kill_current(self) -> None:
        if self._session is not None:
            self._session.kill()
            self._session = None
            self._directory = ""

    def interrupt_current(self) -> str | None:
        session = self._session
        if session is not None and session.is_processing:
            return session.interrupt()
        return None
