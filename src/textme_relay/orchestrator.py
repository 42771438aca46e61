"""Turn orchestration: admit, dedupe, queue, dispatch, and reply.

Polling and the agent worker are decoupled: ``poll_once`` never waits for the
agent, so control commands (status, queue, interrupt) are answered while a
turn is running. At most one worker task exists; it drains the durable queue
in FIFO order before going idle.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from textme_relay.commands import ControlCommands
from textme_relay.config import RelayConfig
from textme_relay.guard import ContentGuard, GuardRejection
from textme_relay.media import Transcriber, annotate_attachments
from textme_relay.models import FileDirective, Turn
from textme_relay.prompts import NOT_ALLOWED_MESSAGE, RATE_LIMITED_MESSAGE, build_context_prompt
from textme_relay.responses import deduplicate_response, parse_send_file_tags, preview, truncate
from textme_relay.session import AgentInterruptedError, AgentSession, SessionRegistry
from textme_relay.store import RelayStore
from textme_relay.transport import Transport
from textme_relay.workspace import Workspace

logger = structlog.get_logger(__name__)

INTERRUPTED_RECORD = "[Interrupted]"
INITIAL_LOOKBACK_S = 60.0


def session_factory(config: RelayConfig, store: RelayStore) -> Callable[[str], AgentSession]:
    def build(directory: str) -> AgentSession:
        return AgentSession(
            directory,
            binary=config.agent_binary,
            args=config.agent_args,
            timeout_s=config.agent_timeout_s,
            activity_interval_s=config.activity_interval_s,
            tracker=store,
        )

    return build


class TurnOrchestrator:
    """Owns the session registry, the worker task and the poll cursor."""

    def __init__(
        self,
        config: RelayConfig,
        store: RelayStore,
        transport: Transport,
        guard: ContentGuard,
        *,
        sessions: SessionRegistry | None = None,
        workspace: Workspace | None = None,
        transcriber: Transcriber | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport
        self.guard = guard
        self.sessions = sessions or SessionRegistry(session_factory(config, store))
        self.workspace = workspace or Workspace(store)
        self.transcriber = transcriber
        self.commands = ControlCommands(store, self.workspace, self.sessions, clock=clock)
        self._clock = clock
        self.since = clock() - INITIAL_LOOKBACK_S
        self._polling = False
        self._worker: asyncio.Task | None = None
        self._accepting = True

    @property
    def is_busy(self) -> bool:
        return (self._worker is not None and not self._worker.done()) or self.store.running_task() is not None

    # -- polling ----------------------------------------------------------

    async def poll_once(self) -> None:
        """One poll of the transport. Skipped when the previous poll is still running."""
        if self._polling:
            logger.debug("poll_skipped")
            return
        self._polling = True
        try:
            started = self._clock()
            turns = await self.transport.poll_inbound(self.since)
            self.since = started
            logger.debug("poll_completed", turns=len(turns), busy=self.is_busy, queued=self.store.queue_length())

            for turn in turns:
                if self.store.is_processed(turn.handle):
                    logger.debug("turn_already_processed", handle=turn.handle)
                    continue
                self.store.mark_processed(turn.handle)
                try:
                    await self.handle_turn(turn)
                except Exception as exc:
                    logger.error(
                        "turn_intake_failed",
                        handle=turn.handle,
                        sender=turn.sender,
                        error=str(exc),
                        exc_info=True,
                    )

            if not self.is_busy and self.store.queue_length() and self._accepting:
                logger.info("queue_resumed", queued=self.store.queue_length())
                self._start_worker(None)
        except Exception as exc:
            logger.error("poll_failed", error=str(exc), exc_info=True)
        finally:
            self._polling = False

    # -- intake -----------------------------------------------------------

    async def handle_turn(self, turn: Turn) -> None:
        try:
            self.guard.admit(turn.sender)
        except GuardRejection as rejection:
            logger.info("turn_rejected", reason=rejection.reason, sender=turn.sender, handle=turn.handle)
            notice = RATE_LIMITED_MESSAGE if rejection.reason == "rate_limited" else NOT_ALLOWED_MESSAGE
            await self._notify(turn.sender, notice)
            return

        text = turn.text.strip()
        if not text and not turn.attachments:
            logger.debug("turn_empty", handle=turn.handle)
            return
        if turn.attachments:
            text = await annotate_attachments(text, turn.attachments, self.transcriber)

        # Screened after annotation so transcriptions are covered.
        text = self.guard.sanitize(text).text
        hits = self.guard.scan_suspicious(text)
        if hits:
            logger.warning("suspicious_turn", sender=turn.sender, patterns=hits)

        logger.info("turn_received", sender=turn.sender, handle=turn.handle, text=preview(text, 80))

        reply = self.commands.dispatch(turn.sender, text)
        if reply is not None:
            await self._notify(turn.sender, reply)
            return

        if self.is_busy or not self._accepting:
            self.store.enqueue(turn.handle, turn.sender, text)
            position = self.store.queue_length()
            logger.info("turn_queued", handle=turn.handle, position=position)
            await self._notify(
                turn.sender,
                f'📥 Queued (position {position}): "{preview(text, 40)}"\n📂 {self.workspace.current}',
            )
            return

        self._start_worker(Turn(turn.sender, text, turn.handle, turn.arrived_at, turn.attachments))

    # -- worker -----------------------------------------------------------

    def _start_worker(self, first: Turn | None) -> None:
        self._worker = asyncio.create_task(self._work(first))

    async def _work(self, first: Turn | None) -> None:
        try:
            await self._drain(first)
        except Exception as exc:
            logger.error("worker_failed", error=str(exc), exc_info=True)

    async def _drain(self, first: Turn | None) -> None:
        if first is not None:
            await self._process(first.sender, first.text, from_queue=False)
        while self._accepting:
            entry = self.store.next_queued()
            if entry is None:
                break
            self.store.remove_queued(entry.position)
            remaining = self.store.queue_length()
            still = f" | {remaining} still queued" if remaining else ""
            logger.info("turn_dequeued", handle=entry.handle, remaining=remaining)
            await self._notify(
                entry.sender,
                f'📬 Now processing: "{preview(entry.text, 50)}"{still}\n📂 {self.workspace.current}',
            )
            await self._process(entry.sender, entry.text, from_queue=True)

    async def _process(self, sender: str, text: str, *, from_queue: bool) -> None:
        started = self._clock()
        directory = self.workspace.current
        logger.info("turn_processing", sender=sender, text=preview(text, 60), from_queue=from_queue)

        if not from_queue:
            queued = self.store.queue_length()
            queue_info = f" | {queued} queued" if queued else ""
            await self._notify(sender, f'🔄 Starting: "{preview(text, 50)}"{queue_info}\n📂 {directory}')

        window = self.config.conversation_window
        self.store.add_message(sender, "user", text)
        activity_count = 0

        async def forward_activity(activity: str) -> None:
            nonlocal activity_count
            activity_count += 1
            await self._notify(sender, f"🔧 {activity}")

        try:
            prompt = build_context_prompt(directory, self.store.recent_messages(sender, window), text)
            session = await self.sessions.get_or_create(directory)
            task_id = f"task-{int(self._clock() * 1000)}"
            response = await session.send(prompt, task_id, on_activity=forward_activity)
        except AgentInterruptedError:
            logger.info("turn_interrupted", sender=sender)
            self.store.add_message(sender, "agent", INTERRUPTED_RECORD)
            self.store.trim_messages(sender, window)
            return
        except Exception as exc:
            logger.error("turn_failed", sender=sender, error=str(exc), exc_info=True)
            self.sessions.kill_current()
            await self._notify(
                sender,
                f'⚠️ Error processing: "{preview(text, 50)}"\n\nError: {exc}\n\nPlease try again.',
            )
            return

        files, cleaned = parse_send_file_tags(response)
        if files:
            await self._send_files(sender, files)

        final = truncate(deduplicate_response(cleaned), self.config.max_response_chars)
        if final.strip():
            prefix = "✅ Done\n\n" if activity_count else ""
            await self._deliver(sender, prefix + final)
        elif not files:
            await self._deliver(sender, "✅ Done")

        record = cleaned
        if files:
            record += f"\n\n[Sent {len(files)} file(s): {', '.join(f.path for f in files)}]"
        self.store.add_message(sender, "agent", record)
        self.store.trim_messages(sender, window)
        logger.info(
            "turn_completed",
            sender=sender,
            duration_s=round(self._clock() - started, 1),
            response_chars=len(response),
            activities=activity_count,
            files=len(files),
        )

    async def _send_files(self, sender: str, files: list[FileDirective]) -> None:
        for directive in files:
            try:
                await self.transport.send_file(sender, directive.path, directive.caption)
                logger.info("file_sent", path=directive.path, remote=directive.is_remote)
            except FileNotFoundError:
                logger.error("file_not_found", path=directive.path)
                await self._notify(sender, f"⚠️ Could not send file: {directive.path} (not found)")
            except Exception as exc:
                logger.error("file_send_failed", path=directive.path, error=str(exc))
                await self._notify(sender, f"⚠️ Failed to send file: {directive.path}\nError: {exc}")

    # -- outbound ---------------------------------------------------------

    async def _notify(self, recipient: str, text: str) -> bool:
        """Best-effort notice; failures are logged."""
        try:
            await self.transport.send_text(recipient, text)
            return True
        except Exception as exc:
            logger.warning("notice_send_failed", recipient=recipient, error=str(exc))
            return False

    async def _deliver(self, recipient: str, text: str) -> None:
        """Final response: one retry, then logged as dropped."""
        for attempt in (1, 2):
            try:
                await self.transport.send_text(recipient, text)
                return
            except Exception as exc:
                logger.warning("response_send_failed", recipient=recipient, attempt=attempt, error=str(exc))
        logger.error("response_dropped", recipient=recipient, chars=len(text))

    # -- control ----------------------------------------------------------

    async def wait_idle(self) -> None:
        if self._worker is not None:
            await asyncio.shield(self._worker)

    async def shutdown(self, grace_s: float = 30.0) -> None:
        """Stop taking new work, give the running turn ``grace_s``, then kill."""
        self._accepting = False
        worker = self._worker
        if worker is not None and not worker.done():
            logger.info("shutdown_waiting", grace_s=grace_s)
            done, _ = await asyncio.wait({worker}, timeout=grace_s)
            if not done:
                logger.warning("shutdown_grace_expired")
                self.sessions.kill_current()
                worker.cancel()
                await asyncio.wait({worker}, timeout=5.0)
        current = self.sessions.current
        if current is not None:
            await current.exit()
        logger.info("orchestrator_stopped", queued=self.store.queue_length())
