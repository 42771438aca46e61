"""Long-running relay process: single-instance lock, poll loop, shutdown."""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
import signal
import time

import structlog

from textme_relay.config import RelayConfig
from textme_relay.guard import AuditLog, ContentGuard
from textme_relay.media import Transcriber
from textme_relay.orchestrator import TurnOrchestrator
from textme_relay.responses import format_time_ago, preview
from textme_relay.store import RelayStore
from textme_relay.transport import SendblueTransport, Transport

logger = structlog.get_logger(__name__)

MAINTENANCE_INTERVAL_S = 3600.0
SHUTDOWN_GRACE_S = 30.0
PROCESS_MARKERS = ("textme",)


class LockError(RuntimeError):
    """Another relay instance holds the PID lock."""

    def __init__(self, pid: int, path: Path) -> None:
        super().__init__(f"another instance is already running (PID {pid}, lock {path})")
        self.pid = pid
        self.path = path


def _is_relay_process(pid: int) -> bool:
    """True when ``pid`` is alive and looks like a relay (not a recycled PID)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    cmdline = Path(f"/proc/{pid}/cmdline")
    if cmdline.exists():
        try:
            text = cmdline.read_bytes().replace(b"\0", b" ").decode("utf-8", errors="replace")
        except OSError:
            return True
        return any(marker in text for marker in PROCESS_MARKERS)
    # No /proc (macOS): assume it is ours.
    return True


class PidLock:
    """PID-file lock ensuring a single relay per state directory.

    Retries a few times so a supervisor restart that overlaps the old
    process's exit does not fail.
    """

    def __init__(self, path: str | Path, *, retries: int = 3, retry_delay_s: float = 0.5) -> None:
        self.path = Path(path)
        self.retries = retries
        self.retry_delay_s = retry_delay_s

    def holder(self) -> int | None:
        """PID of a live relay holding the lock, if any."""
        try:
            pid = int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None
        return pid if _is_relay_process(pid) else None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(1, self.retries + 1):
            pid = self.holder()
            if pid is None or pid == os.getpid():
                break
            if attempt == self.retries:
                raise LockError(pid, self.path)
            logger.info("lock_busy_retrying", pid=pid, attempt=attempt, retries=self.retries)
            time.sleep(self.retry_delay_s)
        if self.path.exists() and self.holder() is None:
            logger.info("stale_lock_removed", path=str(self.path))
        self.path.write_text(str(os.getpid()))
        logger.info("lock_acquired", pid=os.getpid(), path=str(self.path))

    def release(self) -> None:
        try:
            if int(self.path.read_text().strip()) == os.getpid():
                self.path.unlink()
                logger.info("lock_released", path=str(self.path))
        except (OSError, ValueError) as exc:
            logger.warning("lock_release_failed", path=str(self.path), error=str(exc))

    def __enter__(self) -> PidLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class RelayDaemon:
    """Wires config, store, transport and orchestrator, then polls until stopped."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        transport: Transport | None = None,
        store: RelayStore | None = None,
        transcriber: Transcriber | None = None,
    ) -> None:
        self.config = config
        self.store = store or RelayStore(config.db_path)
        self.transport = transport or SendblueTransport(
            config.sendblue.api_key,
            config.sendblue.api_secret,
            config.sendblue.phone_number,
        )
        guard = ContentGuard(
            config.whitelist,
            audit=AuditLog(config.audit_log_path),
            rate_limit=config.rate_limit_per_hour,
        )
        self.orchestrator = TurnOrchestrator(config, self.store, self.transport, guard, transcriber=transcriber)
        self._stop = asyncio.Event()
        self._signals_installed: list[int] = []

    def request_stop(self, signame: str = "stop") -> None:
        if self._stop.is_set():
            logger.warning("shutdown_forced", signal=signame)
            os._exit(1)
        logger.info("shutdown_requested", signal=signame)
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("signal_handler_unavailable", signal=sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def startup_message(self) -> str | None:
        primary = self.config.primary_sender
        if primary is None:
            return None
        message = f"🤖 Ready!\n📂 {self.orchestrator.workspace.current}"
        last = self.store.last_message(primary)
        if last is not None:
            who = "You" if last.role == "user" else "Claude"
            message += f'\n\n💬 Last ({format_time_ago(last.timestamp)}):\n{who}: "{preview(last.text, 50)}"'
        queued = self.store.queue_length()
        if queued:
            message += f"\n\n📥 {queued} queued"
        return message + '\n\n"?" for commands'

    async def _send_to_primary(self, text: str) -> None:
        primary = self.config.primary_sender
        if primary is None:
            return
        try:
            await self.transport.send_text(primary, text)
        except Exception as exc:
            logger.error("primary_notice_failed", error=str(exc))

    async def send_crash_notice(self, exc: BaseException, context: str) -> None:
        await self._send_to_primary(f"🚨 TextMe Daemon Crashed!\n\nContext: {context}\nError: {exc}")

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL_S)
            self.run_maintenance()

    def run_maintenance(self) -> None:
        removed = self.store.cleanup_processed()
        expired = self.store.cleanup_expired_approvals()
        logger.info(
            "maintenance_completed",
            processed_removed=removed,
            approvals_expired=expired,
            **self.orchestrator.guard.stats(),
        )

    async def _poll_loop(self) -> None:
        while not self._stop.is_set():
            await self.orchestrator.poll_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), self.config.poll_interval_s)

    async def run(self) -> None:
        logger.info(
            "daemon_starting",
            whitelist=list(self.config.whitelist),
            poll_interval_s=self.config.poll_interval_s,
            state_dir=str(self.config.state_dir),
        )
        # A task left over from a crash would keep the relay busy forever.
        stale = self.store.running_task()
        if stale is not None:
            logger.warning("stale_task_cleared", task_id=stale.id)
            self.store.clear_task()

        self._install_signal_handlers()
        maintenance = asyncio.create_task(self._maintenance_loop())
        try:
            await self.orchestrator.sessions.get_or_create(self.orchestrator.workspace.current)
            startup = self.startup_message()
            if startup is not None:
                await self._send_to_primary(startup)
            logger.info("daemon_running")
            await self._poll_loop()
        except Exception as exc:
            logger.error("daemon_crashed", error=str(exc), exc_info=True)
            await self.send_crash_notice(exc, "run loop")
            raise
        finally:
            maintenance.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await maintenance
            await self.orchestrator.shutdown(SHUTDOWN_GRACE_S)
            self._remove_signal_handlers()
            self.store.close()
            logger.info("daemon_stopped")
