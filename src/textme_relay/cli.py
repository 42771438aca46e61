"""CLI entry point: textme run, status, check-config."""

import asyncio
import datetime
import logging
from pathlib import Path

import click
import structlog

from textme_relay.config import ConfigError, RelayConfig, load_config


def _silence_logs() -> None:
    """Suppress structlog output in CLI mode."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
    )


def _configure_file_logging(log_dir: Path, verbose: bool = False) -> str:
    """Route structlog to a timestamped log file. Returns the log file path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = log_dir / f"textme-{ts}.log"

    log_file = open(log_path, "a")  # noqa: SIM115 (closed on process exit)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        logger_factory=structlog.WriteLoggerFactory(file=log_file),
    )

    return str(log_path)


def _load(config_path: str | None) -> RelayConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


@click.group()
@click.version_option(package_name="textme-relay")
def main() -> None:
    """TextMe — relay text messages to a coding agent."""
    _silence_logs()


@main.command()
@click.option("--config", "-c", "config_path", default=None, type=click.Path(), help="Config file (default: ~/.config/textme/config.json).")
@click.option("--verbose", "-v", is_flag=True, help="Log debug events (tool activity, polls).")
def run(config_path: str | None, verbose: bool) -> None:
    """Run the relay daemon in the foreground."""
    from textme_relay.daemon import LockError, PidLock, RelayDaemon

    config = _load(config_path)
    log_path = _configure_file_logging(config.log_dir, verbose=verbose)

    lock = PidLock(config.pid_path)
    try:
        lock.acquire()
    except LockError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    click.echo(f"Relay running. Log: {log_path}", err=True)
    try:
        asyncio.run(RelayDaemon(config).run())
    finally:
        lock.release()


@main.command()
@click.option("--config", "-c", "config_path", default=None, type=click.Path(), help="Config file.")
def status(config_path: str | None) -> None:
    """Show whether the daemon is running and what it is working on."""
    from textme_relay.daemon import PidLock
    from textme_relay.guard import AuditLog
    from textme_relay.responses import format_time_ago, preview
    from textme_relay.store import RelayStore
    from textme_relay.workspace import Workspace

    config = _load(config_path)
    pid = PidLock(config.pid_path).holder()
    click.echo(f"Daemon: {'running (PID ' + str(pid) + ')' if pid else 'not running'}")

    events = AuditLog(config.audit_log_path).read_events()
    if events:
        last = events[-1]
        click.echo(f"Security events: {len(events)} (last: {last['event']} at {last['timestamp']})")

    if not config.db_path.exists():
        click.echo("No state yet.")
        return
    store = RelayStore(config.db_path)
    try:
        click.echo(f"Directory: {Workspace(store).current}")
        task = store.running_task()
        if task is not None:
            click.echo(f"Working on: {preview(task.description, 60)} (started {format_time_ago(task.started_at)})")
        else:
            click.echo("Idle")
        click.echo(f"Queued: {store.queue_length()}")
    finally:
        store.close()


@main.command("check-config")
@click.option("--config", "-c", "config_path", default=None, type=click.Path(), help="Config file.")
def check_config(config_path: str | None) -> None:
    """Validate the config file and print a summary (secrets hidden)."""
    config = _load(config_path)
    click.echo(f"Config: {config.config_path}")
    click.echo(f"Sendblue number: {config.sendblue.phone_number}")
    click.echo(f"Whitelist: {', '.join(config.whitelist)}")
    click.echo(f"Poll interval: {config.poll_interval_s}s")
    click.echo(f"Agent: {config.agent_binary or 'claude (auto-detected)'} {' '.join(config.agent_args)}")
    click.echo(f"State dir: {config.state_dir}")
    click.echo("OK")
