"""Relay configuration: JSON file plus environment overrides."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from pathlib import Path
from typing import Any, Mapping

import structlog

from textme_relay.guard import AuditLog, DEFAULT_RATE_LIMIT, validate_config_permissions
from textme_relay.responses import MAX_RESPONSE_CHARS
from textme_relay.session import DEFAULT_AGENT_ARGS, DEFAULT_TIMEOUT_S

logger = structlog.get_logger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".config" / "textme"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.json"


class ConfigError(Exception):
    """The configuration file is missing, unreadable or incomplete."""


@dataclass(frozen=True)
class SendblueCredentials:
    api_key: str
    api_secret: str
    phone_number: str


@dataclass(frozen=True)
class RelayConfig:
    whitelist: tuple[str, ...]
    sendblue: SendblueCredentials
    poll_interval_s: float = 5.0
    conversation_window: int = 20
    rate_limit_per_hour: int = DEFAULT_RATE_LIMIT
    agent_timeout_s: float = DEFAULT_TIMEOUT_S
    activity_interval_s: float = 1.0
    max_response_chars: int = MAX_RESPONSE_CHARS
    agent_binary: str | None = None
    agent_args: tuple[str, ...] = DEFAULT_AGENT_ARGS
    state_dir: Path = DEFAULT_STATE_DIR
    config_path: Path = field(default=DEFAULT_CONFIG_PATH, compare=False)

    @property
    def primary_sender(self) -> str | None:
        return self.whitelist[0] if self.whitelist else None

    @property
    def db_path(self) -> Path:
        return self.state_dir / "textme.db"

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / "security.log"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"


def config_path_from_env(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    override = env.get("TEXTME_CONFIG", "")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a JSON object")
    return data


def load_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> RelayConfig:
    """Load, validate and permission-check the relay config.

    Environment variables win over the file: SENDBLUE_API_KEY,
    SENDBLUE_API_SECRET, SENDBLUE_PHONE_NUMBER, TEXTME_WHITELIST
    (comma-separated) and TEXTME_AGENT_BIN.
    """
    env = os.environ if env is None else env
    config_path = Path(path).expanduser() if path else config_path_from_env(env)
    data = _read_json(config_path)

    sendblue = data.get("sendblue") or {}
    credentials = SendblueCredentials(
        api_key=env.get("SENDBLUE_API_KEY") or sendblue.get("api_key", ""),
        api_secret=env.get("SENDBLUE_API_SECRET") or sendblue.get("api_secret", ""),
        phone_number=env.get("SENDBLUE_PHONE_NUMBER") or sendblue.get("phone_number", ""),
    )
    if env.get("TEXTME_WHITELIST"):
        whitelist = tuple(n.strip() for n in env["TEXTME_WHITELIST"].split(",") if n.strip())
    else:
        whitelist = tuple(str(n) for n in data.get("whitelist", []))

    missing = [
        name
        for name, value in (
            ("sendblue.api_key", credentials.api_key),
            ("sendblue.api_secret", credentials.api_secret),
            ("sendblue.phone_number", credentials.phone_number),
        )
        if not value
    ]
    if not whitelist:
        missing.append("whitelist")
    if missing:
        raise ConfigError(f"config {config_path} is missing: {', '.join(missing)}")

    try:
        config = RelayConfig(
            whitelist=whitelist,
            sendblue=credentials,
            poll_interval_s=float(data.get("poll_interval_s", 5.0)),
            conversation_window=int(data.get("conversation_window", 20)),
            rate_limit_per_hour=int(data.get("rate_limit_per_hour", DEFAULT_RATE_LIMIT)),
            agent_timeout_s=float(data.get("agent_timeout_s", DEFAULT_TIMEOUT_S)),
            activity_interval_s=float(data.get("activity_interval_s", 1.0)),
            max_response_chars=int(data.get("max_response_chars", MAX_RESPONSE_CHARS)),
            agent_binary=env.get("TEXTME_AGENT_BIN") or data.get("agent_binary") or None,
            agent_args=tuple(data.get("agent_args", DEFAULT_AGENT_ARGS)),
            state_dir=Path(data["state_dir"]).expanduser() if data.get("state_dir") else config_path.parent,
            config_path=config_path,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value in {config_path}: {exc}") from exc

    validate_config_permissions(config_path, AuditLog(config.audit_log_path))
    logger.info(
        "config_loaded",
        path=str(config_path),
        whitelist=len(config.whitelist),
        poll_interval_s=config.poll_interval_s,
    )
    return config
