"""Current working directory for the agent, persisted in the store."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

import structlog

from textme_relay.store import RelayStore

logger = structlog.get_logger(__name__)

CURRENT_PROJECT_KEY = "current_project"
ALLOWED_EXTRA_ROOTS: tuple[str, ...] = ("/tmp",)


class WorkspaceError(ValueError):
    """A ``cd`` target was refused."""


@dataclass(frozen=True)
class Workspace:
    store: RelayStore
    home: str = str(Path.home())

    @property
    def current(self) -> str:
        return self.store.get_state(CURRENT_PROJECT_KEY) or self.home

    def set_current(self, path: str) -> None:
        self.store.set_state(CURRENT_PROJECT_KEY, path)
        self.store.record_directory(path)
        logger.info("workspace_changed", path=path)

    def go_home(self) -> str:
        self.set_current(self.home)
        return self.home

    def shorten(self, path: str) -> str:
        """Display form with the home prefix as ``~``."""
        if path == self.home or path.startswith(self.home + os.sep):
            return "~" + path[len(self.home):]
        return path

    def resolve_cd_target(self, raw: str) -> str:
        """Expand and resolve a ``cd`` argument; raise WorkspaceError if refused.

        Only paths under the home directory or /tmp are allowed, and the
        target must be an existing directory.
        """
        target = raw.strip()
        if target.startswith("~"):
            target = self.home + target[1:]
        resolved = os.path.abspath(os.path.join(self.current, target))

        roots = (self.home, *ALLOWED_EXTRA_ROOTS)
        if not any(resolved == root or resolved.startswith(root.rstrip(os.sep) + os.sep) for root in roots):
            logger.warning("cd_blocked", path=resolved)
            raise WorkspaceError("Access denied: path outside allowed directories")
        if not os.path.isdir(resolved):
            raise WorkspaceError(f"Directory not found: {resolved}")
        return resolved
