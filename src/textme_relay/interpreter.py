"""Turn the agent's raw verbose output into progress notices and a final reply.

The agent CLI writes a terminal-oriented stream: ANSI colour codes, braille
spinner frames, boxed panels, echoed tool calls and numbered file excerpts,
with the actual answer mixed in. Two views are derived from it:

* ``extract_activity`` maps a single completed line to a short label such as
  ``"Reading: src/app.py"``. ``ActivityGate`` sits after it as a rate-limiting
  stage so a burst of tool calls produces at most one notice per interval.
* ``extract_final_response`` filters the whole accumulated stream down to the
  human-readable reply. It is a lossy heuristic line filter, not a parser:
  surviving lines keep their original relative order, and running it twice
  gives the same result as running it once.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import time
from typing import Callable, Iterable, Iterator

_ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


@dataclass(frozen=True)
class ActivityRule:
    """One tool-action shape: a line pattern and the label it produces."""

    pattern: re.Pattern[str]
    label: str

    def apply(self, line: str) -> str | None:
        match = self.pattern.search(line)
        if match is None:
            return None
        return f"{self.label}: {match.group(1).strip()}"


# Ordered: first match wins.
ACTIVITY_RULES: tuple[ActivityRule, ...] = (
    ActivityRule(re.compile(r"^Read\s+(.+)$", re.IGNORECASE), "Reading"),
    ActivityRule(re.compile(r"^Glob\s+(.+)$", re.IGNORECASE), "Searching"),
    ActivityRule(re.compile(r"^Grep\s+(.+)$", re.IGNORECASE), "Grep"),
    ActivityRule(re.compile(r"^Bash\s+(.+)$", re.IGNORECASE), "Running"),
    ActivityRule(re.compile(r"^Write\s+(.+)$", re.IGNORECASE), "Writing"),
    ActivityRule(re.compile(r"^Edit\s+(.+)$", re.IGNORECASE), "Editing"),
    ActivityRule(re.compile(r"^Task\s+(.+)$", re.IGNORECASE), "Task"),
    ActivityRule(re.compile(r"Reading file[:\s]+(.+)$", re.IGNORECASE), "Reading"),
    ActivityRule(re.compile(r"Running[:\s]+(.+)$", re.IGNORECASE), "Running"),
    ActivityRule(re.compile(r"Writing to[:\s]+(.+)$", re.IGNORECASE), "Writing"),
    ActivityRule(re.compile(r"Searching[:\s]+(.+)$", re.IGNORECASE), "Searching"),
)

# Structural noise dropped from the final reply (matched on the stripped line).
NOISE_RULES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^╭─+╮$"),
    re.compile(r"^│.*│$"),
    re.compile(r"^╰─+╯$"),
    re.compile(r"^─+$"),
    re.compile(rf"^[{SPINNER_FRAMES}]"),
    re.compile(r"^(?:Read|Glob|Grep|Bash|Write|Edit|Task|TodoWrite)\s+"),
    re.compile(r"^\d+\s*│"),
    re.compile(r"^>\s+"),
    re.compile(r"^User:"),
    re.compile(r"^Assistant:"),
)


def strip_decoration(text: str) -> str:
    """Remove terminal escape sequences and normalize line endings."""
    previous = None
    cleaned = text
    # Removing one sequence can expose another built from its neighbours.
    while cleaned != previous:
        previous = cleaned
        cleaned = _ANSI_RE.sub("", cleaned)
    return cleaned.replace("\r\n", "\n")


def extract_activity(line: str) -> str | None:
    """Map one output line to a tool-activity label, or None."""
    stripped = strip_decoration(line).strip()
    if not stripped:
        return None
    for rule in ACTIVITY_RULES:
        label = rule.apply(stripped)
        if label is not None:
            return label
    return None


def iter_activities(lines: Iterable[str]) -> Iterator[str]:
    """Lazily yield the activity labels found in ``lines``."""
    for line in lines:
        activity = extract_activity(line)
        if activity is not None:
            yield activity


class ActivityGate:
    """Minimum-interval gate for progress notices.

    An activity arriving while the gate is closed is dropped, not deferred.
    The first activity always passes.
    """

    def __init__(self, min_interval_s: float = 1.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last: float | None = None
        self.admitted = 0
        self.dropped = 0

    def admit(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.min_interval_s:
            self.dropped += 1
            return False
        self._last = now
        self.admitted += 1
        return True

    def filter(self, activities: Iterable[str]) -> Iterator[str]:
        for activity in activities:
            if self.admit():
                yield activity


class LineSplitter:
    """Reassemble complete lines from arbitrarily chunked text."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> list[str]:
        rest, self._buffer = self._buffer, ""
        return [rest] if rest else []


def _is_noise(line: str) -> bool:
    stripped = line.strip()
    return any(pattern.search(stripped) for pattern in NOISE_RULES)


def extract_final_response(raw: str) -> str:
    """Reduce the accumulated stream to the reply text (lossy, order-preserving)."""
    cleaned = strip_decoration(raw)
    kept = [line for line in cleaned.split("\n") if not _is_noise(line)]
    result = _BLANK_RUN_RE.sub("\n\n", "\n".join(kept))
    return result.strip()
