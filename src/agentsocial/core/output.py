"""Line-oriented scanning of agent output.

The agent's stdout carries three things at once: the human-readable answer,
``[NOTIFY]`` lines meant to be relayed to the chat immediately, and
interactive confirmation prompts that must be answered on stdin.

Pipe reads do not respect line boundaries, so a marker or an escape
sequence can be split across two chunks. ``OutputScanner`` keeps the
unterminated tail between feeds and only classifies complete lines. The
one exception is confirmation prompts: they are usually printed without a
trailing newline while the agent blocks on stdin, so the pending tail is
checked for a prompt too (and reported once).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

NOTIFY_MARKER = "[NOTIFY]"

_ANSI_RE = re.compile(
    r"""
    \x1b\[[0-?]*[ -/]*[@-~]              # CSI: colours, cursor movement
    | \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)  # OSC: titles, hyperlinks
    | \x1b[@-Z\\-_]                      # two-byte escapes
    """,
    re.VERBOSE,
)
# An escape sequence cut off at the end of the pending tail
_ANSI_TAIL_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*)?$")

APPROVAL_PROMPT_RE = re.compile(
    r"Allow execution|Apply this change|Do you want to proceed|\(y/n\)|\[y/N\]|\[Y/n\]",
    re.IGNORECASE,
)


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences."""
    return _ANSI_RE.sub("", text)


def extract_notification(line: str) -> str | None:
    """Payload after the ``[NOTIFY]`` marker, or None if absent or empty."""
    if NOTIFY_MARKER not in line:
        return None
    payload = line.split(NOTIFY_MARKER, 1)[1].strip()
    return payload or None


def is_approval_prompt(line: str) -> bool:
    return bool(APPROVAL_PROMPT_RE.search(line))


class OutputKind(str, Enum):
    LINE = "line"
    NOTIFY = "notify"
    APPROVAL_PROMPT = "approval_prompt"


@dataclass(frozen=True)
class OutputEvent:
    kind: OutputKind
    text: str


class OutputScanner:
    """Stateful scanner for one output stream of one process."""

    def __init__(self) -> None:
        self._pending = ""
        self._pending_prompt_reported = False

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: str) -> list[OutputEvent]:
        events: list[OutputEvent] = []
        data = self._pending + chunk
        *complete, self._pending = data.split("\n")

        for raw in complete:
            events.extend(self._classify(raw.rstrip("\r")))
            self._pending_prompt_reported = False

        if self._pending and not self._pending_prompt_reported:
            tail = _ANSI_TAIL_RE.sub("", strip_ansi(self._pending))
            if is_approval_prompt(tail):
                self._pending_prompt_reported = True
                events.append(OutputEvent(OutputKind.APPROVAL_PROMPT, tail.strip()))

        return events

    def flush(self) -> list[OutputEvent]:
        """Classify whatever is left once the stream has closed."""
        if not self._pending:
            return []
        raw, self._pending = self._pending, ""
        events = self._classify(raw.rstrip("\r"))
        self._pending_prompt_reported = False
        return events

    def _classify(self, raw: str) -> list[OutputEvent]:
        line = strip_ansi(raw)
        events = [OutputEvent(OutputKind.LINE, line)]

        payload = extract_notification(line)
        if payload is not None:
            events.append(OutputEvent(OutputKind.NOTIFY, payload))

        if not self._pending_prompt_reported and is_approval_prompt(line):
            events.append(OutputEvent(OutputKind.APPROVAL_PROMPT, line.strip()))

        return events
