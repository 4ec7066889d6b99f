"""Presentation surface the command engine reports to.

A chat platform adapter implements ``PresentationSurface``; the engine
never talks to a platform SDK directly. Everything here is delivery only,
so implementations should log and swallow transport failures rather than
raise into the engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from agentsocial.core.output import strip_ansi
from agentsocial.core.types import ExecutionResult

if TYPE_CHECKING:
    from agentsocial.core.lifecycle import CommandLifecycle

TRUNCATION_NOTICE = "\n\n... (output truncated)"
EMPTY_SUCCESS_TEXT = "Done."
EMPTY_FAILURE_TEXT = "Execution failed"


@dataclass(frozen=True)
class CommandEvent:
    """Inbound instruction from a chat user."""

    tenant_id: str
    conversation_id: str
    text: str
    correlation_id: str = ""


@dataclass(frozen=True)
class DecisionEvent:
    """Approve/deny decision on a plan.

    ``event_id`` identifies the delivery (e.g. the card action id); when a
    platform has none, the correlation id stands in for it.
    """

    correlation_id: str
    approved: bool
    event_id: str = ""


class PresentationSurface(Protocol):
    async def acknowledge(self, lifecycle: CommandLifecycle) -> None: ...

    async def send_plan(self, lifecycle: CommandLifecycle, plan_text: str) -> None: ...

    async def send_result(self, lifecycle: CommandLifecycle, result: ExecutionResult, text: str) -> None: ...

    async def send_error(self, lifecycle: CommandLifecycle, error: Exception) -> None: ...

    async def send_denied(self, lifecycle: CommandLifecycle) -> None: ...

    async def send_proactive(self, tenant_id: str, conversation_id: str, message: str) -> bool: ...

    async def request_operation_approval(self, lifecycle: CommandLifecycle, prompt: str) -> None: ...


def truncate_message(text: str, max_chars: int = 4000, keep_chars: int = 3900) -> str:
    if len(text) <= max_chars:
        return text
    return text[:keep_chars] + TRUNCATION_NOTICE


def format_result_text(result: ExecutionResult, max_chars: int = 4000, keep_chars: int = 3900) -> str:
    """User-facing text for a finished run, ANSI-free and size-capped."""
    if result.success:
        text = strip_ansi(result.stdout).strip() or EMPTY_SUCCESS_TEXT
    else:
        text = strip_ansi(result.stderr).strip() or EMPTY_FAILURE_TEXT
    return truncate_message(text, max_chars, keep_chars)
