"""Shared value types for the execution engine.

Kept in a separate file so the queue, executor and lifecycle modules can
share them without importing each other.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

OutputCallback = Callable[[str], None]
ApprovalPromptCallback = Callable[[str], Any]
NotifyCallback = Callable[[str], Any]


class RunMode(str, Enum):
    PLAN = "plan"
    AUTO = "auto"


def task_key(tenant_id: str, conversation_id: str) -> str:
    """Registry / queue key for one tenant+conversation lane."""
    return f"{tenant_id}:{conversation_id}"


@dataclass(frozen=True)
class Task:
    """One queued agent run. Never mutated after creation."""

    tenant_id: str
    conversation_id: str
    command: str
    project_root: Path
    run_mode: RunMode = RunMode.PLAN
    on_output: OutputCallback | None = None
    on_approval_prompt: ApprovalPromptCallback | None = None
    on_notify: NotifyCallback | None = None
    on_start: Callable[[], Awaitable[None] | None] | None = None
    sandbox: bool = False

    @property
    def key(self) -> str:
        return task_key(self.tenant_id, self.conversation_id)


@dataclass
class ExecutionResult:
    """Outcome of one task: produced exactly once per task."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
