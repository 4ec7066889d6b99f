"""Plan → approve → execute workflow for chat commands.

Every user command becomes one ``CommandLifecycle``, keyed by the id of the
message that carried it:

    PLAN_REQUESTED ──plan ok──▶ PLAN_READY ──approve──▶ APPROVED ──start──▶ EXECUTING
          │                        │                       │                   │
          └──plan error──▶ FAILED  └──deny──▶ DENIED       └──error──▶ FAILED  ├──▶ COMPLETED
                                                                               └──▶ FAILED

The plan run is read-only and starts a fresh agent session. Only an
explicit approval enqueues the autonomous run, which resumes the
conversation's session. While it runs the agent may stop on its own
confirmation prompts; those are relayed to the chat and answered through
the executor's stdin channel without touching the lifecycle state.

``CommandEngine`` is the per-bot orchestrator: it dedups upstream
deliveries, owns the queue, and reports every stage to the presentation
surface.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable

import structlog

from agentsocial.core.errors import InvalidTransition
from agentsocial.core.executor import AgentExecutor
from agentsocial.core.idempotency import IdempotencyGuard
from agentsocial.core.queue import ConversationQueue
from agentsocial.core.types import ExecutionResult, RunMode, Task, task_key
from agentsocial.platforms.base import (
    CommandEvent,
    DecisionEvent,
    PresentationSurface,
    format_result_text,
)

logger = structlog.get_logger()

PREWARM_CONVERSATION = "internal-prewarm"
PREWARM_COMMAND = "echo 'Agent ready'"

_APPROVE_TOKENS = frozenset({"y", "yes", "approve", "approved", "allow", "true"})


class LifecycleState(str, Enum):
    PLAN_REQUESTED = "plan_requested"
    PLAN_READY = "plan_ready"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.PLAN_REQUESTED: frozenset({LifecycleState.PLAN_READY, LifecycleState.FAILED}),
    LifecycleState.PLAN_READY: frozenset({LifecycleState.APPROVED, LifecycleState.DENIED}),
    LifecycleState.APPROVED: frozenset({LifecycleState.EXECUTING, LifecycleState.FAILED}),
    LifecycleState.EXECUTING: frozenset({LifecycleState.COMPLETED, LifecycleState.FAILED}),
    LifecycleState.DENIED: frozenset(),
    LifecycleState.COMPLETED: frozenset(),
    LifecycleState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({LifecycleState.DENIED, LifecycleState.COMPLETED, LifecycleState.FAILED})


def normalize_decision(value: str | bool) -> str:
    """Map a button value or free-text answer to the agent's ``y``/``n``."""
    if isinstance(value, bool):
        return "y" if value else "n"
    return "y" if value.strip().lower() in _APPROVE_TOKENS else "n"


@dataclass
class CommandLifecycle:
    """State of one user command from plan request to final result."""

    correlation_id: str
    tenant_id: str
    conversation_id: str
    command: str
    state: LifecycleState = LifecycleState.PLAN_REQUESTED
    plan_text: str = ""
    result: ExecutionResult | None = None
    error: str | None = None
    operation_prompts: list[str] = field(default_factory=list)
    history: list[tuple[LifecycleState, float]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, time.monotonic()))

    @property
    def key(self) -> str:
        return task_key(self.tenant_id, self.conversation_id)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, new_state: LifecycleState) -> bool:
        return new_state in _TRANSITIONS[self.state]

    def transition(self, new_state: LifecycleState) -> None:
        if not self.can_transition(new_state):
            raise InvalidTransition(self.state, new_state)
        previous = self.state
        self.state = new_state
        self.history.append((new_state, time.monotonic()))
        logger.info(
            "lifecycle_transition",
            correlation_id=self.correlation_id,
            key=self.key,
            from_state=previous.value,
            to_state=new_state.value,
        )


class CommandEngine:
    """Drives command lifecycles for one bot identity (tenant)."""

    def __init__(
        self,
        tenant_id: str,
        executor: AgentExecutor,
        surface: PresentationSurface,
        project_root: Path,
        *,
        sandbox: bool = False,
        queue: ConversationQueue | None = None,
        guard: IdempotencyGuard | None = None,
        lifecycle_capacity: int = 1000,
        max_message_chars: int = 4000,
        truncated_message_chars: int = 3900,
    ) -> None:
        self.tenant_id = tenant_id
        self.executor = executor
        self.surface = surface
        self.project_root = Path(project_root)
        self.sandbox = sandbox
        self.queue = queue or ConversationQueue(executor)
        self.guard = guard or IdempotencyGuard()
        self.lifecycle_capacity = lifecycle_capacity
        self.max_message_chars = max_message_chars
        self.truncated_message_chars = truncated_message_chars
        self._lifecycles: OrderedDict[str, CommandLifecycle] = OrderedDict()
        self._background: set[asyncio.Task[Any]] = set()

    # ── Lookup ─────────────────────────────────────────────────────────

    def get(self, correlation_id: str) -> CommandLifecycle | None:
        return self._lifecycles.get(correlation_id)

    @property
    def lifecycles(self) -> list[CommandLifecycle]:
        return list(self._lifecycles.values())

    def status(self) -> dict[str, Any]:
        by_state: dict[str, int] = {}
        for lc in self._lifecycles.values():
            by_state[lc.state.value] = by_state.get(lc.state.value, 0) + 1
        running = getattr(self.executor, "running_keys", None)
        return {
            "tenant_id": self.tenant_id,
            "running": running() if callable(running) else [],
            "queue": self.queue.metrics,
            "lifecycles": by_state,
        }

    # ── Upstream events ────────────────────────────────────────────────

    async def handle_command(self, event: CommandEvent) -> CommandLifecycle | None:
        """Start a lifecycle for a new instruction and run its plan stage."""
        if event.conversation_id == PREWARM_CONVERSATION:
            return None
        if not self.guard.should_process(event.correlation_id):
            return None
        text = event.text.strip()
        if not text:
            return None

        lifecycle = CommandLifecycle(
            correlation_id=event.correlation_id or uuid.uuid4().hex[:12],
            tenant_id=event.tenant_id,
            conversation_id=event.conversation_id,
            command=text,
        )
        self._remember(lifecycle)
        logger.info(
            "command_received",
            correlation_id=lifecycle.correlation_id,
            key=lifecycle.key,
            text=text[:300],
        )
        await self._deliver(self.surface.acknowledge(lifecycle), "acknowledge")

        task = Task(
            tenant_id=lifecycle.tenant_id,
            conversation_id=lifecycle.conversation_id,
            command=text,
            project_root=self.project_root,
            run_mode=RunMode.PLAN,
            sandbox=self.sandbox,
        )
        try:
            result = await self.queue.enqueue(task)
        except Exception as e:
            await self._fail(lifecycle, e)
            return lifecycle

        text = self._format(result)
        if result.success:
            lifecycle.plan_text = text
            lifecycle.transition(LifecycleState.PLAN_READY)
            await self._deliver(self.surface.send_plan(lifecycle, text), "send_plan")
        else:
            lifecycle.result = result
            lifecycle.transition(LifecycleState.FAILED)
            await self._deliver(self.surface.send_result(lifecycle, result, text), "send_result")
        return lifecycle

    async def handle_decision(self, event: DecisionEvent) -> CommandLifecycle | None:
        """Apply an approve/deny decision to a plan that is waiting for one."""
        event_id = event.event_id or f"decision:{event.correlation_id}"
        if not self.guard.should_process(event_id):
            return None

        lifecycle = self._lifecycles.get(event.correlation_id)
        if lifecycle is None:
            logger.warning("decision_unknown_command", correlation_id=event.correlation_id)
            return None
        if lifecycle.state is not LifecycleState.PLAN_READY:
            logger.info(
                "decision_ignored",
                correlation_id=event.correlation_id,
                state=lifecycle.state.value,
            )
            return lifecycle

        if not event.approved:
            lifecycle.transition(LifecycleState.DENIED)
            await self._deliver(self.surface.send_denied(lifecycle), "send_denied")
            return lifecycle

        lifecycle.transition(LifecycleState.APPROVED)
        task = Task(
            tenant_id=lifecycle.tenant_id,
            conversation_id=lifecycle.conversation_id,
            command=lifecycle.command,
            project_root=self.project_root,
            run_mode=RunMode.AUTO,
            on_approval_prompt=lambda prompt: self._on_operation_prompt(lifecycle, prompt),
            on_notify=lambda message: self._on_notify(lifecycle, message),
            on_start=lambda: lifecycle.transition(LifecycleState.EXECUTING),
            sandbox=self.sandbox,
        )
        try:
            result = await self.queue.enqueue(task)
        except Exception as e:
            await self._fail(lifecycle, e)
            return lifecycle

        lifecycle.result = result
        lifecycle.transition(LifecycleState.COMPLETED if result.success else LifecycleState.FAILED)
        text = self._format(result)
        await self._deliver(self.surface.send_result(lifecycle, result, text), "send_result")
        return lifecycle

    def handle_operation_decision(self, tenant_id: str, conversation_id: str, decision: str | bool) -> bool:
        """Answer a running agent's confirmation prompt.

        Returns False if the process already exited; the answer is dropped.
        """
        token = normalize_decision(decision)
        delivered = self.executor.respond(tenant_id, conversation_id, token)
        logger.info(
            "operation_decision",
            key=task_key(tenant_id, conversation_id),
            token=token,
            delivered=delivered,
        )
        return delivered

    # ── Lifecycle plumbing ─────────────────────────────────────────────

    def prewarm(self) -> asyncio.Task[ExecutionResult]:
        """Run a throwaway command so the agent's first start is paid up front."""
        task = Task(
            tenant_id=self.tenant_id,
            conversation_id=PREWARM_CONVERSATION,
            command=PREWARM_COMMAND,
            project_root=self.project_root,
            run_mode=RunMode.PLAN,
            sandbox=self.sandbox,
        )
        bg = asyncio.create_task(self.queue.enqueue(task), name=f"prewarm-{self.tenant_id}")
        self._background.add(bg)
        bg.add_done_callback(self._prewarm_done)
        return bg

    def _prewarm_done(self, bg: asyncio.Task[ExecutionResult]) -> None:
        self._background.discard(bg)
        if bg.cancelled():
            return
        if bg.exception() is not None:
            logger.warning("prewarm_failed", tenant_id=self.tenant_id, error=str(bg.exception()))
        else:
            logger.info("prewarm_complete", tenant_id=self.tenant_id, exit_code=bg.result().exit_code)

    async def shutdown(self) -> None:
        """Stop queued work and kill live agent processes."""
        await self.queue.close()
        await self.executor.dispose()
        for bg in list(self._background):
            bg.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("command_engine_stopped", tenant_id=self.tenant_id)

    def _on_operation_prompt(self, lifecycle: CommandLifecycle, prompt: str) -> Awaitable[None]:
        lifecycle.operation_prompts.append(prompt)
        logger.info(
            "operation_approval_requested",
            correlation_id=lifecycle.correlation_id,
            prompt=prompt[:200],
        )
        return self._deliver(
            self.surface.request_operation_approval(lifecycle, prompt),
            "request_operation_approval",
        )

    def _on_notify(self, lifecycle: CommandLifecycle, message: str) -> Awaitable[None]:
        return self._deliver(
            self.surface.send_proactive(lifecycle.tenant_id, lifecycle.conversation_id, message),
            "send_proactive",
        )

    async def _fail(self, lifecycle: CommandLifecycle, error: Exception) -> None:
        lifecycle.error = str(error)
        logger.error(
            "command_run_failed",
            correlation_id=lifecycle.correlation_id,
            state=lifecycle.state.value,
            error_type=type(error).__name__,
            error=str(error),
        )
        lifecycle.transition(LifecycleState.FAILED)
        await self._deliver(self.surface.send_error(lifecycle, error), "send_error")

    async def _deliver(self, coro: Awaitable[None], what: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("presentation_delivery_failed", what=what, error=str(e))

    def _format(self, result: ExecutionResult) -> str:
        return format_result_text(result, self.max_message_chars, self.truncated_message_chars)

    def _remember(self, lifecycle: CommandLifecycle) -> None:
        self._lifecycles[lifecycle.correlation_id] = lifecycle
        if len(self._lifecycles) <= self.lifecycle_capacity:
            return
        for cid, lc in self._lifecycles.items():
            if lc.is_terminal:
                del self._lifecycles[cid]
                break
