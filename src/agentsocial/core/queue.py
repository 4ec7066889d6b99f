"""Per-conversation task queue.

Architecture:
    enqueue(task) → deque[tenant:conversation] → drain coroutine → executor.run()

Guarantees:
    1. At most one task per key is handed to the executor at a time. Two
       runs in the same conversation would share one agent session file,
       so this is what keeps the workspace consistent.
    2. Tasks for one key run in arrival order.
    3. Different keys run concurrently, each with its own drain coroutine.
    4. A failing task only fails its own future; the key keeps draining.
    5. A key whose backlog drains is forgotten, so per-key state tracks
       live conversations only.

Everything runs on one event loop. Push/pop and the in-flight set are only
mutated between awaits, so no locks are needed.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import structlog

from agentsocial.core.executor import AgentExecutor
from agentsocial.core.types import ExecutionResult, Task

logger = structlog.get_logger()


@dataclass
class QueuedTask:
    """A task waiting for its key to become free."""

    task: Task
    future: asyncio.Future[ExecutionResult]
    enqueue_time: float = field(default_factory=time.monotonic)


class ConversationQueue:
    """Serializes work per tenant+conversation, parallel across keys."""

    def __init__(self, executor: AgentExecutor) -> None:
        self._executor = executor
        self._queues: dict[str, deque[QueuedTask]] = {}
        self._in_flight: set[str] = set()
        self._drainers: dict[str, asyncio.Task[None]] = {}

        # Metrics
        self._total_enqueued = 0
        self._total_processed = 0
        self._total_failed = 0

    def submit(self, task: Task) -> asyncio.Future[ExecutionResult]:
        """Append a task and return the future for its result."""
        loop = asyncio.get_running_loop()
        key = task.key
        item = QueuedTask(task=task, future=loop.create_future())

        queue = self._queues.setdefault(key, deque())
        queue.append(item)
        self._total_enqueued += 1

        logger.debug(
            "task_enqueued",
            key=key,
            mode=task.run_mode.value,
            pending=len(queue),
            in_flight=key in self._in_flight,
        )

        if key not in self._in_flight:
            self._in_flight.add(key)
            self._drainers[key] = asyncio.create_task(self._drain(key), name=f"queue-{key}")
        return item.future

    async def enqueue(self, task: Task) -> ExecutionResult:
        """Queue a task and wait for its result.

        Raises whatever the executor raised for this task (WorkspaceError,
        SpawnError); other queued tasks are unaffected.
        """
        return await self.submit(task)

    async def _drain(self, key: str) -> None:
        queue = self._queues[key]
        try:
            while queue:
                item = queue.popleft()
                if item.future.done():
                    continue

                wait_ms = round((time.monotonic() - item.enqueue_time) * 1000)
                logger.info(
                    "task_processing",
                    key=key,
                    mode=item.task.run_mode.value,
                    wait_ms=wait_ms,
                    remaining=len(queue),
                )

                try:
                    if item.task.on_start is not None:
                        started = item.task.on_start()
                        if inspect.isawaitable(started):
                            await started
                    result = await self._executor.run(item.task)
                except asyncio.CancelledError:
                    if not item.future.done():
                        item.future.cancel()
                    raise
                except Exception as e:
                    self._total_failed += 1
                    logger.warning(
                        "task_failed",
                        key=key,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    if not item.future.done():
                        item.future.set_exception(e)
                else:
                    self._total_processed += 1
                    if not item.future.done():
                        item.future.set_result(result)
        finally:
            self._in_flight.discard(key)
            self._drainers.pop(key, None)
            # A drained key keeps no state; the next submit starts it afresh
            if not self._queues.get(key):
                self._queues.pop(key, None)

    # ── Introspection ──────────────────────────────────────────────────

    def pending(self, key: str) -> int:
        """Tasks waiting behind the in-flight one for this key."""
        return len(self._queues.get(key, ()))

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def keys(self) -> list[str]:
        return list(self._queues)

    @property
    def metrics(self) -> dict[str, Any]:
        """Queue metrics for the status endpoint."""
        return {
            "total_enqueued": self._total_enqueued,
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
            "active_keys": len(self._in_flight),
            "known_keys": len(self._queues),
            "pending": {k: len(q) for k, q in self._queues.items() if q},
        }

    async def close(self) -> None:
        """Cancel drain coroutines; waiting tasks get a cancelled future."""
        drainers = list(self._drainers.values())
        for drainer in drainers:
            drainer.cancel()
        await asyncio.gather(*drainers, return_exceptions=True)
        for queue in self._queues.values():
            while queue:
                item = queue.popleft()
                if not item.future.done():
                    item.future.cancel()
        self._queues.clear()
        logger.info("conversation_queue_closed", processed=self._total_processed)
