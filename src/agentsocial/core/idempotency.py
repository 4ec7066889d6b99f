"""Duplicate suppression for upstream chat events.

Chat platforms redeliver events (retries after slow acks, double-clicked
card buttons). The guard remembers the last ``capacity`` event ids in
insertion order; seeing an id again does not refresh it.
"""

from __future__ import annotations

from collections import OrderedDict

import structlog

logger = structlog.get_logger()

DEFAULT_CAPACITY = 1000


class IdempotencyGuard:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._seen: OrderedDict[str, None] = OrderedDict()

    def should_process(self, event_id: str | None) -> bool:
        """True the first time an id is seen. Empty ids are always processed."""
        if not event_id:
            return True
        if event_id in self._seen:
            logger.debug("event_dedup_skip", event_id=event_id)
            return False
        self._seen[event_id] = None
        if len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
