"""Priority-ordered queue of pending sync items.

Scores combine the tier with the enqueue sequence::

    score = tier_rank * TIER_OFFSET - sequence

so every ``critical`` item outranks every ``high`` item, and items in the
same tier dequeue in enqueue order.  The heap uses lazy deletion: stale
entries are discarded when they surface.

The queue round-trips through ``to_dict()`` / ``from_dict()`` so it can be
checkpointed between invocations.
"""

from __future__ import annotations

import heapq
import logging
import time
from typing import Any, Callable, Iterable

from pydantic import ValidationError as PydanticValidationError

from ..errors import StateCorruptionError
from .models import Priority, SyncItem

logger = logging.getLogger(__name__)

TIER_OFFSET = 10**12
SNAPSHOT_VERSION = 1

_PROMOTION = {
    Priority.LOW: Priority.NORMAL,
    Priority.NORMAL: Priority.HIGH,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def priority_score(priority: Priority, sequence: int) -> int:
    return priority.rank * TIER_OFFSET - sequence


class PriorityQueue:
    """Queue of ``SyncItem`` unique by ``(entity_type, id)``.

    Args:
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._items: dict[str, SyncItem] = {}
        self._heap: list[tuple[int, str]] = []
        self._next_sequence = 1

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def is_empty(self) -> bool:
        return not self._items

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, items: Iterable[SyncItem]) -> int:
        """Enqueue *items*; returns the number of new keys.

        Re-adding a queued key replaces its payload, keeps its place in line
        and never lowers its priority.
        """
        added = 0
        for item in items:
            existing = self._items.get(item.key_str)
            if existing is not None:
                priority = max(
                    existing.priority, item.priority, key=lambda p: p.rank
                )
                replacement = item.model_copy(
                    update={
                        "priority": priority,
                        "sequence": existing.sequence,
                        "enqueued_at": existing.enqueued_at,
                        "attempts": existing.attempts,
                    }
                )
                self._insert(replacement)
                continue
            queued = item.model_copy(
                update={
                    "sequence": self._next_sequence,
                    "enqueued_at": item.enqueued_at or self._clock(),
                }
            )
            self._next_sequence += 1
            self._insert(queued)
            added += 1
        return added

    def requeue(self, items: Iterable[SyncItem]) -> None:
        """Put previously dequeued items back at their original position."""
        for item in items:
            self._insert(item)
            self._next_sequence = max(self._next_sequence, item.sequence + 1)

    def _insert(self, item: SyncItem) -> None:
        item.priority_score = priority_score(item.priority, item.sequence)
        self._items[item.key_str] = item
        heapq.heappush(self._heap, (-item.priority_score, item.key_str))

    def _is_live(self, entry: tuple[int, str]) -> bool:
        item = self._items.get(entry[1])
        return item is not None and -entry[0] == item.priority_score

    def get_next(self) -> SyncItem | None:
        """Remove and return the highest-scoring item, or ``None``."""
        while self._heap:
            entry = heapq.heappop(self._heap)
            if self._is_live(entry):
                return self._items.pop(entry[1])
        return None

    def peek(self) -> SyncItem | None:
        while self._heap:
            if self._is_live(self._heap[0]):
                return self._items[self._heap[0][1]]
            heapq.heappop(self._heap)
        return None

    def remove(self, key: str) -> SyncItem | None:
        """Drop *key* from the queue; its heap entry goes stale."""
        return self._items.pop(key, None)

    def get(self, key: str) -> SyncItem | None:
        return self._items.get(key)

    def set_priority(self, key: str, level: Priority) -> bool:
        """Move *key* to tier *level*, keeping its FIFO position.

        Returns:
            False when *key* is not queued.
        """
        item = self._items.get(key)
        if item is None:
            return False
        if item.priority != level:
            item.priority = level
            self._insert(item)
        return True

    def promote_aged(self, max_age_ms: int, now: int | None = None) -> int:
        """Raise items that waited longer than *max_age_ms* by one tier.

        Age is measured from the last promotion (or enqueue), so an item
        climbs at most one tier per ``max_age_ms``.  Items never climb
        above ``high``; ``critical`` stays reserved for dependency order.

        Returns:
            Number of items promoted.
        """
        current = self._clock() if now is None else now
        promoted = 0
        for item in list(self._items.values()):
            target = _PROMOTION.get(item.priority)
            if target is None:
                continue
            since = item.promoted_at or item.enqueued_at
            if current - since < max_age_ms:
                continue
            item.promoted_at = current
            item.priority = target
            self._insert(item)
            promoted += 1
        if promoted:
            logger.info("Promoted %d aged queue items", promoted)
        return promoted

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def ordered(self) -> list[SyncItem]:
        """All items in dequeue order, without removing them."""
        return sorted(
            self._items.values(), key=lambda i: i.priority_score, reverse=True
        )

    def stats(self) -> dict[str, int]:
        """Per-priority counts plus ``total``."""
        counts = {p.value: 0 for p in Priority}
        for item in self._items.values():
            counts[item.priority.value] += 1
        counts["total"] = len(self._items)
        return counts

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "next_sequence": self._next_sequence,
            "items": [item.model_dump(mode="json") for item in self.ordered()],
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        clock: Callable[[], int] = _now_ms,
    ) -> PriorityQueue:
        """Rebuild a queue from ``to_dict()`` output.

        Raises:
            StateCorruptionError: If the snapshot cannot be decoded.
        """
        if not isinstance(data, dict) or data.get("version") != SNAPSHOT_VERSION:
            raise StateCorruptionError("Unrecognised queue snapshot")
        queue = cls(clock=clock)
        try:
            items = [SyncItem.model_validate(raw) for raw in data["items"]]
            queue._next_sequence = int(data.get("next_sequence", 1))
        except (KeyError, TypeError, ValueError, PydanticValidationError) as exc:
            raise StateCorruptionError(
                f"Queue snapshot is corrupted: {exc}"
            ) from exc
        queue.requeue(items)
        return queue
