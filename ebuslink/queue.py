"""Priority queue of pending bus requests, ordered by source address."""

from __future__ import annotations

import heapq
import itertools
from typing import Any


class PriorityQueue:
    """Lower source addresses first; FIFO among equal sources.

    Queued requests must expose a ``frame`` attribute with a ``source``.
    Not thread-safe; callers serialise access.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[int, int, Any]] = []
        self._counter = itertools.count()

    def push(self, request: Any) -> None:
        """Queue a request with its frame source as priority."""
        heapq.heappush(self._heap, (request.frame.source, next(self._counter), request))

    def pop(self) -> Any:
        """Remove and return the highest-priority request.

        Raises IndexError when the queue is empty.
        """
        if not self._heap:
            raise IndexError("pop from empty priority queue")
        return heapq.heappop(self._heap)[2]

    def __len__(self) -> int:
        return len(self._heap)