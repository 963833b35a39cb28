from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Callable

from provisioner.queue.models import JobMessage


class InMemoryJobQueue:
    """Asyncio-backed delayed queue for local development and tests."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[tuple[float, int, JobMessage]] = []
        self._counter = itertools.count()
        self._cancelled: set[str] = set()
        self._wakeup = asyncio.Event()

    async def enqueue(self, message: JobMessage) -> str:
        run_at = self._clock() + max(0.0, message.delay_seconds)
        heapq.heappush(self._heap, (run_at, next(self._counter), message))
        self._cancelled.discard(message.job_id)
        self._wakeup.set()
        return message.job_id

    async def cancel(self, job_id: str) -> bool:
        if any(message.job_id == job_id for _, _, message in self._heap):
            self._cancelled.add(job_id)
            return True
        return False

    def pop_next(self, *, due_only: bool = False) -> JobMessage | None:
        """Pop the earliest live job, ignoring its delay unless ``due_only``."""
        while self._heap:
            run_at, _, message = self._heap[0]
            if message.job_id in self._cancelled:
                heapq.heappop(self._heap)
                self._cancelled.discard(message.job_id)
                continue
            if due_only and run_at > self._clock():
                return None
            heapq.heappop(self._heap)
            return message
        return None

    async def dequeue(self) -> JobMessage:
        """Wait for the next job whose delay has elapsed."""
        while True:
            message = self.pop_next(due_only=True)
            if message is not None:
                return message
            self._wakeup.clear()
            timeout = self._heap[0][0] - self._clock() if self._heap else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def pending(self) -> list[JobMessage]:
        live = sorted((run_at, seq, m) for run_at, seq, m in self._heap if m.job_id not in self._cancelled)
        return [message for _, _, message in live]

    def size(self) -> int:
        return len(self.pending())
