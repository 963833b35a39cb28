from __future__ import annotations

from typing import Protocol

from provisioner.queue.memory import InMemoryJobQueue
from provisioner.queue.models import JobMessage
from provisioner.queue.scheduler import JobTypes, TaskScheduler
from provisioner.queue.sqs import SqsJobQueue


class JobQueue(Protocol):
    async def enqueue(self, message: JobMessage) -> str: ...

    async def cancel(self, job_id: str) -> bool: ...


__all__ = [
    "InMemoryJobQueue",
    "JobMessage",
    "JobQueue",
    "JobTypes",
    "SqsJobQueue",
    "TaskScheduler",
]
