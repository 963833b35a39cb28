"""Task scheduling abstraction over the durable job queue."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import structlog

from provisioner.domain.models import ProvisionTask
from provisioner.queue.models import JobMessage

logger = structlog.get_logger()


class JobTypes:
    KICK = "order.kick"
    EXECUTE = "task.execute"
    POLL = "task.poll"
    WEBHOOK = "webhook.deliver"
    SUSPEND = "resource.suspend"
    RESUME = "resource.resume"
    DEPROVISION = "resource.deprovision"
    RESIZE = "resource.resize"
    SYNC = "resource.sync"


class TaskScheduler:
    """Schedules task work on the queue.

    Attempt numbers are always read from persisted task rows, never from
    queue delivery metadata, so they survive worker restarts.
    """

    def __init__(self, queue: Any) -> None:
        self._queue = queue
        self._jobs: dict[str, set[str]] = defaultdict(set)

    async def schedule(
        self,
        job_type: str,
        task: ProvisionTask,
        *,
        delay: float = 0.0,
        seq: int,
    ) -> str:
        job_id = f"{job_type}:{task.id}:{seq}"
        message = JobMessage(
            job_id=job_id,
            job_type=job_type,
            payload={"task_id": task.id, "seq": seq},
            idempotency_key=job_id,
            delay_seconds=delay,
        )
        await self._queue.enqueue(message)
        self._jobs[task.id].add(job_id)
        logger.debug("task_job_scheduled", job_id=job_id, task_id=task.id, delay=round(delay, 3))
        return job_id

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        key: str,
        requested_by: str | None = None,
    ) -> str:
        """Enqueue a job that is not tied to an existing task."""
        message = JobMessage(
            job_id=f"{job_type}:{key}",
            job_type=job_type,
            payload=payload,
            idempotency_key=key,
            requested_by=requested_by,
        )
        return await self._queue.enqueue(message)

    async def cancel(self, task_id: str) -> int:
        """Withdraw every job scheduled for ``task_id`` that the backend still holds."""
        cancelled = 0
        for job_id in self._jobs.pop(task_id, set()):
            if await self._queue.cancel(job_id):
                cancelled += 1
        if cancelled:
            logger.info("task_jobs_cancelled", task_id=task_id, count=cancelled)
        return cancelled
