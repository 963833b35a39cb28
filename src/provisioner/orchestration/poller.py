"""Provider task polling with exponential backoff and jitter."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

import structlog

from provisioner.core.errors import (
    CircuitOpenError,
    CredentialError,
    PermanentProviderError,
    TransientProviderError,
    summarize_error,
)
from provisioner.domain.models import ProvisionTask
from provisioner.drivers.base import Capability
from provisioner.lifecycle import LifecycleEvent
from provisioner.queue.scheduler import JobTypes

if TYPE_CHECKING:
    from provisioner.orchestration.orchestrator import Orchestrator

logger = structlog.get_logger()


class TaskPoller:
    """Polls submitted provider tasks until they reach a terminal status.

    Each scheduled poll carries the ``poll_count`` it was scheduled against;
    the counter is advanced with compare-and-set before the driver is asked,
    so a duplicated poll job finds a stale sequence and does nothing.
    """

    def __init__(self, orchestrator: Orchestrator, *, rng: random.Random | None = None) -> None:
        self._orchestrator = orchestrator
        self._settings = orchestrator.settings
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """``min(base * 2**attempt, max) + U(0, jitter_ratio * that)``."""
        settings = self._settings
        base = min(settings.poll_base_delay * (2 ** max(0, attempt)), settings.poll_max_delay)
        return base + self._rng.uniform(0.0, settings.poll_jitter_ratio * base)

    async def schedule_poll(self, task: ProvisionTask, after_delay: float | None = None) -> str:
        delay = self.compute_delay(task.poll_count) if after_delay is None else after_delay
        return await self._orchestrator.scheduler.schedule(
            JobTypes.POLL, task, delay=delay, seq=task.poll_count
        )

    async def check_once(self, task_id: str, seq: int) -> ProvisionTask | None:
        orch = self._orchestrator
        log = logger.bind(task_id=task_id, seq=seq)

        task = await orch.tasks.get(task_id)
        if task is None:
            log.warning("task_missing")
            return None
        if task.is_terminal:
            log.info("poll_skipped_terminal", status=task.status.value)
            return task
        if task.provider_task_id is None:
            log.warning("poll_skipped_not_submitted")
            return task
        if task.poll_count != seq:
            log.info("poll_skipped_stale", poll_count=task.poll_count)
            return task

        resource = await orch.get_resource(task.resource_id)
        breaker = orch.breakers.get(resource.driver)
        if not breaker.allow_request():
            delay = max(breaker.retry_after(), self._settings.poll_base_delay)
            log.info("poll_deferred_circuit_open", driver=resource.driver, delay=round(delay, 3))
            await self.schedule_poll(task, delay)
            return task

        if not await orch.tasks.claim_poll(task.id, seq):
            await orch.session.rollback()
            log.info("poll_skipped_claimed")
            return await orch.tasks.get(task_id)
        await orch.session.commit()
        poll_number = seq + 1
        task = task.model_copy(update={"poll_count": poll_number})

        driver = orch.registry.require(resource.driver, Capability.PROVISIONER)
        try:
            async with orch.credentials(resource) as credentials:
                result = await breaker.call(
                    driver.poll, task.provider_task_id, credentials=credentials
                )
        except (TransientProviderError, CircuitOpenError) as exc:
            log.info("poll_transient_error", error=summarize_error(exc))
            result = None
        except (PermanentProviderError, CredentialError) as exc:
            await orch.fail(task, summarize_error(exc), LifecycleEvent.failed)
            return await orch.tasks.get(task_id)
        except Exception as exc:
            log.error("poll_call_crashed", exc_info=True)
            await orch.tasks.note_error(task.id, summarize_error(exc))
            await orch.session.commit()
            await self._poll_again(task, poll_number)
            raise

        if result is not None and result.is_terminal:
            await orch.complete(task, result, source="poll")
            return await orch.tasks.get(task_id)

        await self._poll_again(task, poll_number)
        return await orch.tasks.get(task_id)

    async def _poll_again(self, task: ProvisionTask, poll_number: int) -> None:
        """Reschedule a still-pending task, or time it out at the poll cap."""
        if poll_number >= self._settings.poll_max_attempts:
            await self._orchestrator.fail(
                task,
                f"Provider task still pending after {poll_number} polls",
                LifecycleEvent.timed_out,
            )
            return
        delay = self.compute_delay(poll_number)
        await self.schedule_poll(task, delay)
        logger.debug("poll_rescheduled", task_id=task.id, poll=poll_number, delay=round(delay, 3))
