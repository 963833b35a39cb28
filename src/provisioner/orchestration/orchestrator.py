"""
Provisioning orchestrator.

Turns captured orders into provider-side resources and drives every later
lifecycle action. Each public operation is one unit of work on one database
session: read the current status, authorize the move with the state machine,
write the new status plus its audit row, commit, and only then hand follow-up
work to the queue.

At-most-one effective provider call per attempt rests on two persisted facts:
a task's ``inflight_key`` (one pending task per resource and action) and its
``attempts`` / ``poll_count`` counters, which are advanced with
compare-and-set before any driver call. A duplicated job observes a stale
counter or a terminal task and becomes a no-op.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping

import structlog
from pydantic import SecretStr
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from provisioner.audit import AuditLedger, AuditRepository
from provisioner.core.errors import (
    MAX_ERROR_LENGTH,
    CircuitOpenError,
    ConfigurationError,
    CredentialError,
    IdempotencyConflict,
    InvalidTransition,
    PermanentProviderError,
    ResourceNotFound,
    StateConflictError,
    TransientProviderError,
    WebhookVerificationError,
    summarize_error,
)
from provisioner.db.models import utcnow
from provisioner.db.repositories import (
    CredentialRepository,
    PlanMapRepository,
    ResourceRepository,
    TaskRepository,
    new_id,
)
from provisioner.domain.models import (
    SYSTEM_ACTOR,
    Order,
    PlanMap,
    ProvisionAudit,
    ProvisionTask,
    Resource,
    ResourceSpec,
    TaskAction,
    TaskStatus,
)
from provisioner.drivers.base import Capability, PollResult
from provisioner.events import event_for_transition
from provisioner.lifecycle import LifecycleEvent, can_transition, transition
from provisioner.orchestration.poller import TaskPoller
from provisioner.queue.scheduler import JobTypes
from provisioner.vault import CredentialVault

if TYPE_CHECKING:
    from provisioner.runtime import Runtime

logger = structlog.get_logger()

E = LifecycleEvent

# provider-observed state -> lifecycle event for sync
DRIFT_EVENTS: Mapping[str, LifecycleEvent] = {
    "suspended": E.suspend,
    "stopped": E.suspend,
    "missing": E.failed,
    "terminated": E.failed,
    "error": E.failed,
}

_REQUEST_EVENTS: Mapping[TaskAction, LifecycleEvent] = {
    TaskAction.suspend: E.suspend,
    TaskAction.resume: E.resume,
    TaskAction.resize: E.resize,
    TaskAction.deprovision: E.deprovision,
}


def build_spec(order: Order, plan: PlanMap) -> ResourceSpec:
    """Combine the billing plan mapping with the customer's order options."""
    options = dict(order.options)
    extra = dict(plan.extra)
    extra.update({k: v for k, v in options.items() if k not in {"hostname", "image"}})
    return ResourceSpec(
        plan=plan.provider_plan,
        region=plan.region,
        hostname=options.get("hostname"),
        image=options.get("image") or plan.extra.get("image"),
        extra=extra,
    )


class Orchestrator:
    def __init__(self, session: AsyncSession, runtime: Runtime) -> None:
        self.session = session
        self.settings = runtime.settings
        self.registry = runtime.registry
        self.breakers = runtime.breakers
        self.scheduler = runtime.scheduler
        self.events = runtime.events
        self.resources = ResourceRepository(session)
        self.tasks = TaskRepository(session)
        self.plans = PlanMapRepository(session)
        self.ledger = AuditLedger(
            AuditRepository(session),
            hash_provider_ids=runtime.settings.audit_hash_provider_ids,
        )
        self.vault = CredentialVault(CredentialRepository(session), runtime.cipher)
        self.poller = TaskPoller(self, rng=runtime.rng)
        self._outbox: list[Any] = []

    # -- public operations --

    async def kick(self, order: Order) -> Resource:
        """Create and start provisioning the resource for a paid order.

        Idempotent on ``order.id``: a repeated call returns the existing
        resource without touching it.
        """
        log = logger.bind(order_id=order.id)
        existing = await self.resources.get_by_order(order.id)
        if existing is not None:
            log.info("kick_duplicate", resource_id=existing.id, status=existing.status.value)
            return existing

        plan = await self.plans.get(order.plan_code)
        if plan is None:
            raise ConfigurationError(
                f"No plan mapping for billing plan '{order.plan_code}'", {"order_id": order.id}
            )
        self.registry.get(plan.driver)

        created = transition(None, E.create, actor=SYSTEM_ACTOR, metadata={"order_id": order.id})
        resource = Resource(
            id=new_id(),
            order_ref=order.id,
            user_id=order.user_id,
            driver=plan.driver,
            plan_code=order.plan_code,
            region=plan.region,
            spec=build_spec(order, plan),
            status=created.status,
            billing_item_id=order.billing_item_id,
        )
        try:
            await self.resources.create(resource)
        except IntegrityError:
            # a concurrent delivery of the same order won the insert
            await self.session.rollback()
            winner = await self.resources.get_by_order(order.id)
            if winner is None:
                raise
            log.info("kick_duplicate", resource_id=winner.id, status=winner.status.value)
            return winner
        await self.ledger.record_entry(resource.id, created.audit)

        resource = await self._apply(resource.id, E.enqueue, metadata={"plan": plan.provider_plan})
        task, _ = await self._open_task(resource, TaskAction.provision)
        await self._commit()
        await self._schedule_execute(task)
        log.info("kick_accepted", resource_id=resource.id, driver=resource.driver, task_id=task.id)
        return resource

    async def suspend(self, resource_id: str, *, actor: str = SYSTEM_ACTOR) -> ProvisionTask:
        return await self._request(resource_id, TaskAction.suspend, actor=actor)

    async def resume(self, resource_id: str, *, actor: str = SYSTEM_ACTOR) -> ProvisionTask:
        return await self._request(resource_id, TaskAction.resume, actor=actor)

    async def resize(
        self, resource_id: str, changes: Mapping[str, Any], *, actor: str = SYSTEM_ACTOR
    ) -> ProvisionTask:
        return await self._request(resource_id, TaskAction.resize, actor=actor, changes=changes)

    async def deprovision(self, resource_id: str, *, actor: str = SYSTEM_ACTOR) -> ProvisionTask:
        return await self._request(resource_id, TaskAction.deprovision, actor=actor)

    async def sync(self, resource_id: str, *, actor: str = SYSTEM_ACTOR) -> ProvisionTask:
        """Compare recorded status with provider reality (needs Metrics)."""
        resource = await self._load(resource_id)
        self.registry.require(resource.driver, Capability.METRICS)
        return await self._request(resource_id, TaskAction.sync, actor=actor)

    async def execute(self, task_id: str, seq: int) -> ProvisionTask | None:
        """Run submission attempt ``seq + 1`` of a task.

        ``seq`` is the attempt counter observed when the job was scheduled; any
        other value means this delivery is a duplicate or stale.
        """
        log = logger.bind(task_id=task_id, seq=seq)
        task = await self.tasks.get(task_id)
        if task is None:
            log.warning("task_missing")
            return None
        if task.is_terminal or task.provider_task_id is not None:
            log.info("execute_skipped_done", status=task.status.value)
            return task
        if task.attempts != seq:
            log.info("execute_skipped_stale", attempts=task.attempts)
            return task

        resource = await self._load(task.resource_id)
        breaker = self.breakers.get(resource.driver)
        if not breaker.allow_request():
            delay = max(breaker.retry_after(), self.settings.poll_base_delay)
            log.info("execute_deferred_circuit_open", driver=resource.driver, delay=delay)
            await self._schedule_execute(task, delay=delay)
            return task

        if not await self.tasks.claim_attempt(task.id, seq):
            await self.session.rollback()
            log.info("execute_skipped_claimed")
            return await self.tasks.get(task_id)
        await self._commit()
        attempt = seq + 1
        task = task.model_copy(update={"attempts": attempt})

        try:
            outcome = await self._invoke(resource, task, attempt)
        except (TransientProviderError, CircuitOpenError) as exc:
            await self._retry_submission(task, exc)
            return await self.tasks.get(task_id)
        except (PermanentProviderError, CredentialError) as exc:
            log.warning("task_permanent_failure", error=summarize_error(exc))
            await self.fail(task, summarize_error(exc), E.failed)
            return await self.tasks.get(task_id)
        except Exception as exc:
            log.error("driver_call_crashed", exc_info=True)
            await self._retry_submission(task, exc)
            raise

        await self._on_submitted(resource, task, outcome, attempt)
        return await self.tasks.get(task_id)

    async def handle_webhook(
        self, driver_id: str, payload: bytes, headers: Mapping[str, str]
    ) -> ProvisionTask | None:
        """Apply a provider callback through the same path as a poll result."""
        driver = self.registry.require(driver_id, Capability.WEBHOOKS)
        if not driver.verify_signature(payload, headers):
            raise WebhookVerificationError(
                "Webhook signature verification failed", {"driver": driver_id}
            )
        delivery = driver.handle_webhook(payload)
        log = logger.bind(driver=driver_id)
        task = await self.tasks.find_by_provider_task(driver_id, delivery.provider_task_id)
        if task is None:
            log.warning("webhook_unknown_task")
            return None
        if task.is_terminal:
            log.info("webhook_duplicate", task_id=task.id, status=task.status.value)
            return task
        if not delivery.result.is_terminal:
            log.debug("webhook_progress", task_id=task.id)
            return task
        await self.complete(task, delivery.result, source="webhook")
        return await self.tasks.get(task.id)

    async def get_resource(self, resource_id: str) -> Resource:
        return await self._load(resource_id)

    async def history(self, resource_id: str) -> list[ProvisionAudit]:
        return await self.ledger.history(resource_id)

    async def tasks_for(self, resource_id: str) -> list[ProvisionTask]:
        return await self.tasks.list_for_resource(resource_id)

    # -- shared with the poller --

    async def complete(self, task: ProvisionTask, result: PollResult, *, source: str) -> bool:
        """Apply a terminal provider result to a task and its resource.

        Returns False when the task had already been finished by someone else.
        """
        status = TaskStatus.completed if result.status == "completed" else TaskStatus.failed
        last_error = None
        if status is TaskStatus.failed:
            last_error = "Provider reported the task as failed"
        if not await self.tasks.finish(task.id, status, last_error=last_error):
            await self.session.rollback()
            logger.info("task_already_terminal", task_id=task.id, source=source)
            return False

        if status is TaskStatus.completed:
            event = E.suspend if task.action is TaskAction.suspend else E.succeeded
        else:
            event = E.failed
        await self._apply_or_log(
            task,
            event,
            metadata={"task_id": task.id, "source": source, **result.details},
            provider_ref=result.provider_ref,
            spec=self._target_spec(task) if event is E.succeeded else None,
            reason=last_error,
        )
        await self._commit()
        await self.scheduler.cancel(task.id)
        logger.info(
            "task_finished",
            task_id=task.id,
            action=task.action.value,
            status=status.value,
            source=source,
        )
        return True

    async def fail(self, task: ProvisionTask, error: str, event: LifecycleEvent) -> None:
        if not await self.tasks.finish(task.id, TaskStatus.failed, last_error=error):
            await self.session.rollback()
            return
        if task.action is not TaskAction.sync:
            # a failed health check says nothing about the resource itself
            await self._apply_or_log(task, event, metadata={"task_id": task.id}, reason=error)
        await self._commit()
        await self.scheduler.cancel(task.id)
        logger.warning(
            "task_failed",
            task_id=task.id,
            action=task.action.value,
            lifecycle_event=event.value,
            error=error,
        )

    @asynccontextmanager
    async def credentials(self, resource: Resource) -> AsyncIterator[SecretStr | None]:
        driver = self.registry.get(resource.driver)
        async with self.vault.scoped(
            resource.driver, resource.user_id, required=driver.requires_credentials
        ) as secret:
            yield secret

    async def _load(self, resource_id: str, *, for_update: bool = False) -> Resource:
        resource = await self.resources.get(resource_id, for_update=for_update)
        if resource is None:
            raise ResourceNotFound(f"Resource '{resource_id}' not found", {"resource_id": resource_id})
        return resource

    # -- internals --

    async def _request(
        self,
        resource_id: str,
        action: TaskAction,
        *,
        actor: str,
        changes: Mapping[str, Any] | None = None,
    ) -> ProvisionTask:
        resource = await self._load(resource_id, for_update=True)
        existing = await self.tasks.get_active(resource.id, action)
        if existing is not None:
            await self.session.rollback()
            logger.info("dispatch_single_flight", resource_id=resource.id, action=action.value, task_id=existing.id)
            return existing
        if action is not TaskAction.deprovision:
            # one action in flight per resource; only deprovision may cut in
            busy = await self.tasks.list_for_resource(resource.id, pending_only=True)
            if busy:
                await self.session.rollback()
                raise StateConflictError(
                    f"Cannot {action.value} while a {busy[0].action.value} is in progress",
                    {"resource_id": resource.id, "task_id": busy[0].id},
                )

        event = _REQUEST_EVENTS.get(action)
        if event is not None and not can_transition(resource.status, event):
            await self.session.rollback()
            raise StateConflictError(
                f"Cannot {action.value} a resource that is {resource.status.value}",
                {"resource_id": resource.id, "status": resource.status.value},
            )

        payload: dict[str, Any] = {"actor": actor}
        if action is TaskAction.resize:
            payload["spec"] = resource.spec.with_changes(changes or {}).model_dump(mode="json")
        if action in (TaskAction.resume, TaskAction.resize, TaskAction.deprovision):
            # these states are entered when the request is accepted
            resource = await self._apply(resource.id, event, actor=actor, action=action.value)  # type: ignore[arg-type]

        superseded: list[ProvisionTask] = []
        if action is TaskAction.deprovision:
            superseded = await self._supersede_pending(resource)

        try:
            task, _ = await self._open_task(resource, action, payload)
        except IdempotencyConflict:
            winner = await self.tasks.get_active(resource.id, action)
            if winner is None:
                raise
            return winner
        await self._commit()
        for old in superseded:
            await self.scheduler.cancel(old.id)
        await self._schedule_execute(task)
        logger.info("dispatch_accepted", resource_id=resource.id, action=action.value, task_id=task.id, actor=actor)
        return task

    async def _supersede_pending(self, resource: Resource) -> list[ProvisionTask]:
        superseded = []
        for task in await self.tasks.list_for_resource(resource.id, pending_only=True):
            if task.action is TaskAction.deprovision:
                continue
            if await self.tasks.finish(
                task.id, TaskStatus.failed, last_error="Cancelled by deprovision request"
            ):
                superseded.append(task)
        return superseded

    async def _open_task(
        self,
        resource: Resource,
        action: TaskAction,
        payload: Mapping[str, Any] | None = None,
    ) -> tuple[ProvisionTask, bool]:
        """Create the pending task for (resource, action) unless one exists."""
        existing = await self.tasks.get_active(resource.id, action)
        if existing is not None:
            return existing, False
        task = ProvisionTask(
            id=new_id(),
            resource_id=resource.id,
            action=action,
            payload=dict(payload or {}),
        )
        try:
            await self.tasks.create(task)
        except IntegrityError as exc:
            await self.session.rollback()
            raise IdempotencyConflict(
                "A task for this resource and action is already in flight",
                {"resource_id": resource.id, "action": action.value},
            ) from exc
        return task, True

    async def _invoke(self, resource: Resource, task: ProvisionTask, attempt: int) -> Any:
        """Issue the driver call for one attempt, through breaker and vault."""
        breaker = self.breakers.get(resource.driver)
        if task.action is TaskAction.sync:
            driver = self.registry.require(resource.driver, Capability.METRICS)
        else:
            driver = self.registry.require(resource.driver, Capability.PROVISIONER)
        log = logger.bind(task_id=task.id, driver=resource.driver, action=task.action.value, attempt=attempt)
        if task.action is TaskAction.deprovision and not await self._ever_submitted(resource):
            # never reached the provider; nothing to tear down
            log.info("deprovision_without_provider_ref")
            return None
        log.info("driver_call_started")

        async with self.credentials(resource) as credentials:
            if task.action is TaskAction.provision:
                key = f"{resource.order_ref}:attempt_{attempt}"
                provider_task_id = await breaker.call(
                    driver.provision, resource.spec, key, credentials=credentials
                )
                if not provider_task_id:
                    raise PermanentProviderError(
                        "Provider accepted the order without returning a task id",
                        {"driver": resource.driver},
                    )
                return provider_task_id
            if task.action is TaskAction.resize:
                spec = self._target_spec(task) or resource.spec
                return await breaker.call(driver.resize, resource, spec, credentials=credentials)
            if task.action is TaskAction.sync:
                return await breaker.call(driver.health, resource, credentials=credentials)
            call = getattr(driver, task.action.value)
            return await breaker.call(call, resource, credentials=credentials)

    async def _ever_submitted(self, resource: Resource) -> bool:
        if resource.provider_ref:
            return True
        tasks = await self.tasks.list_for_resource(resource.id)
        return any(t.provider_task_id for t in tasks)

    async def _on_submitted(
        self, resource: Resource, task: ProvisionTask, outcome: Any, attempt: int
    ) -> None:
        if task.action is TaskAction.sync:
            await self._reconcile(resource, task, outcome or {})
            return

        provider_task_id = str(outcome) if outcome else None
        if provider_task_id is None:
            # the driver finished the change synchronously
            await self.complete(task, PollResult(status="completed"), source="driver")
            return

        await self.tasks.record_submission(task.id, provider_task_id)
        if task.action is TaskAction.provision:
            # the task id stands in as the reference until the provider reports one
            await self._apply(
                resource.id,
                E.submitted,
                metadata={
                    "task_id": task.id,
                    "provider_task_id": provider_task_id,
                    "attempt": attempt,
                },
                provider_ref=provider_task_id,
            )
        await self._commit()
        task = task.model_copy(update={"provider_task_id": provider_task_id})
        await self.poller.schedule_poll(task, self.settings.poll_initial_delay)
        logger.info("task_submitted", task_id=task.id, action=task.action.value, attempt=attempt)

    async def _retry_submission(self, task: ProvisionTask, exc: BaseException) -> None:
        error = summarize_error(exc)
        if task.attempts >= self.settings.dispatch_max_attempts:
            await self.fail(
                task,
                f"Gave up after {task.attempts} attempts: {error}"[:MAX_ERROR_LENGTH],
                E.timed_out,
            )
            return
        await self.tasks.note_error(task.id, error)
        await self._commit()
        if isinstance(exc, CircuitOpenError):
            delay = max(exc.retry_after, self.poller.compute_delay(task.attempts))
        else:
            delay = self.poller.compute_delay(task.attempts)
        await self._schedule_execute(task, delay=delay)
        logger.warning(
            "task_submission_retry",
            task_id=task.id,
            attempt=task.attempts,
            delay=round(delay, 3),
            error=error,
        )

    async def _reconcile(
        self, resource: Resource, task: ProvisionTask, observed: Mapping[str, Any]
    ) -> None:
        state = str(observed.get("state", "")).lower()
        await self.tasks.finish(task.id, TaskStatus.completed)
        current = await self._load(resource.id, for_update=True)
        await self.resources.touch_synced(resource.id, utcnow())
        event = DRIFT_EVENTS.get(state)
        if event is None:
            logger.info("sync_in_agreement", resource_id=resource.id, observed=state)
        elif can_transition(current.status, event):
            await self._apply(
                resource.id,
                event,
                action="sync_drift",
                metadata={"observed": state, "task_id": task.id},
                reason=f"Provider reports resource {state}",
            )
        else:
            logger.warning(
                "sync_drift_unreconcilable",
                resource_id=resource.id,
                status=current.status.value,
                observed=state,
            )
        await self._commit()

    async def _apply(
        self,
        resource_id: str,
        event: LifecycleEvent,
        *,
        actor: str = SYSTEM_ACTOR,
        action: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        provider_ref: str | None = None,
        spec: ResourceSpec | None = None,
        reason: str | None = None,
    ) -> Resource:
        """Authorize and write one transition plus its audit row (no commit)."""
        resource = await self._load(resource_id, for_update=True)
        moved = transition(resource.status, event, actor=actor, action=action, metadata=metadata)
        await self.resources.set_status(resource.id, moved.status, provider_ref=provider_ref, spec=spec)
        await self.ledger.record_entry(resource.id, moved.audit)
        updated = resource.model_copy(
            update={
                "status": moved.status,
                "provider_ref": provider_ref or resource.provider_ref,
                "spec": spec or resource.spec,
            }
        )
        outbound = event_for_transition(updated, resource.status, moved.status, reason=reason)
        if outbound is not None:
            self._outbox.append(outbound)
        return updated

    async def _apply_or_log(self, task: ProvisionTask, event: LifecycleEvent, **kwargs: Any) -> None:
        kwargs.setdefault("actor", task.payload.get("actor") or SYSTEM_ACTOR)
        try:
            await self._apply(task.resource_id, event, **kwargs)
        except InvalidTransition as exc:
            # e.g. a failed suspend leaves an ACTIVE resource as it was
            logger.warning(
                "lifecycle_transition_rejected",
                task_id=task.id,
                resource_id=task.resource_id,
                details=exc.details,
            )

    async def _commit(self) -> None:
        await self.session.commit()
        outbox, self._outbox = self._outbox, []
        for event in outbox:
            await self.events.publish(event)

    async def _schedule_execute(self, task: ProvisionTask, *, delay: float = 0.0) -> None:
        await self.scheduler.schedule(JobTypes.EXECUTE, task, delay=delay, seq=task.attempts)

    @staticmethod
    def _target_spec(task: ProvisionTask) -> ResourceSpec | None:
        raw = task.payload.get("spec")
        return ResourceSpec.model_validate(raw) if raw else None
