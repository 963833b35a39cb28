from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import structlog

from provisioner.config import Settings, get_settings
from provisioner.db.session import init_engine, session_scope
from provisioner.domain.models import SYSTEM_ACTOR, Order
from provisioner.logging import bind_context, configure_logging
from provisioner.orchestration import Orchestrator
from provisioner.queue import InMemoryJobQueue, JobMessage, JobTypes
from provisioner.resilience import CircuitBreakerRegistry
from provisioner.runtime import Runtime, build_runtime

logger = structlog.get_logger()

# survives across invocations of a warm Lambda container
_breakers: CircuitBreakerRegistry | None = None


async def _route(orchestrator: Orchestrator, message: JobMessage) -> Any:
    body = message.payload
    job_type = message.job_type

    if job_type == JobTypes.KICK:
        return await orchestrator.kick(Order.model_validate(body["order"]))
    if job_type == JobTypes.EXECUTE:
        return await orchestrator.execute(body["task_id"], int(body["seq"]))
    if job_type == JobTypes.POLL:
        return await orchestrator.poller.check_once(body["task_id"], int(body["seq"]))
    if job_type == JobTypes.WEBHOOK:
        return await orchestrator.handle_webhook(
            body["driver"], body["body"].encode(), body.get("headers") or {}
        )

    resource_id = body.get("resource_id")
    actor = body.get("actor") or message.requested_by or SYSTEM_ACTOR
    if job_type == JobTypes.SUSPEND:
        return await orchestrator.suspend(resource_id, actor=actor)
    if job_type == JobTypes.RESUME:
        return await orchestrator.resume(resource_id, actor=actor)
    if job_type == JobTypes.DEPROVISION:
        return await orchestrator.deprovision(resource_id, actor=actor)
    if job_type == JobTypes.RESIZE:
        return await orchestrator.resize(resource_id, body.get("changes") or {}, actor=actor)
    if job_type == JobTypes.SYNC:
        return await orchestrator.sync(resource_id, actor=actor)

    logger.warning("job_type_unknown", job_id=message.job_id, job_type=job_type)
    return None


async def process_job(payload: dict[str, Any] | str, runtime: Runtime) -> None:
    """Run one queued job in its own database session."""
    message = JobMessage.from_message_body(payload)
    log = bind_context(job_id=message.job_id, job_type=message.job_type)

    if message.not_before is not None:
        remaining = message.not_before - time.time()
        if remaining > 0:
            message.delay_seconds = remaining
            await runtime.queue.enqueue(message)
            log.info("job_redeferred", remaining=round(remaining, 3))
            return

    start_ts = time.time()
    log.debug("job_started")
    async with session_scope() as session:
        orchestrator = Orchestrator(session, runtime)
        try:
            await _route(orchestrator, message)
        except Exception:
            await session.rollback()
            log.error("job_failed", duration=time.time() - start_ts, exc_info=True)
            raise
    log.debug("job_succeeded", duration=time.time() - start_ts)


async def handle_event(event: dict[str, Any], runtime: Runtime) -> dict[str, Any]:
    """
    Handle SQS event with partial batch failure support.
    Returns batchItemFailures for failed messages.
    """
    records = event.get("Records", [])
    failed_message_ids = []

    for record in records:
        message_id = record.get("messageId")
        try:
            payload = json.loads(record["body"])
            await process_job(payload, runtime)
        except Exception as exc:
            logger.error(
                "message_processing_failed",
                message_id=message_id,
                error_type=type(exc).__name__,
            )
            failed_message_ids.append(message_id)

    return {"batchItemFailures": [{"itemIdentifier": msg_id} for msg_id in failed_message_ids]}


def _container_breakers(settings: Settings) -> CircuitBreakerRegistry:
    global _breakers
    if _breakers is None:
        _breakers = CircuitBreakerRegistry(settings)
    return _breakers


async def _handle_batch(event: dict[str, Any]) -> dict[str, Any]:
    settings = get_settings()
    runtime = build_runtime(settings, breakers=_container_breakers(settings))
    await runtime.start()
    try:
        return await handle_event(event, runtime)
    finally:
        await runtime.stop()


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_engine(settings)

    logger.info(
        "lambda_invoked",
        request_id=getattr(context, "aws_request_id", "unknown"),
        record_count=len(event.get("Records", [])),
    )

    return asyncio.run(_handle_batch(event))


async def drain(queue: InMemoryJobQueue, runtime: Runtime, *, max_jobs: int = 1000) -> int:
    """Process queued jobs immediately, ignoring their delays.

    Returns the number of jobs run. Used by tooling and tests to step the
    system without waiting on backoff timers.
    """
    processed = 0
    while processed < max_jobs:
        message = queue.pop_next()
        if message is None:
            break
        await process_job(json.loads(message.to_message_body()), runtime)
        processed += 1
    return processed


async def run_worker(
    queue: InMemoryJobQueue,
    runtime: Runtime,
    *,
    stop: asyncio.Event | None = None,
) -> None:
    """Long-running consumer for the in-memory backend."""
    stop = stop or asyncio.Event()
    await runtime.start()
    logger.info("worker_started", backend="memory")
    try:
        while not stop.is_set():
            message = await queue.dequeue()
            try:
                await process_job(json.loads(message.to_message_body()), runtime)
            except Exception:
                # the persisted task state decides whether a retry is still owed
                logger.warning("worker_job_dropped", job_id=message.job_id, exc_info=True)
    finally:
        await runtime.stop()
        logger.info("worker_stopped")
