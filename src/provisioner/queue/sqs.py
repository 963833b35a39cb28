from __future__ import annotations

import math
import time

import aioboto3
import structlog

from provisioner.config import Settings
from provisioner.core.errors import ConfigurationError
from provisioner.queue.models import JobMessage

logger = structlog.get_logger()

# SQS per-message delay ceiling
MAX_DELAY_SECONDS = 900


class SqsJobQueue:
    """Send provisioning jobs to a standard SQS queue.

    Delays above the SQS ceiling are carried in ``not_before``; the worker
    re-defers such messages until they are due. SQS cannot withdraw a sent
    message, so ``cancel`` is a no-op and stale deliveries are discarded by
    the persisted task state check instead.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        queue_url = settings.sqs_queue_url or ""
        if not queue_url:
            raise ConfigurationError("PROVISIONER_SQS_QUEUE_URL is required for the sqs backend")
        if queue_url.endswith(".fifo"):
            raise ConfigurationError("FIFO queues do not support per-message delays")

    async def enqueue(self, message: JobMessage) -> str:
        delay = max(0.0, message.delay_seconds)
        if delay > MAX_DELAY_SECONDS and message.not_before is None:
            message.not_before = time.time() + delay
        session = aioboto3.Session(region_name=self._settings.aws_region)
        async with session.client("sqs") as client:
            response = await client.send_message(
                QueueUrl=self._settings.sqs_queue_url,
                MessageBody=message.to_message_body(),
                DelaySeconds=min(MAX_DELAY_SECONDS, math.ceil(delay)),
            )
        logger.debug("job_enqueued", job_id=message.job_id, job_type=message.job_type, delay=delay)
        return response["MessageId"]

    async def cancel(self, job_id: str) -> bool:
        return False
