import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from provisioner.core.errors import ConfigurationError
from provisioner.domain.models import ProvisionTask, TaskAction
from provisioner.queue import InMemoryJobQueue, JobMessage, JobTypes, SqsJobQueue, TaskScheduler


def job(job_id, delay=0.0):
    return JobMessage(job_id=job_id, job_type=JobTypes.POLL, delay_seconds=delay)


def sqs_settings(settings, url="https://sqs.eu-central-1.amazonaws.com/123/provisioner"):
    return settings.model_copy(update={"sqs_queue_url": url, "job_queue_backend": "sqs"})


def test_message_body_round_trip_drops_empty_fields():
    message = JobMessage(
        job_id="task.poll:t-1:2",
        job_type=JobTypes.POLL,
        payload={"task_id": "t-1", "seq": 2},
        delay_seconds=4.5,
    )

    body = message.to_message_body()

    assert "not_before" not in json.loads(body)
    assert JobMessage.from_message_body(body) == message


@pytest.mark.asyncio
async def test_memory_queue_orders_by_due_time(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.enqueue(job("late", delay=10))
    await queue.enqueue(job("soon", delay=1))
    await queue.enqueue(job("now"))

    assert [m.job_id for m in queue.pending()] == ["now", "soon", "late"]
    assert queue.pop_next().job_id == "now"
    assert queue.pop_next(due_only=True) is None

    clock.advance(1)
    assert queue.pop_next(due_only=True).job_id == "soon"
    assert queue.pop_next().job_id == "late"
    assert queue.pop_next() is None


@pytest.mark.asyncio
async def test_memory_queue_cancel(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.enqueue(job("a"))
    await queue.enqueue(job("b"))

    assert await queue.cancel("a")
    assert not await queue.cancel("missing")
    assert queue.size() == 1
    assert queue.pop_next().job_id == "b"


@pytest.mark.asyncio
async def test_memory_queue_dequeue_returns_due_job(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.enqueue(job("a"))

    message = await queue.dequeue()

    assert message.job_id == "a"


@pytest.mark.asyncio
async def test_scheduler_job_ids_and_cancel(queue):
    scheduler = TaskScheduler(queue)
    task = ProvisionTask(id="t-1", resource_id="r-1", action=TaskAction.provision)

    first = await scheduler.schedule(JobTypes.POLL, task, delay=2.0, seq=0)
    second = await scheduler.schedule(JobTypes.POLL, task, delay=4.0, seq=1)

    assert first == "task.poll:t-1:0"
    assert second == "task.poll:t-1:1"
    assert queue.pending()[0].payload == {"task_id": "t-1", "seq": 0}

    assert await scheduler.cancel("t-1") == 2
    assert queue.size() == 0
    assert await scheduler.cancel("t-1") == 0


@pytest.mark.asyncio
async def test_scheduler_submit(queue):
    scheduler = TaskScheduler(queue)

    job_id = await scheduler.submit(
        JobTypes.SUSPEND, {"resource_id": "r-1"}, key="r-1:1", requested_by="admin"
    )

    message = queue.pop_next()
    assert job_id == "resource.suspend:r-1:1"
    assert message.requested_by == "admin"
    assert message.idempotency_key == "r-1:1"


def test_sqs_requires_queue_url(settings):
    with pytest.raises(ConfigurationError, match="SQS_QUEUE_URL"):
        SqsJobQueue(settings)


def test_sqs_rejects_fifo_queues(settings):
    with pytest.raises(ConfigurationError, match="FIFO"):
        SqsJobQueue(sqs_settings(settings, url="https://sqs.example.com/123/jobs.fifo"))


def _mock_sqs_client(mock_aioboto3):
    client = AsyncMock()
    client.send_message.return_value = {"MessageId": "msg-1"}
    context = MagicMock()
    context.__aenter__.return_value = client
    context.__aexit__.return_value = False
    mock_aioboto3.Session.return_value.client.return_value = context
    return client


@pytest.mark.asyncio
async def test_sqs_enqueue_short_delay(settings):
    queue = SqsJobQueue(sqs_settings(settings))

    with patch("provisioner.queue.sqs.aioboto3") as mock_aioboto3:
        client = _mock_sqs_client(mock_aioboto3)
        message_id = await queue.enqueue(job("a", delay=12.2))

    assert message_id == "msg-1"
    kwargs = client.send_message.call_args.kwargs
    assert kwargs["DelaySeconds"] == 13
    assert "not_before" not in json.loads(kwargs["MessageBody"])


@pytest.mark.asyncio
async def test_sqs_enqueue_caps_long_delay(settings):
    queue = SqsJobQueue(sqs_settings(settings))
    before = time.time()

    with patch("provisioner.queue.sqs.aioboto3") as mock_aioboto3:
        client = _mock_sqs_client(mock_aioboto3)
        await queue.enqueue(job("a", delay=3600))

    kwargs = client.send_message.call_args.kwargs
    body = json.loads(kwargs["MessageBody"])
    assert kwargs["DelaySeconds"] == 900
    assert body["not_before"] >= before + 3600


@pytest.mark.asyncio
async def test_sqs_cannot_cancel(settings):
    queue = SqsJobQueue(sqs_settings(settings))

    assert not await queue.cancel("a")
