"""
Tests for the RetryCoordinator in difybatch.retry.
"""

import httpx
import pytest

from difybatch.aggregator import Aggregator
from difybatch.db import crud
from difybatch.db.session import get_db
from difybatch.models import ProcessBatch, RetryFailed
from difybatch.queue import DispatchQueue
from difybatch.retry import RetryCoordinator
from difybatch.status import ErrorKind, MessageStatus, TaskStatus
from difybatch.worker import BatchWorker


@pytest.fixture
def worker(dify_client, session_factory, events, clock) -> BatchWorker:
    return BatchWorker(
        client=dify_client, session_factory=session_factory, events=events, clock=clock
    )


@pytest.fixture
def coordinator(queue, worker, session_factory, clock) -> RetryCoordinator:
    return RetryCoordinator(
        queue=queue,
        worker=worker,
        session_factory=session_factory,
        clock=clock,
        lease_seconds=300,
    )


@pytest.fixture
def failed_batch(queue, worker, session_factory, clock, dify_api, make_setting):
    """
    Run a two-message batch against a failing remote service.

    Returns
    -------
    typing.Callable[..., typing.Awaitable[tuple[ProcessBatch, list[FailedMessage]]]]
        Coroutine function returning the dispatched item and its failure records.
    """

    async def _failed_batch(contents=("a", "b")):
        make_setting(batch_threshold=10)
        aggregator = Aggregator(queue=queue, session_factory=session_factory, clock=clock)
        for content in contents:
            await aggregator.add_message(content)
        await aggregator.force_process()
        item = queue._queue.get_nowait()
        dify_api.fail_with(status_code=500)
        await worker.process(item)
        dify_api.recover()
        with get_db(session_factory) as db:
            failed_messages = crud.get_failed_messages_by_request_task(
                db=db, request_task_pk=item.task_pk
            )
        return item, failed_messages

    return _failed_batch


def _load(session_factory, failed_message_id):
    with get_db(session_factory) as db:
        return crud.get_failed_message(db=db, failed_message_id=failed_message_id)


def _history(session_factory, failed_message_id):
    return [entry["result"] for entry in _load(session_factory, failed_message_id).retry_history]


@pytest.mark.asyncio
async def test_retry_is_idempotent(coordinator, queue, session_factory, failed_batch):
    _, (failed_message, _) = await failed_batch()

    first = coordinator.retry(failed_message_id=failed_message.id)
    second = coordinator.retry(failed_message_id=failed_message.id)

    assert first.success is True
    assert first.message == "Retry queued"
    assert second.success is False
    assert second.error_kind == ErrorKind.ALREADY_RETRIED
    assert queue.qsize() == 1

    result = await coordinator.execute(queue._queue.get_nowait())
    third = coordinator.retry(failed_message_id=failed_message.id)

    assert result.success is True
    assert third.error_kind == ErrorKind.ALREADY_RETRIED
    refreshed = _load(session_factory, failed_message.id)
    assert refreshed.retried is True
    assert refreshed.retry_claimed_at is None
    assert _history(session_factory, failed_message.id) == [
        "retry_queued",
        "retry_started",
        "retry_success",
    ]


@pytest.mark.asyncio
async def test_retry_unknown_record(coordinator, queue):
    result = coordinator.retry(failed_message_id="missing")

    assert result.success is False
    assert result.error_kind == ErrorKind.NOT_FOUND
    assert queue.qsize() == 0


@pytest.mark.asyncio
async def test_retry_by_task_id_without_failures(coordinator, queue):
    summary = coordinator.retry_by_task_id(task_id="T1")

    assert summary.success is False
    assert summary.message == "No failed messages found for task ID: T1"
    assert summary.results == []
    assert queue.qsize() == 0


@pytest.mark.asyncio
async def test_retry_by_task_id(coordinator, queue, failed_batch):
    item, failed_messages = await failed_batch()

    summary = coordinator.retry_by_task_id(task_id=item.task_id)

    assert summary.success is True
    assert summary.retried_count == 2
    assert summary.total_count == 2
    assert queue.qsize() == 2
    assert coordinator.retry_by_task_id(task_id=item.task_id).retried_count == 0


@pytest.mark.asyncio
async def test_retry_many_reports_each_id(coordinator, failed_batch):
    _, (failed_message, _) = await failed_batch()

    results = coordinator.retry_many(failed_message_ids=[failed_message.id, "missing"])

    assert results[failed_message.id].success is True
    assert results["missing"].error_kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_single_retry_sends_original_content(
    coordinator, queue, session_factory, dify_api, failed_batch
):
    _, (failed_message, _) = await failed_batch()
    with get_db(session_factory) as db:
        original = crud.get_message(db=db, message_id=failed_message.message_id)

    coordinator.retry(failed_message_id=failed_message.id, task_id="external-1")
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.success is True
    assert dify_api.chat_requests[-1]["body"]["query"] == original.content
    with get_db(session_factory) as db:
        retry_tasks = [
            task for task in crud.get_tasks(db=db) if task.task_id.startswith("retry_single_")
        ]
        (retry_task,) = retry_tasks
        (copy,) = crud.get_task_messages(db=db, task_pk=retry_task.id)
    assert retry_task.status == TaskStatus.COMPLETED
    assert retry_task.meta["retry_of_failed_message"] == failed_message.id
    assert retry_task.meta["correlation_task_id"] == "external-1"
    assert copy.meta["retry_of"] == original.id
    assert copy.status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_whole_batch_retry(coordinator, queue, session_factory, dify_api, failed_batch):
    item, _ = await failed_batch()

    summary = coordinator.retry_by_request_task_id(request_task_id=item.task_id)
    assert summary.retried_count == 2
    assert summary.request_task_id == item.task_pk
    first, second = (result.failed_message_id for result in summary.results)

    winner = await coordinator.execute(queue._queue.get_nowait())
    loser = await coordinator.execute(queue._queue.get_nowait())

    assert winner.success is True
    assert loser.error_kind == ErrorKind.ALREADY_RETRIED
    assert len(dify_api.chat_requests) == 2
    assert dify_api.chat_requests[-1]["body"]["query"] == item.content

    with get_db(session_factory) as db:
        original = crud.get_task(db=db, task_pk=item.task_pk)
        (retry_task,) = [
            task for task in crud.get_tasks(db=db) if task.task_id.startswith("retry_batch_")
        ]
        copies = crud.get_task_messages(db=db, task_pk=retry_task.id)
    assert original.status == TaskStatus.RETRYING
    assert retry_task.status == TaskStatus.COMPLETED
    assert len(copies) == 2
    assert _load(session_factory, first).retried is True
    assert _load(session_factory, second).retried is True
    assert _history(session_factory, first)[-1] == "retry_success"
    assert _history(session_factory, second)[-1] == f"retry_covered: {first}"


@pytest.mark.asyncio
async def test_whole_batch_retry_skipped_while_in_progress(
    coordinator, queue, session_factory, failed_batch
):
    item, (failed_message, _) = await failed_batch()
    with get_db(session_factory) as db:
        crud.transition_task_to_retrying(db=db, task_pk=item.task_pk)

    coordinator.retry(failed_message_id=failed_message.id, retry_whole_batch=True)
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.success is True
    refreshed = _load(session_factory, failed_message.id)
    assert refreshed.retried is False
    assert refreshed.retry_claimed_at is None
    assert _history(session_factory, failed_message.id)[-1] == "retry_skipped"


@pytest.mark.asyncio
async def test_retry_that_fails_again(coordinator, queue, session_factory, dify_api, failed_batch):
    _, (failed_message, other) = await failed_batch()
    dify_api.fail_with(status_code=503)

    coordinator.retry(failed_message_id=failed_message.id)
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.success is False
    assert result.error_kind == ErrorKind.TRANSIENT
    refreshed = _load(session_factory, failed_message.id)
    assert refreshed.retried is True
    assert refreshed.retry_history[-1]["result"].startswith("retry_failed: ")

    retryable = coordinator.retryable_messages()
    assert failed_message.id not in {fm.id for fm in retryable}
    assert other.id in {fm.id for fm in retryable}
    (new_failure,) = [fm for fm in retryable if fm.id != other.id]
    assert new_failure.task_id.startswith("retry_single_")
    assert new_failure.attempts == 2


@pytest.mark.asyncio
async def test_abandoned_claim_expires(coordinator, queue, clock, failed_batch):
    _, (failed_message, _) = await failed_batch()

    assert coordinator.retry(failed_message_id=failed_message.id).success is True
    queue._queue.get_nowait()
    assert coordinator.retry(failed_message_id=failed_message.id).success is False

    clock.advance(seconds=301)
    assert coordinator.retry(failed_message_id=failed_message.id).success is True


@pytest.mark.asyncio
async def test_full_queue_releases_claim(worker, session_factory, clock, failed_batch):
    _, (failed_message, _) = await failed_batch()
    full_queue = DispatchQueue(maxsize=1, concurrency=1)
    full_queue.enqueue(
        ProcessBatch(task_pk="x", task_id="batch_x", content="x", message_ids=("x",))
    )
    coordinator = RetryCoordinator(
        queue=full_queue, worker=worker, session_factory=session_factory, clock=clock
    )

    result = coordinator.retry(failed_message_id=failed_message.id)

    assert result.error_kind == ErrorKind.FATAL
    assert _load(session_factory, failed_message.id).retry_claimed_at is None
    full_queue._queue.get_nowait()
    assert coordinator.retry(failed_message_id=failed_message.id).success is True


@pytest.mark.asyncio
async def test_retry_without_setting_is_abandoned(
    coordinator, queue, session_factory, dify_api, failed_batch
):
    _, (failed_message, _) = await failed_batch()
    with get_db(session_factory) as db:
        for setting in crud.get_settings(db=db):
            setting.is_active = False
        db.commit()

    coordinator.retry(failed_message_id=failed_message.id)
    requests_before = len(dify_api.requests)
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.error_kind == ErrorKind.FATAL
    assert len(dify_api.requests) == requests_before
    refreshed = _load(session_factory, failed_message.id)
    assert refreshed.retried is False
    assert refreshed.retry_claimed_at is None
    assert refreshed.retry_history[-1]["result"].startswith("retry_failed: ")
    with get_db(session_factory) as db:
        assert crud.get_inflight_tasks(db=db) == []


@pytest.mark.asyncio
async def test_execute_unknown_record(coordinator):
    result = await coordinator.execute(RetryFailed(failed_message_id="missing"))
    assert result.error_kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_retry_by_unknown_request_task(coordinator, queue):
    summary = coordinator.retry_by_request_task_id(request_task_id="missing")

    assert summary.success is False
    assert summary.message == "No failed messages found for RequestTask ID: missing"
    assert queue.qsize() == 0


@pytest.mark.asyncio
async def test_read_helpers(coordinator, failed_batch):
    item, failed_messages = await failed_batch()

    assert len(coordinator.failed_messages_for_task(task_id=item.task_id)) == 2
    assert [message.id for message in coordinator.request_task_messages(item.task_id)] == list(
        item.message_ids
    )
    assert coordinator.request_task_messages("missing") == []
    assert {fm.id for fm in coordinator.retryable_messages()} == {fm.id for fm in failed_messages}


@pytest.mark.asyncio
async def test_whole_batch_retry_leaves_out_delivered_members(
    coordinator, queue, session_factory, dify_api, failed_batch
):
    item, failed_messages = await failed_batch()
    with get_db(session_factory) as db:
        by_content = {
            crud.get_message(db=db, message_id=fm.message_id).content: fm for fm in failed_messages
        }

    coordinator.retry(failed_message_id=by_content["a"].id)
    assert (await coordinator.execute(queue._queue.get_nowait())).success is True
    coordinator.retry(failed_message_id=by_content["b"].id, retry_whole_batch=True)
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.success is True
    assert [request["body"]["query"] for request in dify_api.chat_requests] == [
        item.content,
        "a",
        "b",
    ]
    with get_db(session_factory) as db:
        (retry_task,) = [
            task for task in crud.get_tasks(db=db) if task.task_id.startswith("retry_batch_")
        ]
        (copy,) = crud.get_task_messages(db=db, task_pk=retry_task.id)
    assert copy.content == "b"
    assert _history(session_factory, by_content["a"].id)[-1] == "retry_success"
    assert _history(session_factory, by_content["b"].id)[-1] == "retry_success"


@pytest.mark.asyncio
async def test_claim_is_renewed_when_retry_starts(
    coordinator, queue, session_factory, clock, dify_api, dify_client, failed_batch
):
    _, (failed_message, _) = await failed_batch()
    coordinator.retry(failed_message_id=failed_message.id)
    clock.advance(seconds=200)
    claims_during_call = []

    def _handler(request: httpx.Request) -> httpx.Response:
        claims_during_call.append(_load(session_factory, failed_message.id).retry_claimed_at)
        return dify_api.handler(request)

    dify_client._client_factory = lambda: httpx.AsyncClient(
        transport=httpx.MockTransport(_handler)
    )
    result = await coordinator.execute(queue._queue.get_nowait())

    assert result.success is True
    assert claims_during_call == [clock.now()]


@pytest.mark.asyncio
async def test_lease_covers_the_request_timeout(
    coordinator, queue, session_factory, clock, failed_batch, make_setting
):
    _, (failed_message, _) = await failed_batch()
    make_setting(timeout=600, name="slow")

    assert coordinator.retry(failed_message_id=failed_message.id).success is True
    clock.advance(seconds=301)
    assert coordinator.retry(failed_message_id=failed_message.id).success is False

    clock.advance(seconds=360)
    assert coordinator.retry(failed_message_id=failed_message.id).success is True
