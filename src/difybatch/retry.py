"""
Selective, idempotent retry of failed messages.

``RetryCoordinator.retry`` claims a failure record with a conditional update
and enqueues a ``RetryFailed`` item; ``RetryCoordinator.execute`` consumes it
on the queue side. A record is retried at most once: ``retried`` flips to
``True`` together with the recorded outcome, and an unfinished claim expires
after ``lease_seconds``.
"""

from __future__ import annotations

import typing as t

import structlog

from difybatch.batch_utils import new_batch_id
from difybatch.clock import Clock, SystemClock
from difybatch.db import crud
from difybatch.db.session import get_db
from difybatch.exceptions import DifyError, DispatchError
from difybatch.models import ProcessBatch, RetryFailed, RetryResult, RetrySummary
from difybatch.status import ClaimOutcome, ErrorKind, MessageStatus, TaskStatus
from difybatch.utils.logging import logging_context

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from difybatch.db.models import FailedMessage, Message, Task
    from difybatch.queue import DispatchQueue
    from difybatch.worker import BatchWorker

log = structlog.get_logger(__name__)

RETRY_QUEUED = "retry_queued"
RETRY_STARTED = "retry_started"
RETRY_SUCCESS = "retry_success"
RETRY_SKIPPED = "retry_skipped"

LEASE_MARGIN_SECONDS = 60.0


class _RetryAbandoned(Exception):
    """Raised when a retry cannot reach the remote step."""


class RetryCoordinator:
    """
    Re-enqueue failed work behind a one-retry-per-record guard.

    Parameters
    ----------
    queue : DispatchQueue
        Queue receiving ``RetryFailed`` items.
    worker : BatchWorker
        Worker running the retried batches.
    session_factory : sessionmaker[Session] | None, optional
        Session factory, the default database when ``None``.
    clock : Clock | None, optional
        Time source.
    lease_seconds : float, optional
        Age after which an unfinished claim is considered abandoned. The
        effective lease is never shorter than the active setting timeout plus
        ``LEASE_MARGIN_SECONDS``, so a running request keeps its claim.
    """

    def __init__(
        self,
        *,
        queue: "DispatchQueue",
        worker: "BatchWorker",
        session_factory: "sessionmaker[Session] | None" = None,
        clock: Clock | None = None,
        lease_seconds: float = 300.0,
    ) -> None:
        self._queue = queue
        self._worker = worker
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._lease_seconds = lease_seconds

    # -- Producer side ---------------------------------------------------------

    def _lease_for(self, *, db: "Session") -> float:
        setting = crud.get_active_setting(db=db)
        if setting is None:
            return self._lease_seconds
        return max(self._lease_seconds, setting.timeout + LEASE_MARGIN_SECONDS)

    def retry(
        self,
        failed_message_id: str,
        task_id: str | None = None,
        context: dict[str, t.Any] | None = None,
        retry_whole_batch: bool = False,
    ) -> RetryResult:
        """
        Claim a failure record and enqueue its retry.

        Parameters
        ----------
        failed_message_id : str
            Id of the failure record.
        task_id : str | None, optional
            External correlation id stored on the retry batch.
        context : dict[str, typing.Any] | None, optional
            Free-form context stored on the retry batch.
        retry_whole_batch : bool, optional
            Retry every member of the original batch together.

        Returns
        -------
        RetryResult
            ``success`` once the retry is queued; ``NOT_FOUND`` or
            ``ALREADY_RETRIED`` when the record cannot be claimed, ``FATAL``
            when the queue refused the item.
        """
        with get_db(self._session_factory) as db:
            claim = crud.claim_failed_message(
                db=db,
                failed_message_id=failed_message_id,
                now=self._clock.now(),
                lease_seconds=self._lease_for(db=db),
            )
            if claim == ClaimOutcome.NOT_FOUND:
                return RetryResult(
                    failed_message_id=failed_message_id,
                    success=False,
                    message=f"Failed message {failed_message_id} not found",
                    error_kind=ErrorKind.NOT_FOUND,
                )
            if claim == ClaimOutcome.ALREADY_RETRIED:
                return RetryResult(
                    failed_message_id=failed_message_id,
                    success=False,
                    message=f"Failed message {failed_message_id} has already been retried",
                    error_kind=ErrorKind.ALREADY_RETRIED,
                )
            if claim == ClaimOutcome.IN_PROGRESS:
                return RetryResult(
                    failed_message_id=failed_message_id,
                    success=False,
                    message=f"Failed message {failed_message_id} is already being retried",
                    error_kind=ErrorKind.ALREADY_RETRIED,
                )

            try:
                self._queue.enqueue(
                    RetryFailed(
                        failed_message_id=failed_message_id,
                        task_id=task_id,
                        context=context or {},
                        retry_whole_batch=retry_whole_batch,
                    )
                )
            except DispatchError as error:
                crud.release_failed_message_claim(db=db, failed_message_id=failed_message_id)
                log.error(
                    event="Retry could not be queued",
                    failed_message_id=failed_message_id,
                    error=str(object=error),
                )
                return RetryResult(
                    failed_message_id=failed_message_id,
                    success=False,
                    message=str(object=error),
                    error_kind=ErrorKind.FATAL,
                )

            failed_message = crud.get_failed_message(db=db, failed_message_id=failed_message_id)
            crud.add_retry_attempt(
                failed_message=failed_message, now=self._clock.now(), result=RETRY_QUEUED
            )
            db.commit()

        log.info(
            event="Retry queued",
            failed_message_id=failed_message_id,
            retry_whole_batch=retry_whole_batch,
        )
        return RetryResult(
            failed_message_id=failed_message_id, success=True, message="Retry queued"
        )

    def retry_many(
        self, failed_message_ids: list[str], context: dict[str, t.Any] | None = None
    ) -> dict[str, RetryResult]:
        return {
            failed_message_id: self.retry(failed_message_id=failed_message_id, context=context)
            for failed_message_id in failed_message_ids
        }

    def _summarize(
        self,
        *,
        results: list[RetryResult],
        request_task_id: str | None = None,
    ) -> RetrySummary:
        retried_count = sum(1 for result in results if result.success)
        return RetrySummary(
            success=retried_count > 0,
            message=f"Queued {retried_count} of {len(results)} failed messages for retry",
            retried_count=retried_count,
            total_count=len(results),
            results=results,
            request_task_id=request_task_id,
        )

    def retry_by_task_id(
        self, task_id: str, context: dict[str, t.Any] | None = None
    ) -> RetrySummary:
        """
        Retry every un-retried failure record correlated with ``task_id``.

        Parameters
        ----------
        task_id : str
            External correlation id, the batch identifier for batch failures.
        context : dict[str, typing.Any] | None, optional
            Free-form context stored on the retry batches.

        Returns
        -------
        RetrySummary
            ``success=False`` and nothing enqueued when no record matches.
        """
        with get_db(self._session_factory) as db:
            failed_message_ids = [
                failed_message.id
                for failed_message in crud.get_failed_messages_by_task_id(db=db, task_id=task_id)
            ]
        if not failed_message_ids:
            return RetrySummary(
                success=False, message=f"No failed messages found for task ID: {task_id}"
            )
        results = [
            self.retry(failed_message_id=failed_message_id, task_id=task_id, context=context)
            for failed_message_id in failed_message_ids
        ]
        return self._summarize(results=results)

    def retry_by_request_task_id(
        self, request_task_id: str, context: dict[str, t.Any] | None = None
    ) -> RetrySummary:
        """
        Retry the failed members of one batch together.

        Parameters
        ----------
        request_task_id : str
            Primary key or batch identifier of the failed batch.
        context : dict[str, typing.Any] | None, optional
            Free-form context stored on the retry batch.

        Returns
        -------
        RetrySummary
            ``success=False`` and nothing enqueued when no record matches.
        """
        with get_db(self._session_factory) as db:
            task = crud.find_task(db=db, identifier=request_task_id)
            failed_messages = (
                crud.get_failed_messages_by_request_task(db=db, request_task_pk=task.id)
                if task is not None
                else []
            )
        if not failed_messages:
            return RetrySummary(
                success=False,
                message=f"No failed messages found for RequestTask ID: {request_task_id}",
            )
        results = [
            self.retry(
                failed_message_id=failed_message.id,
                task_id=task.task_id,
                context=context,
                retry_whole_batch=True,
            )
            for failed_message in failed_messages
        ]
        return self._summarize(results=results, request_task_id=task.id)

    def retryable_messages(self, limit: int | None = 100) -> list["FailedMessage"]:
        with get_db(self._session_factory) as db:
            return crud.get_unretried_failed_messages(db=db, limit=limit)

    def failed_messages_for_task(
        self, task_id: str, retried: bool | None = False
    ) -> list["FailedMessage"]:
        with get_db(self._session_factory) as db:
            return crud.get_failed_messages_by_task_id(db=db, task_id=task_id, retried=retried)

    def request_task_messages(self, request_task_id: str) -> list["Message"]:
        with get_db(self._session_factory) as db:
            task = crud.find_task(db=db, identifier=request_task_id)
            if task is None:
                return []
            return crud.get_task_messages(db=db, task_pk=task.id)

    # -- Consumer side ---------------------------------------------------------

    async def execute(self, item: RetryFailed) -> RetryResult:
        """
        Run a queued retry through the batch worker and record its outcome.

        Parameters
        ----------
        item : RetryFailed
            The queued retry.

        Returns
        -------
        RetryResult
            ``success`` when the remote call succeeded, ``TRANSIENT`` when it
            failed again, ``FATAL`` when the retry could not be attempted.
        """
        failed_message_id = item.failed_message_id
        with logging_context(failed_message_id=failed_message_id):
            with get_db(self._session_factory) as db:
                failed_message = crud.get_failed_message(db=db, failed_message_id=failed_message_id)
                if failed_message is None:
                    return RetryResult(
                        failed_message_id=failed_message_id,
                        success=False,
                        message=f"Failed message {failed_message_id} not found",
                        error_kind=ErrorKind.NOT_FOUND,
                    )
                if failed_message.retried:
                    log.debug(event="Failed message already retried, skipping")
                    return RetryResult(
                        failed_message_id=failed_message_id,
                        success=False,
                        message=f"Failed message {failed_message_id} has already been retried",
                        error_kind=ErrorKind.ALREADY_RETRIED,
                    )
                now = self._clock.now()
                crud.add_retry_attempt(failed_message=failed_message, now=now, result=RETRY_STARTED)
                # The lease restarts with the execution, time spent queued does not count.
                failed_message.retry_claimed_at = now
                db.commit()

                try:
                    if item.retry_whole_batch:
                        batch = self._prepare_batch_retry(
                            db=db, failed_message=failed_message, item=item
                        )
                        if batch is None:
                            crud.add_retry_attempt(
                                failed_message=failed_message,
                                now=self._clock.now(),
                                result=RETRY_SKIPPED,
                            )
                            db.commit()
                            crud.release_failed_message_claim(
                                db=db, failed_message_id=failed_message_id
                            )
                            return RetryResult(
                                failed_message_id=failed_message_id,
                                success=True,
                                message="Batch retry already in progress",
                            )
                    else:
                        batch = self._prepare_single_retry(
                            db=db, failed_message=failed_message, item=item
                        )
                except _RetryAbandoned as error:
                    return self._abandon(
                        db=db, failed_message=failed_message, reason=str(object=error)
                    )

            try:
                outcome = await self._worker.process(batch)
            except DifyError as error:
                with get_db(self._session_factory) as db:
                    self._revert_batch(db=db, batch=batch, reason=str(object=error))
                    failed_message = crud.get_failed_message(
                        db=db, failed_message_id=failed_message_id
                    )
                    return self._abandon(
                        db=db, failed_message=failed_message, reason=str(object=error)
                    )

            with get_db(self._session_factory) as db:
                failed_message = crud.get_failed_message(db=db, failed_message_id=failed_message_id)
                now = self._clock.now()
                result = RETRY_SUCCESS if outcome.success else f"retry_failed: {outcome.error}"
                if item.retry_whole_batch and failed_message.request_task_id is not None:
                    siblings = crud.get_failed_messages_by_request_task(
                        db=db, request_task_pk=failed_message.request_task_id
                    )
                    for sibling in siblings:
                        if sibling.id == failed_message.id:
                            continue
                        crud.add_retry_attempt(
                            failed_message=sibling,
                            now=now,
                            result=f"retry_covered: {failed_message.id}",
                        )
                        sibling.retried = True
                        sibling.retry_claimed_at = None
                        db.add(sibling)
                crud.mark_failed_message_retried(
                    db=db, failed_message=failed_message, now=now, result=result
                )

        if outcome.success:
            log.info(
                event="Retry succeeded",
                failed_message_id=failed_message_id,
                task_id=outcome.task_id,
            )
            return RetryResult(
                failed_message_id=failed_message_id, success=True, message="Retry succeeded"
            )
        log.warning(
            event="Retry failed",
            failed_message_id=failed_message_id,
            task_id=outcome.task_id,
            error=outcome.error,
        )
        return RetryResult(
            failed_message_id=failed_message_id,
            success=False,
            message=f"Retry failed: {outcome.error}",
            error_kind=ErrorKind.TRANSIENT,
        )

    def _retry_metadata(
        self, *, failed_message: "FailedMessage", item: RetryFailed, original_task_id: str | None
    ) -> dict[str, t.Any]:
        return {
            "retry_of_failed_message": failed_message.id,
            "original_task_id": original_task_id,
            "correlation_task_id": item.task_id,
            "retry_whole_batch": item.retry_whole_batch,
            "retry_context": dict(item.context),
            "conversation_id": failed_message.conversation_id,
        }

    def _copy_into(
        self, *, db: "Session", task: "Task", message: "Message", failed_message_id: str
    ) -> None:
        copy = crud.create_message(
            db=db,
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content,
            now=self._clock.now(),
            status=MessageStatus.AGGREGATED,
            metadata={"retry_of": message.id, "failed_message_id": failed_message_id},
            commit=False,
        )
        copy.retry_count = message.retry_count
        crud.attach_message_to_task(db=db, task=task, message=copy)

    def _freeze(self, *, db: "Session", task: "Task") -> ProcessBatch:
        crud.mark_task_as_dispatched(db=db, task=task, now=self._clock.now(), commit=False)
        db.commit()
        members = crud.get_task_messages(db=db, task_pk=task.id)
        return ProcessBatch(
            task_pk=task.id,
            task_id=task.task_id,
            content=task.aggregated_content,
            message_ids=tuple(member.id for member in members),
        )

    def _prepare_single_retry(
        self, *, db: "Session", failed_message: "FailedMessage", item: RetryFailed
    ) -> ProcessBatch:
        message = (
            crud.get_message(db=db, message_id=failed_message.message_id)
            if failed_message.message_id is not None
            else None
        )
        if message is None:
            raise _RetryAbandoned(f"Original message {failed_message.message_id} not found")
        task = crud.create_task(
            db=db,
            now=self._clock.now(),
            task_id=new_batch_id(prefix="retry_single"),
            metadata=self._retry_metadata(
                failed_message=failed_message,
                item=item,
                original_task_id=failed_message.request_task_id,
            ),
            commit=False,
        )
        self._copy_into(db=db, task=task, message=message, failed_message_id=failed_message.id)
        return self._freeze(db=db, task=task)

    def _prepare_batch_retry(
        self, *, db: "Session", failed_message: "FailedMessage", item: RetryFailed
    ) -> ProcessBatch | None:
        if failed_message.request_task_id is None:
            raise _RetryAbandoned("Failed message does not belong to a batch")
        original = crud.get_task(db=db, task_pk=failed_message.request_task_id)
        if original is None:
            raise _RetryAbandoned(f"Task {failed_message.request_task_id} not found")
        if original.status == TaskStatus.RETRYING:
            return None
        if not original.is_retriable:
            raise _RetryAbandoned(
                f"Task {original.task_id} is not retriable ({original.status.value})"
            )

        previous_status = original.status
        if not crud.transition_task_to_retrying(db=db, task_pk=original.id):
            return None
        db.refresh(original)
        # Members whose failure was already retried on its own are left out.
        pending_message_ids = {
            sibling.message_id
            for sibling in crud.get_failed_messages_by_request_task(
                db=db, request_task_pk=original.id, retried=False
            )
        }
        members = [
            member
            for member in crud.get_task_messages(db=db, task_pk=original.id)
            if member.id in pending_message_ids
        ]
        if not members:
            original.status = previous_status
            db.add(original)
            db.commit()
            raise _RetryAbandoned(f"Task {original.task_id} has no messages left to retry")

        task = crud.create_task(
            db=db,
            now=self._clock.now(),
            task_id=new_batch_id(prefix="retry_batch"),
            metadata=self._retry_metadata(
                failed_message=failed_message, item=item, original_task_id=original.id
            ),
            commit=False,
        )
        for member in members:
            self._copy_into(db=db, task=task, message=member, failed_message_id=failed_message.id)
        log.info(
            event="Batch retry prepared",
            original_task_id=original.task_id,
            retry_task_id=task.task_id,
            message_count=len(members),
        )
        return self._freeze(db=db, task=task)

    def _revert_batch(self, *, db: "Session", batch: ProcessBatch, reason: str) -> None:
        task = crud.get_task(db=db, task_pk=batch.task_pk)
        if task is None or task.status != TaskStatus.PENDING:
            return
        crud.mark_task_as_failed(
            db=db, task=task, error_message=reason, now=self._clock.now(), commit=False
        )
        metadata = task.meta or {}
        original_task_id = metadata.get("original_task_id")
        original = (
            crud.get_task(db=db, task_pk=original_task_id)
            if original_task_id and metadata.get("retry_whole_batch")
            else None
        )
        if original is not None and original.status == TaskStatus.RETRYING:
            original.status = TaskStatus.FAILED
            db.add(original)
        db.commit()

    def _abandon(
        self, *, db: "Session", failed_message: "FailedMessage", reason: str
    ) -> RetryResult:
        crud.add_retry_attempt(
            failed_message=failed_message, now=self._clock.now(), result=f"retry_failed: {reason}"
        )
        db.add(failed_message)
        db.commit()
        crud.release_failed_message_claim(db=db, failed_message_id=failed_message.id)
        log.warning(event="Retry abandoned", failed_message_id=failed_message.id, reason=reason)
        return RetryResult(
            failed_message_id=failed_message.id,
            success=False,
            message=f"Retry failed: {reason}",
            error_kind=ErrorKind.FATAL,
        )
