"""
Run one remote call per dispatched batch and record the outcome.
"""

from __future__ import annotations

import asyncio
import typing as t

import structlog

from difybatch.batch_utils import truncate
from difybatch.clock import Clock, SystemClock
from difybatch.db import crud
from difybatch.db.models import ERROR_MESSAGE_MAX_LENGTH
from difybatch.db.session import get_db
from difybatch.events import ErrorEvent, EventDispatcher, ReplyEvent
from difybatch.exceptions import DifyRuntimeError, SettingNotFoundError, exception_code
from difybatch.models import BatchOutcome, ChatResponse, ProcessBatch
from difybatch.status import MessageRole, MessageStatus, TaskStatus
from difybatch.utils.locks import KeyedLock
from difybatch.utils.logging import logging_context

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from difybatch.client import DifyClient
    from difybatch.db.models import Conversation, Message, Task

log = structlog.get_logger(__name__)


def error_text(*, error: BaseException) -> str:
    return str(object=error) or type(error).__name__


class BatchWorker:
    """
    Reduce one dispatched batch to a success or a failure.

    Remote failures are recorded, never raised. A missing setting, a missing
    batch and errors while recording an outcome propagate. Batches of one
    conversation are processed one at a time, in the order they arrive.

    Parameters
    ----------
    client : DifyClient
        Remote-service client.
    session_factory : sessionmaker[Session] | None, optional
        Session factory, the default database when ``None``.
    events : EventDispatcher | None, optional
        Receives ``ReplyEvent`` and ``ErrorEvent`` notifications.
    clock : Clock | None, optional
        Time source.
    user : str | None, optional
        End-user identifier sent to the remote service.
    """

    def __init__(
        self,
        *,
        client: "DifyClient",
        session_factory: "sessionmaker[Session] | None" = None,
        events: EventDispatcher | None = None,
        clock: Clock | None = None,
        user: str | None = None,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._events = events or EventDispatcher()
        self._clock = clock or SystemClock()
        self._user = user
        self._conversation_locks = KeyedLock()

    def _conversation_key(self, *, item: ProcessBatch) -> str:
        if not item.message_ids:
            return item.task_pk
        with get_db(self._session_factory) as db:
            first = crud.get_message(db=db, message_id=item.message_ids[0])
        return first.conversation_id if first is not None else item.task_pk

    async def process(self, item: ProcessBatch) -> BatchOutcome:
        """
        Send the aggregated content of a batch and record the result.

        Parameters
        ----------
        item : ProcessBatch
            The closed batch.

        Returns
        -------
        BatchOutcome
            Reply on success, error text and failure record ids on failure.

        Raises
        ------
        SettingNotFoundError
            If no setting is active.
        DifyRuntimeError
            If the batch does not exist or has no members.
        """
        with logging_context(task_id=item.task_id):
            async with self._conversation_locks.hold(self._conversation_key(item=item)):
                return await self._process(item=item)

    async def _process(self, *, item: ProcessBatch) -> BatchOutcome:
        with get_db(self._session_factory) as db:
            setting = crud.get_active_setting(db=db)
            if setting is None:
                raise SettingNotFoundError()

            task = crud.get_task(db=db, task_pk=item.task_pk)
            if task is None:
                raise DifyRuntimeError(f"Task {item.task_id} not found")
            if task.status != TaskStatus.PENDING:
                log.warning(event="Batch already processed, skipping", status=task.status.value)
                return BatchOutcome(
                    task_id=task.task_id,
                    success=task.status == TaskStatus.COMPLETED,
                    reply=task.response,
                    error=task.error_message,
                )
            members = crud.get_task_messages(db=db, task_pk=task.id)
            if not members:
                raise DifyRuntimeError(f"Task {task.task_id} has no messages")
            conversation = crud.get_conversation(
                db=db, conversation_id=members[0].conversation_id
            )

            crud.mark_task_as_processing(db=db, task=task, now=self._clock.now())
            log.info(event="Processing batch", message_count=len(members))

            try:
                response = await self._client.send_message(
                    setting=setting,
                    content=item.content,
                    conversation_remote_id=(
                        conversation.conversation_id if conversation is not None else None
                    ),
                    user=self._user,
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                outcome = self._record_failure(
                    db=db, task=task, members=members, error=error
                )
                await self._events.dispatch(
                    ErrorEvent(
                        conversation_id=members[-1].conversation_id,
                        message_id=members[-1].id,
                        error=outcome.error,
                        exception_class=type(error).__name__,
                    )
                )
                return outcome

            outcome = self._record_success(
                db=db,
                task=task,
                members=members,
                conversation=conversation,
                response=response,
            )
            await self._events.dispatch(
                ReplyEvent(
                    conversation_id=members[-1].conversation_id,
                    remote_conversation_id=(
                        conversation.conversation_id if conversation is not None else None
                    ),
                    content=response.answer,
                    message_id=members[-1].id,
                    is_final=True,
                )
            )
            return outcome

    def _record_success(
        self,
        *,
        db: "Session",
        task: "Task",
        members: list["Message"],
        conversation: "Conversation | None",
        response: ChatResponse,
    ) -> BatchOutcome:
        now = self._clock.now()
        if conversation is not None:
            db.refresh(conversation)
        if (
            conversation is not None
            and response.conversation_id
            and conversation.conversation_id is None
        ):
            crud.set_remote_conversation_id(
                db=db,
                conversation=conversation,
                remote_id=response.conversation_id,
                now=now,
                commit=False,
            )

        for member in members:
            member.status = MessageStatus.SENT
            member.sent_at = now
            db.add(member)

        metadata: dict[str, t.Any] = {
            "request_task_id": task.id,
            "task_id": task.task_id,
            "original_messages": [member.id for member in members],
        }
        if response.message_id:
            metadata["remote_message_id"] = response.message_id
        reply = crud.create_message(
            db=db,
            conversation_id=members[-1].conversation_id,
            role=MessageRole.ASSISTANT,
            content=response.answer,
            now=now,
            status=MessageStatus.RECEIVED,
            metadata=metadata,
            commit=False,
        )
        reply.received_at = now
        crud.mark_task_as_completed(
            db=db, task=task, response=response.answer, now=now, commit=False
        )
        db.commit()
        log.info(event="Batch completed", message_count=len(members))
        return BatchOutcome(
            task_id=task.task_id,
            success=True,
            reply=response.answer,
            assistant_message_id=reply.id,
        )

    def _record_failure(
        self,
        *,
        db: "Session",
        task: "Task",
        members: list["Message"],
        error: Exception,
    ) -> BatchOutcome:
        now = self._clock.now()
        text = error_text(error=error)
        failed_message_ids = []
        for member in members:
            member.status = MessageStatus.FAILED
            member.retry_count = (member.retry_count or 0) + 1
            member.error_message = truncate(text, ERROR_MESSAGE_MAX_LENGTH)
            db.add(member)
            failed_message = crud.create_failed_message(
                db=db,
                message=member,
                error=text,
                now=now,
                context={
                    "exception_class": type(error).__name__,
                    "exception_code": exception_code(error=error),
                    "original_message_content": member.content,
                    "original_message_role": member.role.value,
                    "request_task_id": task.id,
                    "task_id": task.task_id,
                    "batch_processing": True,
                },
                task=task,
                task_id=task.task_id,
                commit=False,
            )
            failed_message_ids.append(failed_message.id)
        crud.mark_task_as_failed(db=db, task=task, error_message=text, now=now, commit=False)
        db.commit()
        log.warning(
            event="Batch failed",
            message_count=len(members),
            exception_class=type(error).__name__,
            error=text,
        )
        return BatchOutcome(
            task_id=task.task_id,
            success=False,
            error=text,
            failed_message_ids=failed_message_ids,
        )
