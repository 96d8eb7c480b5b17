"""
High-level entry point wiring the aggregation and delivery pipeline together.
"""

from __future__ import annotations

import asyncio
import typing as t

import structlog

from difybatch.aggregator import Aggregator
from difybatch.batch_utils import truncate
from difybatch.client import DifyClient
from difybatch.clock import Clock, SystemClock
from difybatch.config import RuntimeConfig
from difybatch.db import crud
from difybatch.db.models import ERROR_MESSAGE_MAX_LENGTH
from difybatch.db.session import create_session_factory, get_db
from difybatch.events import ErrorEvent, EventDispatcher, ReplyEvent
from difybatch.exceptions import DifyRuntimeError, SettingNotFoundError, exception_code
from difybatch.models import ProcessBatch, RetryFailed, WorkItem
from difybatch.queue import DispatchQueue
from difybatch.retry import RetryCoordinator
from difybatch.status import ConversationStatus, MessageRole, MessageStatus
from difybatch.worker import BatchWorker, error_text

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from difybatch.db.models import Conversation, Message

log = structlog.get_logger(__name__)


class ChatService:
    """
    Batch user messages for the Dify chat API and deliver them reliably.

    Parameters
    ----------
    config : RuntimeConfig | None, optional
        Runtime configuration, defaults when ``None``.
    session_factory : sessionmaker[Session] | None, optional
        Session factory, built from ``config.database_url`` when ``None``.
    clock : Clock | None, optional
        Time source shared by every component.
    client : DifyClient | None, optional
        Remote-service client.
    events : EventDispatcher | None, optional
        Notification dispatcher, subscribe to it for replies and errors.

    Examples
    --------
    >>> async with ChatService() as service:
    ...     await service.push("hello")
    ...     await service.flush_batch()
    """

    def __init__(
        self,
        *,
        config: RuntimeConfig | None = None,
        session_factory: "sessionmaker[Session] | None" = None,
        clock: Clock | None = None,
        client: DifyClient | None = None,
        events: EventDispatcher | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.session_factory = session_factory or create_session_factory(
            url=self.config.database_url
        )
        self.clock = clock or SystemClock()
        self.events = events or EventDispatcher()
        self.client = client or DifyClient(user=self.config.user)
        self.queue = DispatchQueue(
            maxsize=self.config.queue_maxsize,
            concurrency=self.config.worker_concurrency,
        )
        self.worker = BatchWorker(
            client=self.client,
            session_factory=self.session_factory,
            events=self.events,
            clock=self.clock,
            user=self.config.user,
        )
        self.aggregator = Aggregator(
            queue=self.queue,
            session_factory=self.session_factory,
            clock=self.clock,
            aggregation_timeout=self.config.aggregation_timeout,
            sweep_interval_seconds=self.config.sweep_interval_seconds,
        )
        self.retries = RetryCoordinator(
            queue=self.queue,
            worker=self.worker,
            session_factory=self.session_factory,
            clock=self.clock,
            lease_seconds=self.config.retry_lease_seconds,
        )

    async def handle(self, item: WorkItem) -> None:
        if isinstance(item, ProcessBatch):
            await self.worker.process(item)
        elif isinstance(item, RetryFailed):
            await self.retries.execute(item)
        else:
            raise DifyRuntimeError(f"Unknown work item: {item!r}")

    async def start(self, *, redispatch: bool = True) -> None:
        """
        Start the queue workers and, when configured, the stale-batch sweeper.

        Parameters
        ----------
        redispatch : bool, optional
            Enqueue again the batches left in flight by a previous run.
        """
        if redispatch:
            self.aggregator.redispatch_inflight()
        self.queue.start(self.handle)
        self.aggregator.start_sweeper()

    async def close(self, *, drain: bool = True) -> None:
        """
        Stop the sweeper and the queue workers.

        Parameters
        ----------
        drain : bool, optional
            Wait for queued items to be handled first.
        """
        await self.aggregator.stop_sweeper()
        if drain and self.queue.running:
            await self.queue.join()
        await self.queue.close()

    async def __aenter__(self) -> "ChatService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close(drain=exc_type is None)

    async def push(self, content: str, conversation_id: str | None = None) -> "Message":
        return await self.aggregator.add_message(content=content, conversation_id=conversation_id)

    async def flush_batch(self, conversation_id: str | None = None) -> list[str]:
        return await self.aggregator.force_process(conversation_id=conversation_id)

    def current_conversation(self) -> "Conversation | None":
        return self.aggregator.current_conversation()

    def archive_conversation(self, conversation_id: str) -> "Conversation | None":
        with get_db(self.session_factory) as db:
            return crud.archive_conversation(
                db=db, conversation_id=conversation_id, now=self.clock.now()
            )

    def cleanup(self, *, days: int = 30) -> tuple[int, int]:
        """
        Purge completed batches and retried failure records older than ``days``.

        Returns
        -------
        tuple[int, int]
            Deleted batches and deleted failure records.
        """
        now = self.clock.now()
        with get_db(self.session_factory) as db:
            tasks = crud.cleanup_old_tasks(db=db, now=now, days=days)
            failed_messages = crud.cleanup_old_failed_messages(db=db, now=now, days=days)
        log.info(event="Cleanup done", tasks=tasks, failed_messages=failed_messages)
        return tasks, failed_messages

    async def push_stream(
        self, content: str, conversation_id: str | None = None
    ) -> t.AsyncIterator[str]:
        """
        Send one message outside batching and stream the reply.

        Each fragment is yielded and announced with a non-final ``ReplyEvent``;
        the complete reply is stored and announced with a final one. A failure
        is recorded as a single-message ``FailedMessage``, announced with an
        ``ErrorEvent`` and re-raised.

        Parameters
        ----------
        content : str
            Message text.
        conversation_id : str | None, optional
            Local conversation id, the current conversation when ``None``.

        Yields
        ------
        str
            Reply fragments.

        Raises
        ------
        SettingNotFoundError
            If no setting is active.
        """
        conversation_id = await self.aggregator.ensure_conversation(conversation_id)
        with get_db(self.session_factory) as db:
            setting = crud.get_active_setting(db=db)
            if setting is None:
                raise SettingNotFoundError()
            conversation = crud.get_conversation(db=db, conversation_id=conversation_id)
            if conversation is None:
                raise DifyRuntimeError(f"Conversation {conversation_id} not found")
            if conversation.status == ConversationStatus.ARCHIVED:
                raise DifyRuntimeError(f"Conversation {conversation_id} is archived")
            now = self.clock.now()
            crud.update_last_active(db=db, conversation=conversation, now=now)
            message = crud.create_message(
                db=db,
                conversation_id=conversation_id,
                role=MessageRole.USER,
                content=content,
                now=now,
                status=MessageStatus.SENT,
                metadata={"request_type": "stream"},
                commit=False,
            )
            message.sent_at = now
            db.commit()

        remote_conversation_id = conversation.conversation_id
        fragments: list[str] = []
        try:
            async for fragment in self.client.stream_message(
                setting=setting,
                content=content,
                conversation_remote_id=remote_conversation_id,
                user=self.config.user,
            ):
                fragments.append(fragment)
                await self.events.dispatch(
                    ReplyEvent(
                        conversation_id=conversation_id,
                        remote_conversation_id=remote_conversation_id,
                        content=fragment,
                        message_id=message.id,
                        is_final=False,
                    )
                )
                yield fragment
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._record_stream_failure(message_id=message.id, error=error)
            await self.events.dispatch(
                ErrorEvent(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    error=error_text(error=error),
                    exception_class=type(error).__name__,
                )
            )
            raise

        answer = "".join(fragments)
        with get_db(self.session_factory) as db:
            now = self.clock.now()
            reply = crud.create_message(
                db=db,
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT,
                content=answer,
                now=now,
                status=MessageStatus.RECEIVED,
                metadata={"request_type": "stream", "original_messages": [message.id]},
                commit=False,
            )
            reply.received_at = now
            db.commit()
        await self.events.dispatch(
            ReplyEvent(
                conversation_id=conversation_id,
                remote_conversation_id=remote_conversation_id,
                content=answer,
                message_id=message.id,
                is_final=True,
            )
        )

    def _record_stream_failure(self, *, message_id: str, error: Exception) -> None:
        text = error_text(error=error)
        with get_db(self.session_factory) as db:
            message = crud.get_message(db=db, message_id=message_id)
            message.status = MessageStatus.FAILED
            message.retry_count = (message.retry_count or 0) + 1
            message.error_message = truncate(text, ERROR_MESSAGE_MAX_LENGTH)
            db.add(message)
            crud.create_failed_message(
                db=db,
                message=message,
                error=text,
                now=self.clock.now(),
                context={
                    "exception_class": type(error).__name__,
                    "exception_code": exception_code(error=error),
                    "original_message_content": message.content,
                    "original_message_role": message.role.value,
                    "request_type": "stream",
                },
                commit=False,
            )
            db.commit()
        log.warning(event="Streamed message failed", message_id=message_id, error=text)

    async def stop_stream(self, remote_task_id: str) -> bool:
        with get_db(self.session_factory) as db:
            setting = crud.get_active_setting(db=db)
        if setting is None:
            raise SettingNotFoundError()
        return await self.client.stop_message(setting=setting, remote_task_id=remote_task_id)
