"""
Buffer user messages into batches closed by message count or elapsed time.
"""

from __future__ import annotations

import asyncio
import typing as t
from dataclasses import dataclass
from datetime import datetime

import structlog

from difybatch.clock import Clock, SystemClock
from difybatch.db import crud
from difybatch.db.session import get_db
from difybatch.exceptions import DifyRuntimeError
from difybatch.models import ProcessBatch
from difybatch.status import ConversationStatus, MessageRole
from difybatch.utils.locks import KeyedLock

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from difybatch.db.models import Conversation, Message, Task
    from difybatch.queue import DispatchQueue

log = structlog.get_logger(__name__)


@dataclass
class AggregatorState:
    """
    Batching state of one conversation.

    Parameters
    ----------
    conversation_id : str
        Local conversation id.
    open_task_id : str | None
        Primary key of the open batch, ``None`` when no batch is open.
    window_start : datetime | None
        Time at which the open batch was opened.
    """

    conversation_id: str
    open_task_id: str | None = None
    window_start: datetime | None = None


class Aggregator:
    """
    Accumulate messages per conversation and hand closed batches to the queue.

    A batch closes when it holds ``batch_threshold`` messages (read from the
    active ``DifySetting`` at check time) or when ``aggregation_timeout``
    seconds have passed since it was opened. Both checks run after every
    ``add_message``; ``force_process`` closes a batch unconditionally. Without
    an active setting no check fires and messages are buffered.

    Parameters
    ----------
    queue : DispatchQueue
        Queue receiving ``ProcessBatch`` items.
    session_factory : sessionmaker[Session] | None, optional
        Session factory, the default database when ``None``.
    clock : Clock | None, optional
        Time source.
    aggregation_timeout : float, optional
        Maximum age of an open batch, in seconds.
    sweep_interval_seconds : float | None, optional
        Period of the stale-batch sweeper started by ``start_sweeper``;
        ``None`` disables it.
    """

    def __init__(
        self,
        *,
        queue: "DispatchQueue",
        session_factory: "sessionmaker[Session] | None" = None,
        clock: Clock | None = None,
        aggregation_timeout: float = 30.0,
        sweep_interval_seconds: float | None = None,
    ) -> None:
        self._queue = queue
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._aggregation_timeout = aggregation_timeout
        self._sweep_interval_seconds = sweep_interval_seconds

        # Only conversations with an open batch have a state.
        self._states: dict[str, AggregatorState] = {}
        self._locks = KeyedLock()
        self._current_conversation_id: str | None = None
        self._conversation_lock = asyncio.Lock()
        self._sweeper_task: asyncio.Task[None] | None = None

    def _state_for(self, conversation_id: str) -> AggregatorState:
        return self._states.setdefault(
            conversation_id, AggregatorState(conversation_id=conversation_id)
        )

    async def ensure_conversation(self, conversation_id: str | None = None) -> str:
        """
        Return ``conversation_id``, or the current conversation.

        The current conversation is created on first use, and replaced by a
        new one once it is no longer active.
        """
        if conversation_id is not None:
            return conversation_id
        async with self._conversation_lock:
            with get_db(self._session_factory) as db:
                current = (
                    crud.get_conversation(db=db, conversation_id=self._current_conversation_id)
                    if self._current_conversation_id is not None
                    else None
                )
                if current is None or current.status != ConversationStatus.ACTIVE:
                    current = crud.create_conversation(db=db, now=self._clock.now())
                    if self._current_conversation_id is not None:
                        log.info(
                            event="Current conversation replaced",
                            previous_conversation_id=self._current_conversation_id,
                        )
                    self._current_conversation_id = current.id
                    log.info(event="Conversation created", conversation_id=current.id)
            return self._current_conversation_id

    def _open_task(self, *, db: "Session", state: AggregatorState, now: datetime) -> "Task":
        if state.open_task_id is not None:
            task = crud.get_task(db=db, task_pk=state.open_task_id)
            if task is not None and task.dispatched_at is None:
                return task
        task = crud.create_task(
            db=db,
            now=now,
            metadata={
                "conversation_id": state.conversation_id,
                "window_start": now.isoformat(),
            },
            commit=False,
        )
        state.open_task_id = task.id
        state.window_start = now
        log.debug(event="Batch opened", task_id=task.task_id, conversation_id=state.conversation_id)
        return task

    def _should_close(
        self, *, db: "Session", state: AggregatorState, task: "Task", now: datetime
    ) -> bool:
        setting = crud.get_active_setting(db=db)
        if setting is None:
            return False
        if task.message_count >= setting.batch_threshold:
            return True
        if state.window_start is None:
            return False
        return (now - state.window_start).total_seconds() >= self._aggregation_timeout

    def _dispatch(
        self, *, db: "Session", state: AggregatorState, task: "Task", now: datetime
    ) -> bool:
        members = crud.get_task_messages(db=db, task_pk=task.id)
        if not members:
            return False
        item = ProcessBatch(
            task_pk=task.id,
            task_id=task.task_id,
            content=task.aggregated_content,
            message_ids=tuple(member.id for member in members),
        )
        # Raises DispatchError; the batch then stays open.
        self._queue.enqueue(item)

        crud.mark_messages_as_aggregated(db=db, messages=members, commit=False)
        crud.mark_task_as_dispatched(db=db, task=task, now=now, commit=False)
        db.commit()
        self._states.pop(state.conversation_id, None)
        log.info(
            event="Batch dispatched",
            task_id=task.task_id,
            conversation_id=state.conversation_id,
            message_count=len(members),
        )
        return True

    async def add_message(self, content: str, conversation_id: str | None = None) -> "Message":
        """
        Store a user message and append it to the open batch of its conversation.

        Parameters
        ----------
        content : str
            Message text.
        conversation_id : str | None, optional
            Local conversation id, the aggregator's current conversation when
            ``None``.

        Returns
        -------
        Message
            The stored message.

        Raises
        ------
        DifyRuntimeError
            If ``conversation_id`` does not exist or is archived.
        DispatchError
            If the batch closed but could not be enqueued. The message is
            stored and stays in the open batch.
        """
        conversation_id = await self.ensure_conversation(conversation_id)
        async with self._locks.hold(conversation_id):
            with get_db(self._session_factory) as db:
                conversation = crud.get_conversation(db=db, conversation_id=conversation_id)
                if conversation is None:
                    raise DifyRuntimeError(f"Conversation {conversation_id} not found")
                if conversation.status == ConversationStatus.ARCHIVED:
                    raise DifyRuntimeError(f"Conversation {conversation_id} is archived")
                now = self._clock.now()
                crud.update_last_active(db=db, conversation=conversation, now=now)
                message = crud.create_message(
                    db=db,
                    conversation_id=conversation_id,
                    role=MessageRole.USER,
                    content=content,
                    now=now,
                    metadata={"aggregated_at": now.isoformat()},
                )

                state = self._state_for(conversation_id)
                task = self._open_task(db=db, state=state, now=now)
                crud.attach_message_to_task(db=db, task=task, message=message)
                db.commit()
                log.debug(
                    event="Message added to batch",
                    message_id=message.id,
                    task_id=task.task_id,
                    message_count=task.message_count,
                )

                now = self._clock.now()
                if self._should_close(db=db, state=state, task=task, now=now):
                    self._dispatch(db=db, state=state, task=task, now=now)
        return message

    async def force_process(self, conversation_id: str | None = None) -> list[str]:
        """
        Close and dispatch open batches regardless of size and age.

        Parameters
        ----------
        conversation_id : str | None, optional
            Conversation to flush, every conversation when ``None``.

        Returns
        -------
        list[str]
            Batch identifiers that were dispatched. Empty or already dispatched
            batches are skipped.
        """
        if conversation_id is not None:
            conversation_ids = [conversation_id]
        else:
            conversation_ids = list(self._states)

        dispatched: list[str] = []
        for current_id in conversation_ids:
            async with self._locks.hold(current_id):
                state = self._states.get(current_id)
                if state is None or state.open_task_id is None:
                    continue
                with get_db(self._session_factory) as db:
                    task = crud.get_task(db=db, task_pk=state.open_task_id)
                    if task is None or task.dispatched_at is not None or task.message_count == 0:
                        continue
                    if self._dispatch(db=db, state=state, task=task, now=self._clock.now()):
                        dispatched.append(task.task_id)
        return dispatched

    async def sweep(self) -> list[str]:
        """Force-process every open batch older than the aggregation timeout."""
        now = self._clock.now()
        with get_db(self._session_factory) as db:
            if crud.get_active_setting(db=db) is None:
                return []
        stale = [
            state.conversation_id
            for state in list(self._states.values())
            if state.open_task_id is not None
            and state.window_start is not None
            and (now - state.window_start).total_seconds() >= self._aggregation_timeout
        ]
        dispatched: list[str] = []
        for conversation_id in stale:
            dispatched.extend(await self.force_process(conversation_id=conversation_id))
        return dispatched

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                dispatched = await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log.error(event="Batch sweep failed", error=str(object=error), exc_info=True)
                continue
            if dispatched:
                log.info(event="Stale batches swept", task_ids=dispatched)

    def start_sweeper(self) -> asyncio.Task[None] | None:
        """
        Start the periodic stale-batch sweeper.

        Returns
        -------
        asyncio.Task[None] | None
            The sweeper task, ``None`` when no sweep interval is configured.
        """
        if self._sweep_interval_seconds is None:
            return None
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self._run_sweeper(), name="batch_sweeper")
        return self._sweeper_task

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    def redispatch_inflight(self) -> int:
        """
        Re-enqueue batches handed to the queue but never picked up by a worker.

        Call once at startup, before the queue workers start.

        Returns
        -------
        int
            Number of batches enqueued again.
        """
        count = 0
        with get_db(self._session_factory) as db:
            for task in crud.get_inflight_tasks(db=db):
                members = crud.get_task_messages(db=db, task_pk=task.id)
                if not members:
                    continue
                self._queue.enqueue(
                    ProcessBatch(
                        task_pk=task.id,
                        task_id=task.task_id,
                        content=task.aggregated_content,
                        message_ids=tuple(member.id for member in members),
                    )
                )
                count += 1
        if count:
            log.warning(event="In-flight batches dispatched again", count=count)
        return count

    def current_conversation(self) -> "Conversation | None":
        if self._current_conversation_id is None:
            return None
        with get_db(self._session_factory) as db:
            return crud.get_conversation(db=db, conversation_id=self._current_conversation_id)

    def open_task(self, conversation_id: str | None = None) -> "Task | None":
        conversation_id = conversation_id or self._current_conversation_id
        state = self._states.get(conversation_id) if conversation_id else None
        if state is None or state.open_task_id is None:
            return None
        with get_db(self._session_factory) as db:
            return crud.get_task(db=db, task_pk=state.open_task_id)

    def pending_count(self, conversation_id: str | None = None) -> int:
        task = self.open_task(conversation_id=conversation_id)
        return task.message_count if task is not None else 0

    def seconds_until_close(self, conversation_id: str | None = None) -> float | None:
        """
        Seconds left before the open batch reaches the aggregation timeout.

        Returns ``None`` when the conversation has no open batch.
        """
        conversation_id = conversation_id or self._current_conversation_id
        state = self._states.get(conversation_id) if conversation_id else None
        if state is None or state.open_task_id is None or state.window_start is None:
            return None
        elapsed = (self._clock.now() - state.window_start).total_seconds()
        return max(0.0, self._aggregation_timeout - elapsed)

    def reset(self) -> None:
        """Forget every batching state and the current conversation. Stored rows are kept."""
        self._states.clear()
        self._current_conversation_id = None
