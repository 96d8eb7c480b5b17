import typing as t
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update

from difybatch.batch_utils import aggregate_message_content, new_batch_id
from difybatch.db.models import Conversation, DifySetting, FailedMessage, Message, Task
from difybatch.exceptions import DifyRuntimeError
from difybatch.status import (
    RETRIABLE_TASK_STATUSES,
    ClaimOutcome,
    ConversationStatus,
    MessageRole,
    MessageStatus,
    TaskStatus,
)

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session


def new_id() -> str:
    return str(object=uuid.uuid4())


# -- Conversations -------------------------------------------------------------


def create_conversation(
    db: "Session",
    now: datetime,
    name: str | None = None,
    user_id: str | None = None,
) -> Conversation:
    """Create an active conversation

    Parameters
    ----------
    db : Session
        The database session
    now : datetime
        Creation time, also used as last-active time
    name : str | None
        Optional display name
    user_id : str | None
        Optional owner identifier

    Returns
    -------
    Conversation
        The created conversation
    """
    conversation = Conversation(
        id=new_id(),
        status=ConversationStatus.ACTIVE,
        name=name,
        user_id=user_id,
        last_active=now,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.commit()
    return conversation


def get_conversation(db: "Session", conversation_id: str) -> Conversation | None:
    return db.get(Conversation, conversation_id)


def update_last_active(db: "Session", conversation: Conversation, now: datetime) -> None:
    conversation.last_active = now
    conversation.updated_at = now
    db.add(conversation)
    db.commit()


def set_remote_conversation_id(
    db: "Session", conversation: Conversation, remote_id: str, now: datetime, commit: bool = True
) -> None:
    """Store the identifier the remote service assigned to a conversation

    Parameters
    ----------
    db : Session
        The database session
    conversation : Conversation
        The local conversation
    remote_id : str
        The remote conversation identifier
    now : datetime
        Update time
    commit : bool
        Whether to commit immediately
    """
    conversation.conversation_id = remote_id
    conversation.updated_at = now
    db.add(conversation)
    if commit:
        db.commit()


def archive_conversation(db: "Session", conversation_id: str, now: datetime) -> Conversation | None:
    conversation = get_conversation(db=db, conversation_id=conversation_id)
    if conversation is None:
        return None
    conversation.status = ConversationStatus.ARCHIVED
    conversation.archived_at = now
    conversation.updated_at = now
    db.commit()
    return conversation


# -- Messages ------------------------------------------------------------------


def create_message(
    db: "Session",
    conversation_id: str,
    role: MessageRole,
    content: str,
    now: datetime,
    status: MessageStatus = MessageStatus.PENDING,
    metadata: dict | None = None,
    commit: bool = True,
) -> Message:
    """Create a message in a conversation

    Parameters
    ----------
    db : Session
        The database session
    conversation_id : str
        Local id of the owning conversation
    role : MessageRole
        Author of the message
    content : str
        Message text
    now : datetime
        Creation time
    status : MessageStatus
        Initial status
    metadata : dict | None
        Free-form metadata
    commit : bool
        Whether to commit immediately, otherwise the message is only added to the session

    Returns
    -------
    Message
        The created message
    """
    message = Message(
        id=new_id(),
        conversation_id=conversation_id,
        role=role,
        content=content,
        status=status,
        retry_count=0,
        meta=metadata,
        created_at=now,
    )
    db.add(message)
    if commit:
        db.commit()
    return message


def get_message(db: "Session", message_id: str) -> Message | None:
    return db.get(Message, message_id)


def mark_messages_as_aggregated(
    db: "Session", messages: list[Message], commit: bool = True
) -> None:
    for message in messages:
        message.status = MessageStatus.AGGREGATED
        db.add(message)
    if commit:
        db.commit()


# -- Tasks ---------------------------------------------------------------------


def create_task(
    db: "Session",
    now: datetime,
    task_id: str | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> Task:
    """Open an empty batch

    Parameters
    ----------
    db : Session
        The database session
    now : datetime
        Creation time
    task_id : str | None
        Batch identifier, generated when omitted
    metadata : dict | None
        Free-form metadata, e.g. conversation reference and window start
    commit : bool
        Whether to commit immediately

    Returns
    -------
    Task
        The created task
    """
    task = Task(
        id=new_id(),
        task_id=task_id or new_batch_id(),
        status=TaskStatus.PENDING,
        aggregated_content="",
        message_count=0,
        meta=metadata,
        created_at=now,
    )
    db.add(task)
    if commit:
        db.commit()
    return task


def get_task(db: "Session", task_pk: str) -> Task | None:
    return db.get(Task, task_pk)


def get_task_by_task_id(db: "Session", task_id: str) -> Task | None:
    stmt = select(Task).where(Task.task_id == task_id)
    return db.execute(stmt).scalar_one_or_none()


def find_task(db: "Session", identifier: str) -> Task | None:
    """Find a task by primary key or by batch identifier"""
    return get_task(db=db, task_pk=identifier) or get_task_by_task_id(db=db, task_id=identifier)


def get_task_messages(db: "Session", task_pk: str) -> list[Message]:
    stmt = select(Message).where(Message.task_id == task_pk).order_by(Message.batch_position)
    return list(db.execute(stmt).scalars().all())


def _refresh_task_derived_fields(task: Task, members: list[Message]) -> None:
    task.message_count = len(members)
    task.aggregated_content = aggregate_message_content([member.content for member in members])


def attach_message_to_task(db: "Session", task: Task, message: Message) -> None:
    """Append a message to a batch and recompute the batch's derived fields

    This is the only writer of ``Message.task_id`` and ``Message.batch_position``
    together with :func:`detach_message_from_task`.

    Parameters
    ----------
    db : Session
        The database session
    task : Task
        The open batch
    message : Message
        The message to append

    Raises
    ------
    DifyRuntimeError
        If the batch is already dispatched or the message belongs to another batch.
    """
    if task.dispatched_at is not None or task.status != TaskStatus.PENDING:
        raise DifyRuntimeError(f"Task {task.task_id} is closed and cannot accept messages")
    if message.task_id is not None and message.task_id != task.id:
        raise DifyRuntimeError(f"Message {message.id} already belongs to another batch")
    db.flush()
    members = get_task_messages(db=db, task_pk=task.id)
    if any(member.id == message.id for member in members):
        return
    message.task_id = task.id
    message.batch_position = len(members) + 1
    members.append(message)
    _refresh_task_derived_fields(task=task, members=members)
    db.add_all([task, message])


def detach_message_from_task(db: "Session", task: Task, message: Message) -> None:
    if message.task_id != task.id:
        return
    message.task_id = None
    message.batch_position = None
    db.flush()
    members = get_task_messages(db=db, task_pk=task.id)
    for position, member in enumerate(members, start=1):
        member.batch_position = position
    _refresh_task_derived_fields(task=task, members=members)
    db.add_all([task, message, *members])


def assert_task_consistent(db: "Session", task: Task) -> None:
    """Check the batch invariants

    Parameters
    ----------
    db : Session
        The database session
    task : Task
        The batch to check

    Raises
    ------
    DifyRuntimeError
        If ``message_count``, ``aggregated_content`` or member positions disagree
        with the stored members.
    """
    members = get_task_messages(db=db, task_pk=task.id)
    if task.message_count != len(members):
        raise DifyRuntimeError(
            f"Task {task.task_id} counts {task.message_count} messages, found {len(members)}"
        )
    expected_content = aggregate_message_content([member.content for member in members])
    if task.aggregated_content != expected_content:
        raise DifyRuntimeError(f"Task {task.task_id} aggregated content is stale")
    positions = [member.batch_position for member in members]
    if positions != list(range(1, len(members) + 1)):
        raise DifyRuntimeError(f"Task {task.task_id} has non contiguous positions {positions}")


def mark_task_as_dispatched(db: "Session", task: Task, now: datetime, commit: bool = True) -> None:
    task.dispatched_at = now
    db.add(task)
    if commit:
        db.commit()


def mark_task_as_processing(db: "Session", task: Task, now: datetime) -> None:
    task.status = TaskStatus.PROCESSING
    task.processed_at = now
    db.add(task)
    db.commit()


def mark_task_as_completed(
    db: "Session", task: Task, response: str, now: datetime, commit: bool = True
) -> None:
    task.status = TaskStatus.COMPLETED
    task.completed_at = now
    task.response = response
    db.add(task)
    if commit:
        db.commit()


def mark_task_as_failed(
    db: "Session", task: Task, error_message: str, now: datetime, commit: bool = True
) -> None:
    task.status = TaskStatus.FAILED
    task.completed_at = now
    task.error_message = error_message
    db.add(task)
    if commit:
        db.commit()


def transition_task_to_retrying(db: "Session", task_pk: str) -> bool:
    """Atomically move a failed or timed out task to ``retrying``

    Parameters
    ----------
    db : Session
        The database session
    task_pk : str
        Primary key of the task

    Returns
    -------
    bool
        ``True`` for the single caller that performed the transition.
    """
    stmt = (
        update(Task)
        .where(Task.id == task_pk, Task.status.in_(RETRIABLE_TASK_STATUSES))
        .values(status=TaskStatus.RETRYING)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def get_inflight_tasks(db: "Session") -> list[Task]:
    """Get batches handed to the queue but never picked up by a worker"""
    stmt = (
        select(Task)
        .where(Task.status == TaskStatus.PENDING, Task.dispatched_at.is_not(None))
        .order_by(Task.dispatched_at)
    )
    return list(db.execute(stmt).scalars().all())


def get_tasks(
    db: "Session",
    status: TaskStatus | None = None,
    limit: int | None = 100,
) -> list[Task]:
    stmt = select(Task)
    if status is not None:
        stmt = stmt.where(Task.status == status)
    stmt = stmt.order_by(Task.created_at)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def cleanup_old_tasks(db: "Session", now: datetime, days: int = 30) -> int:
    """Delete completed tasks older than ``days``, detaching their messages first

    Parameters
    ----------
    db : Session
        The database session
    now : datetime
        Reference time
    days : int
        Retention in days

    Returns
    -------
    int
        Number of deleted tasks
    """
    cutoff = now - timedelta(days=days)
    old_task_ids = select(Task.id).where(
        Task.status == TaskStatus.COMPLETED, Task.created_at < cutoff
    )
    db.execute(
        update(Message)
        .where(Message.task_id.in_(old_task_ids))
        .values(task_id=None, batch_position=None)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(
        delete(Task)
        .where(Task.status == TaskStatus.COMPLETED, Task.created_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


# -- Failed messages -----------------------------------------------------------


def create_failed_message(
    db: "Session",
    message: Message,
    error: str,
    now: datetime,
    context: dict[str, t.Any],
    task: Task | None = None,
    task_id: str | None = None,
    commit: bool = True,
) -> FailedMessage:
    """Record the failure of one message

    Parameters
    ----------
    db : Session
        The database session
    message : Message
        The message that failed
    error : str
        Error text
    now : datetime
        Failure time
    context : dict[str, typing.Any]
        Structured failure context (exception class and code, message snapshot..)
    task : Task | None
        The batch the message failed in, ``None`` for single-message paths
    task_id : str | None
        External queue correlation id
    commit : bool
        Whether to commit immediately

    Returns
    -------
    FailedMessage
        The created failure record
    """
    failed_message = FailedMessage(
        id=new_id(),
        message_id=message.id,
        conversation_id=message.conversation_id,
        request_task_id=task.id if task is not None else None,
        error=error,
        attempts=message.retry_count,
        failed_at=now,
        context=context,
        retried=False,
        task_id=task_id,
        retry_history=None,
        created_at=now,
    )
    db.add(failed_message)
    if commit:
        db.commit()
    return failed_message


def get_failed_message(db: "Session", failed_message_id: str) -> FailedMessage | None:
    return db.get(FailedMessage, failed_message_id, populate_existing=True)


def get_unretried_failed_messages(db: "Session", limit: int | None = 100) -> list[FailedMessage]:
    stmt = (
        select(FailedMessage)
        .where(FailedMessage.retried.is_(False))
        .order_by(FailedMessage.failed_at)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_failed_messages_by_task_id(
    db: "Session", task_id: str, retried: bool | None = False
) -> list[FailedMessage]:
    stmt = select(FailedMessage).where(FailedMessage.task_id == task_id)
    if retried is not None:
        stmt = stmt.where(FailedMessage.retried.is_(retried))
    return list(db.execute(stmt.order_by(FailedMessage.failed_at)).scalars().all())


def get_failed_messages_by_request_task(
    db: "Session", request_task_pk: str, retried: bool | None = False
) -> list[FailedMessage]:
    stmt = select(FailedMessage).where(FailedMessage.request_task_id == request_task_pk)
    if retried is not None:
        stmt = stmt.where(FailedMessage.retried.is_(retried))
    return list(db.execute(stmt.order_by(FailedMessage.failed_at)).scalars().all())


def add_retry_attempt(failed_message: FailedMessage, now: datetime, result: str) -> None:
    # JSON columns are not mutation tracked, the list is replaced.
    failed_message.retry_history = [
        *(failed_message.retry_history or []),
        {"timestamp": now.isoformat(), "result": result},
    ]


def claim_failed_message(
    db: "Session", failed_message_id: str, now: datetime, lease_seconds: float
) -> ClaimOutcome:
    """Atomically claim a failure record for one retry

    The claim succeeds only if the record is not retried and no other retry holds
    a live lease on it.

    Parameters
    ----------
    db : Session
        The database session
    failed_message_id : str
        Id of the failure record
    now : datetime
        Claim time
    lease_seconds : float
        Age after which an unfinished claim is considered abandoned

    Returns
    -------
    ClaimOutcome
        Outcome of the conditional update
    """
    cutoff = now - timedelta(seconds=lease_seconds)
    stmt = (
        update(FailedMessage)
        .where(
            FailedMessage.id == failed_message_id,
            FailedMessage.retried.is_(False),
            or_(
                FailedMessage.retry_claimed_at.is_(None),
                FailedMessage.retry_claimed_at < cutoff,
            ),
        )
        .values(retry_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount == 1:
        return ClaimOutcome.CLAIMED

    failed_message = get_failed_message(db=db, failed_message_id=failed_message_id)
    if failed_message is None:
        return ClaimOutcome.NOT_FOUND
    if failed_message.retried:
        return ClaimOutcome.ALREADY_RETRIED
    return ClaimOutcome.IN_PROGRESS


def release_failed_message_claim(db: "Session", failed_message_id: str) -> None:
    stmt = (
        update(FailedMessage)
        .where(FailedMessage.id == failed_message_id, FailedMessage.retried.is_(False))
        .values(retry_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()


def mark_failed_message_retried(
    db: "Session", failed_message: FailedMessage, now: datetime, result: str
) -> None:
    """Record the retry outcome and flip ``retried`` in one transaction"""
    add_retry_attempt(failed_message=failed_message, now=now, result=result)
    failed_message.retried = True
    failed_message.retry_claimed_at = None
    db.add(failed_message)
    db.commit()


def cleanup_old_failed_messages(db: "Session", now: datetime, days: int = 30) -> int:
    """Delete retried failure records older than ``days``; un-retried ones are kept"""
    cutoff = now - timedelta(days=days)
    result = db.execute(
        delete(FailedMessage)
        .where(FailedMessage.retried.is_(True), FailedMessage.failed_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


# -- Settings ------------------------------------------------------------------


def create_setting(
    db: "Session",
    name: str,
    api_key: str,
    base_url: str,
    now: datetime,
    batch_threshold: int = 5,
    timeout: int = 30,
    retry_attempts: int = 3,
    max_retries: int = 3,
    batch_size: int = 10,
    batch_timeout: int = 300,
    metadata: dict | None = None,
) -> DifySetting:
    """Create an inactive remote-service setting

    Parameters
    ----------
    db : Session
        The database session
    name : str
        Display name
    api_key : str
        Dify application API key
    base_url : str
        Dify API base URL, e.g. https://api.dify.ai/v1
    now : datetime
        Creation time
    batch_threshold : int
        Message count closing a batch
    timeout : int
        Remote call timeout in seconds
    retry_attempts : int
        Informational retry budget
    max_retries : int
        Informational retry budget
    batch_size : int
        Informational batch size
    batch_timeout : int
        Informational batch timeout in seconds
    metadata : dict | None
        Free-form metadata

    Returns
    -------
    DifySetting
        The created setting
    """
    setting = DifySetting(
        id=new_id(),
        name=name,
        api_key=api_key,
        base_url=base_url,
        batch_threshold=batch_threshold,
        timeout=timeout,
        retry_attempts=retry_attempts,
        max_retries=max_retries,
        batch_size=batch_size,
        batch_timeout=batch_timeout,
        meta=metadata,
        is_active=False,
        created_at=now,
        updated_at=now,
    )
    db.add(setting)
    db.commit()
    return setting


def get_active_setting(db: "Session") -> DifySetting | None:
    stmt = select(DifySetting).where(DifySetting.is_active.is_(True)).limit(1)
    return db.execute(stmt).scalar_one_or_none()


def get_settings(db: "Session") -> list[DifySetting]:
    return list(db.execute(select(DifySetting).order_by(DifySetting.created_at)).scalars().all())


def activate_setting(db: "Session", setting_id: str, now: datetime) -> DifySetting | None:
    """Deactivate every active setting then activate one, in one transaction

    Parameters
    ----------
    db : Session
        The database session
    setting_id : str
        Id of the setting to activate
    now : datetime
        Update time

    Returns
    -------
    DifySetting | None
        The activated setting, ``None`` if it does not exist
    """
    if db.get(DifySetting, setting_id) is None:
        return None
    db.execute(
        update(DifySetting)
        .where(DifySetting.is_active.is_(True))
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    db.execute(
        update(DifySetting)
        .where(DifySetting.id == setting_id)
        .values(is_active=True, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    db.commit()
    return db.get(DifySetting, setting_id, populate_existing=True)
