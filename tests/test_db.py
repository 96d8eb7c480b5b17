from datetime import timedelta

import pytest

from difybatch.db import crud
from difybatch.db.session import get_db
from difybatch.exceptions import DifyRuntimeError
from difybatch.status import ClaimOutcome, MessageRole, TaskStatus


@pytest.fixture
def conversation(db, clock):
    return crud.create_conversation(db=db, now=clock.now(), name="test conversation")


def _add_messages(db, clock, conversation, task, contents):
    messages = []
    for content in contents:
        message = crud.create_message(
            db=db,
            conversation_id=conversation.id,
            role=MessageRole.USER,
            content=content,
            now=clock.now(),
        )
        crud.attach_message_to_task(db=db, task=task, message=message)
        db.commit()
        messages.append(message)
    return messages


def _failed_batch(db, clock, conversation, contents=("a", "b")):
    task = crud.create_task(db=db, now=clock.now())
    messages = _add_messages(db, clock, conversation, task, contents)
    failed_messages = [
        crud.create_failed_message(
            db=db,
            message=message,
            error="boom",
            now=clock.now(),
            context={"batch_processing": True},
            task=task,
            task_id=task.task_id,
        )
        for message in messages
    ]
    crud.mark_task_as_failed(db=db, task=task, error_message="boom", now=clock.now())
    return task, failed_messages


def test_attach_recomputes_derived_fields(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    messages = _add_messages(db, clock, conversation, task, ["a", "b", "c"])

    assert task.message_count == 3
    assert task.aggregated_content == "消息1：\na\n\n消息2：\nb\n\n消息3：\nc"
    assert [message.batch_position for message in messages] == [1, 2, 3]
    assert all(message.task_id == task.id for message in messages)
    crud.assert_task_consistent(db=db, task=task)


def test_single_member_task_content_is_verbatim(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    _add_messages(db, clock, conversation, task, ["only one"])
    assert task.aggregated_content == "only one"


def test_detach_renumbers_members(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    first, second, third = _add_messages(db, clock, conversation, task, ["a", "b", "c"])

    crud.detach_message_from_task(db=db, task=task, message=second)
    db.commit()

    assert second.task_id is None
    assert second.batch_position is None
    assert task.message_count == 2
    assert [first.batch_position, third.batch_position] == [1, 2]
    assert task.aggregated_content == "消息1：\na\n\n消息2：\nc"
    crud.assert_task_consistent(db=db, task=task)


def test_dispatched_task_rejects_messages(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    _add_messages(db, clock, conversation, task, ["a"])
    crud.mark_task_as_dispatched(db=db, task=task, now=clock.now())

    late = crud.create_message(
        db=db,
        conversation_id=conversation.id,
        role=MessageRole.USER,
        content="late",
        now=clock.now(),
    )
    with pytest.raises(DifyRuntimeError):
        crud.attach_message_to_task(db=db, task=task, message=late)


def test_message_belongs_to_one_batch(db, clock, conversation):
    first_task = crud.create_task(db=db, now=clock.now())
    second_task = crud.create_task(db=db, now=clock.now())
    (message,) = _add_messages(db, clock, conversation, first_task, ["a"])

    with pytest.raises(DifyRuntimeError):
        crud.attach_message_to_task(db=db, task=second_task, message=message)


def test_consistency_check_detects_stale_count(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    _add_messages(db, clock, conversation, task, ["a", "b"])
    task.message_count = 5
    with pytest.raises(DifyRuntimeError):
        crud.assert_task_consistent(db=db, task=task)


def test_claim_is_exclusive_until_lease_expires(db, clock, conversation):
    _, (failed_message, _) = _failed_batch(db, clock, conversation)

    first = crud.claim_failed_message(
        db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
    )
    second = crud.claim_failed_message(
        db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
    )
    clock.advance(seconds=61)
    after_expiry = crud.claim_failed_message(
        db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
    )

    assert first == ClaimOutcome.CLAIMED
    assert second == ClaimOutcome.IN_PROGRESS
    assert after_expiry == ClaimOutcome.CLAIMED


def test_claim_after_retried_and_unknown(db, clock, conversation):
    _, (failed_message, _) = _failed_batch(db, clock, conversation)
    crud.mark_failed_message_retried(
        db=db, failed_message=failed_message, now=clock.now(), result="retry_success"
    )

    assert (
        crud.claim_failed_message(
            db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
        )
        == ClaimOutcome.ALREADY_RETRIED
    )
    assert (
        crud.claim_failed_message(
            db=db, failed_message_id="missing", now=clock.now(), lease_seconds=60
        )
        == ClaimOutcome.NOT_FOUND
    )
    refreshed = crud.get_failed_message(db=db, failed_message_id=failed_message.id)
    assert refreshed.retried is True
    assert refreshed.retry_claimed_at is None
    assert refreshed.retry_history[-1]["result"] == "retry_success"


def test_release_claim_makes_record_claimable(db, clock, conversation):
    _, (failed_message, _) = _failed_batch(db, clock, conversation)
    crud.claim_failed_message(
        db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
    )
    crud.release_failed_message_claim(db=db, failed_message_id=failed_message.id)

    assert (
        crud.claim_failed_message(
            db=db, failed_message_id=failed_message.id, now=clock.now(), lease_seconds=60
        )
        == ClaimOutcome.CLAIMED
    )


def test_transition_to_retrying_happens_once(db, clock, conversation):
    task, _ = _failed_batch(db, clock, conversation)

    assert crud.transition_task_to_retrying(db=db, task_pk=task.id) is True
    assert crud.transition_task_to_retrying(db=db, task_pk=task.id) is False
    db.refresh(task)
    assert task.status == TaskStatus.RETRYING


def test_failed_message_lookups(db, clock, conversation):
    task, failed_messages = _failed_batch(db, clock, conversation)

    by_task_id = crud.get_failed_messages_by_task_id(db=db, task_id=task.task_id)
    by_request_task = crud.get_failed_messages_by_request_task(db=db, request_task_pk=task.id)

    assert {fm.id for fm in by_task_id} == {fm.id for fm in failed_messages}
    assert {fm.id for fm in by_request_task} == {fm.id for fm in failed_messages}
    assert crud.find_task(db=db, identifier=task.task_id).id == task.id
    assert crud.find_task(db=db, identifier=task.id).id == task.id
    assert len(crud.get_unretried_failed_messages(db=db)) == 2


def test_activate_setting_keeps_one_active(db, clock):
    first = crud.create_setting(
        db=db, name="first", api_key="key-1", base_url="https://a.test/v1", now=clock.now()
    )
    second = crud.create_setting(
        db=db, name="second", api_key="key-2", base_url="https://b.test/v1", now=clock.now()
    )

    crud.activate_setting(db=db, setting_id=first.id, now=clock.now())
    crud.activate_setting(db=db, setting_id=second.id, now=clock.now())

    active = [setting for setting in crud.get_settings(db=db) if setting.is_active]
    assert [setting.id for setting in active] == [second.id]
    assert crud.get_active_setting(db=db).id == second.id
    assert crud.activate_setting(db=db, setting_id="missing", now=clock.now()) is None


def test_inflight_tasks_are_dispatched_pending_tasks(db, clock, conversation):
    dispatched = crud.create_task(db=db, now=clock.now())
    _add_messages(db, clock, conversation, dispatched, ["a"])
    crud.mark_task_as_dispatched(db=db, task=dispatched, now=clock.now())
    still_open = crud.create_task(db=db, now=clock.now())
    _add_messages(db, clock, conversation, still_open, ["b"])

    assert [task.id for task in crud.get_inflight_tasks(db=db)] == [dispatched.id]


def test_cleanup_keeps_unretried_failures(session_factory, clock):
    with get_db(session_factory) as db:
        conversation = crud.create_conversation(db=db, now=clock.now())
        _, (retried, kept) = _failed_batch(db, clock, conversation)
        crud.mark_failed_message_retried(
            db=db, failed_message=retried, now=clock.now(), result="retry_success"
        )

    clock.advance(seconds=timedelta(days=31).total_seconds())
    with get_db(session_factory) as db:
        deleted = crud.cleanup_old_failed_messages(db=db, now=clock.now(), days=30)
        remaining = crud.get_unretried_failed_messages(db=db)

    assert deleted == 1
    assert [fm.id for fm in remaining] == [kept.id]


def test_cleanup_old_completed_tasks(db, clock, conversation):
    task = crud.create_task(db=db, now=clock.now())
    (message,) = _add_messages(db, clock, conversation, task, ["a"])
    crud.mark_task_as_completed(db=db, task=task, response="ok", now=clock.now())

    clock.advance(seconds=timedelta(days=31).total_seconds())
    assert crud.cleanup_old_tasks(db=db, now=clock.now(), days=30) == 1
    db.expunge_all()
    assert crud.get_task(db=db, task_pk=task.id) is None
    assert crud.get_message(db=db, message_id=message.id).task_id is None


def test_archive_conversation(db, clock, conversation):
    archived = crud.archive_conversation(db=db, conversation_id=conversation.id, now=clock.now())
    assert archived.status.value == "archived"
    assert archived.archived_at == clock.now()
