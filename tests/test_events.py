import pytest

from difybatch.events import ErrorEvent, EventDispatcher, ReplyEvent


def _reply(content: str = "ok") -> ReplyEvent:
    return ReplyEvent(
        conversation_id="c1",
        remote_conversation_id="remote-1",
        content=content,
        message_id="m1",
    )


@pytest.mark.asyncio
async def test_sync_and_async_listeners_receive_events():
    dispatcher = EventDispatcher()
    received = []

    async def async_listener(event):
        received.append(("async", event.content))

    dispatcher.subscribe(ReplyEvent, lambda event: received.append(("sync", event.content)))
    dispatcher.subscribe(ReplyEvent, async_listener)

    await dispatcher.dispatch(_reply())

    assert received == [("sync", "ok"), ("async", "ok")]


@pytest.mark.asyncio
async def test_listeners_only_receive_their_event_type():
    dispatcher = EventDispatcher()
    errors = []
    dispatcher.subscribe(ErrorEvent, errors.append)

    await dispatcher.dispatch(_reply())
    error = ErrorEvent(
        conversation_id="c1", message_id="m1", error="boom", exception_class="RuntimeError"
    )
    await dispatcher.dispatch(error)

    assert errors == [error]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others():
    dispatcher = EventDispatcher()
    received = []

    def broken(event):
        raise RuntimeError("listener failure")

    dispatcher.subscribe(ReplyEvent, broken)
    dispatcher.subscribe(ReplyEvent, received.append)

    await dispatcher.dispatch(_reply())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_unsubscribe():
    dispatcher = EventDispatcher()
    received = []
    dispatcher.subscribe(ReplyEvent, received.append)
    dispatcher.unsubscribe(ReplyEvent, received.append)

    await dispatcher.dispatch(_reply())

    assert received == []
