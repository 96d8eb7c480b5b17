"""
Notifications emitted when a batch or a streamed reply succeeds or fails.
"""

from __future__ import annotations

import inspect
import typing as t
from dataclasses import dataclass

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReplyEvent:
    """
    A reply (or a streamed fragment of one) from the remote service.

    Parameters
    ----------
    conversation_id : str
        Local conversation id.
    remote_conversation_id : str | None
        Conversation id assigned by the remote service.
    content : str
        Full reply, or one fragment when ``is_final`` is ``False``.
    message_id : str | None
        Id of the user message that triggered the reply.
    is_final : bool
        ``True`` once the reply is complete.
    """

    conversation_id: str
    remote_conversation_id: str | None
    content: str
    message_id: str | None
    is_final: bool = True


@dataclass(frozen=True)
class ErrorEvent:
    """
    A failed exchange with the remote service.

    Parameters
    ----------
    conversation_id : str
        Local conversation id.
    message_id : str | None
        Id of the user message that triggered the exchange.
    error : str
        Error text.
    exception_class : str
        Qualified name of the exception.
    """

    conversation_id: str
    message_id: str | None
    error: str
    exception_class: str
    is_final: bool = True


Event = ReplyEvent | ErrorEvent
Listener = t.Callable[[t.Any], t.Awaitable[None] | None]


class EventDispatcher:
    """
    Deliver events to listeners registered per event type.

    A failing listener is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[type, list[Listener]] = {}

    def subscribe(self, event_type: type, listener: Listener) -> None:
        """
        Register a listener, sync or async, for one event type.

        Parameters
        ----------
        event_type : type
            ``ReplyEvent`` or ``ErrorEvent``.
        listener : Listener
            Callable receiving the event.
        """
        self._listeners.setdefault(event_type, []).append(listener)

    def unsubscribe(self, event_type: type, listener: Listener) -> None:
        self._listeners.get(event_type, []).remove(listener)

    async def dispatch(self, event: Event) -> None:
        for listener in list(self._listeners.get(type(event), [])):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as error:
                log.error(
                    event="Event listener failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    event_type=type(event).__name__,
                    error=str(object=error),
                )
