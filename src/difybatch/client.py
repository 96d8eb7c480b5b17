"""
HTTP client for the Dify chat API.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import typing as t

import httpx
import structlog

from difybatch.exceptions import RemoteServiceError
from difybatch.models import ChatResponse

if t.TYPE_CHECKING:
    from difybatch.db.models import DifySetting

log = structlog.get_logger(__name__)

STREAM_DATA_PREFIX = "data: "
STREAM_DONE_MARKER = "[DONE]"
_STREAM_END = object()


def parse_stream_line(line: str) -> str | None:
    """
    Extract the answer fragment from one line of a streaming response.

    Parameters
    ----------
    line : str
        Raw line, e.g. ``data: {"answer": "Hel"}``.

    Returns
    -------
    str | None
        The fragment, ``""`` for the ``[DONE]`` sentinel, ``None`` for lines
        that carry no answer.
    """
    line = line.strip()
    if not line.startswith(STREAM_DATA_PREFIX):
        return None
    data = line[len(STREAM_DATA_PREFIX) :]
    if data == STREAM_DONE_MARKER:
        return ""
    try:
        decoded = json.loads(s=data)
    except json.JSONDecodeError:
        return None
    if not isinstance(decoded, dict):
        return None
    answer = decoded.get("answer")
    return answer if isinstance(answer, str) else None


def _is_done_line(line: str) -> bool:
    return line.strip() == f"{STREAM_DATA_PREFIX}{STREAM_DONE_MARKER}"


class DifyClient:
    """
    Thin async wrapper around the Dify ``chat-messages`` endpoints.

    Parameters
    ----------
    user : str, optional
        End-user identifier sent with every request.
    stream_buffer_size : int, optional
        Capacity of the channel between the streaming producer and its consumer.
    """

    def __init__(self, *, user: str = "system", stream_buffer_size: int = 64) -> None:
        self._user = user
        self._stream_buffer_size = stream_buffer_size
        self._client_factory: t.Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient()

    @staticmethod
    def _headers(*, setting: "DifySetting") -> dict[str, str]:
        return {
            "Authorization": f"Bearer {setting.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _url(*, setting: "DifySetting", path: str) -> str:
        return f"{setting.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _payload(
        self,
        *,
        content: str,
        conversation_remote_id: str | None,
        response_mode: str,
        user: str | None,
    ) -> dict[str, t.Any]:
        return {
            "inputs": {},
            "query": content,
            "response_mode": response_mode,
            "conversation_id": conversation_remote_id,
            "user": user or self._user,
        }

    async def send_message(
        self,
        *,
        setting: "DifySetting",
        content: str,
        conversation_remote_id: str | None = None,
        user: str | None = None,
    ) -> ChatResponse:
        """
        Send one blocking chat request.

        Parameters
        ----------
        setting : DifySetting
            Active remote-service setting (base URL, API key, timeout).
        content : str
            Query sent to the remote service.
        conversation_remote_id : str | None, optional
            Remote conversation to continue, ``None`` to start one.
        user : str | None, optional
            End-user identifier overriding the client default.

        Returns
        -------
        ChatResponse
            Parsed answer and remote identifiers.

        Raises
        ------
        RemoteServiceError
            If the service answers with a non-200 status.
        httpx.HTTPError
            On transport errors and timeouts.
        """
        url = self._url(setting=setting, path="chat-messages")
        log.debug(
            event="Sending blocking chat request",
            url=url,
            conversation_remote_id=conversation_remote_id,
            timeout=setting.timeout,
        )
        async with self._client_factory() as client:
            response = await client.post(
                url=url,
                headers=self._headers(setting=setting),
                json=self._payload(
                    content=content,
                    conversation_remote_id=conversation_remote_id,
                    response_mode="blocking",
                    user=user,
                ),
                timeout=float(setting.timeout),
            )
        if response.status_code != 200:
            raise RemoteServiceError(
                f"Dify API request failed: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        data = response.json()
        answer = data.get("answer")
        return ChatResponse(
            answer=answer if isinstance(answer, str) else "",
            conversation_id=data.get("conversation_id") or None,
            message_id=data.get("message_id") or data.get("id"),
        )

    async def stream_message(
        self,
        *,
        setting: "DifySetting",
        content: str,
        conversation_remote_id: str | None = None,
        user: str | None = None,
    ) -> t.AsyncIterator[str]:
        """
        Stream a reply fragment by fragment.

        A producer task parses ``data:`` lines and pushes fragments onto a bounded
        queue; this generator consumes it. Errors raised by the producer are
        re-raised here.

        Parameters
        ----------
        setting : DifySetting
            Active remote-service setting.
        content : str
            Query sent to the remote service.
        conversation_remote_id : str | None, optional
            Remote conversation to continue.
        user : str | None, optional
            End-user identifier overriding the client default.

        Yields
        ------
        str
            Non-empty answer fragments, in order.
        """
        fragments: asyncio.Queue[t.Any] = asyncio.Queue(maxsize=self._stream_buffer_size)
        producer = asyncio.create_task(
            self._produce_stream(
                setting=setting,
                payload=self._payload(
                    content=content,
                    conversation_remote_id=conversation_remote_id,
                    response_mode="streaming",
                    user=user,
                ),
                fragments=fragments,
            ),
            name="dify_stream_producer",
        )
        try:
            while True:
                item = await fragments.get()
                if item is _STREAM_END:
                    break
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    async def _produce_stream(
        self,
        *,
        setting: "DifySetting",
        payload: dict[str, t.Any],
        fragments: asyncio.Queue[t.Any],
    ) -> None:
        url = self._url(setting=setting, path="chat-messages")
        try:
            async with self._client_factory() as client:
                async with client.stream(
                    method="POST",
                    url=url,
                    headers=self._headers(setting=setting),
                    json=payload,
                    timeout=float(setting.timeout),
                ) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode(encoding="utf-8", errors="replace")
                        raise RemoteServiceError(
                            f"Dify API stream request failed: {body}",
                            status_code=response.status_code,
                            body=body,
                        )
                    async for line in response.aiter_lines():
                        if _is_done_line(line):
                            break
                        fragment = parse_stream_line(line)
                        if fragment:
                            await fragments.put(fragment)
            await fragments.put(_STREAM_END)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log.debug(event="Stream producer failed", url=url, error=str(object=error))
            await fragments.put(error)

    async def stop_message(
        self,
        *,
        setting: "DifySetting",
        remote_task_id: str,
        user: str | None = None,
    ) -> bool:
        """
        Ask the remote service to stop a streaming generation.

        Parameters
        ----------
        setting : DifySetting
            Active remote-service setting.
        remote_task_id : str
            Task id reported by the remote service in stream chunks.
        user : str | None, optional
            End-user identifier overriding the client default.

        Returns
        -------
        bool
            ``True`` when the service acknowledged the stop.
        """
        url = self._url(setting=setting, path=f"chat-messages/{remote_task_id}/stop")
        async with self._client_factory() as client:
            response = await client.post(
                url=url,
                headers=self._headers(setting=setting),
                json={"user": user or self._user},
                timeout=float(setting.timeout),
            )
        if response.status_code != 200:
            raise RemoteServiceError(
                f"Dify API stop request failed: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json().get("result") == "success"

    async def get_parameters(self, *, setting: "DifySetting") -> dict[str, t.Any]:
        """Fetch the application parameters, used as a health probe."""
        url = self._url(setting=setting, path="parameters")
        async with self._client_factory() as client:
            response = await client.get(
                url=url,
                headers=self._headers(setting=setting),
                params={"user": self._user},
                timeout=float(setting.timeout),
            )
        if response.status_code != 200:
            raise RemoteServiceError(
                f"Dify API parameters request failed: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()
