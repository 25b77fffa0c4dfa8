import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from functools import partial
from http import HTTPStatus
from typing import Any, Generic, TypeVar
from urllib.parse import quote

import anyio
from aiohttp import web
from aiohttp_sse import EventSourceResponse
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from mcp.types import JSONRPCMessage
from pydantic import ValidationError

from .exceptions import SessionNotFound

__all__ = [
    "CONNECTION_ID_HEADER",
    "CONNECTION_ID_PARAM",
    "Event",
    "EventType",
    "Heartbeat",
    "MessageConverter",
    "SSEServerTransport",
    "Stream",
    "json_error",
]

logger = logging.getLogger(__name__)

CONNECTION_ID_HEADER = "x-connection-id"
CONNECTION_ID_PARAM = "connectionId"

ReadStream = MemoryObjectReceiveStream[SessionMessage | Exception]
WriteStream = MemoryObjectSendStream[SessionMessage]


def json_error(status: HTTPStatus, error: str, **extra: Any) -> web.Response:
    """Build a JSON error response ``{"error": ..., **extra}``."""
    return web.json_response({"error": error, **extra}, status=status.value)


class EventType(str, Enum):  # for Py10 compatibility
    """Event types for SSE."""

    ENDPOINT = "endpoint"
    MESSAGE = "message"

    def __str__(self) -> str:  # for Py11+ compatibility
        return self.value


@dataclass
class Event:
    """A class to represent an event for SSE."""

    event_type: EventType
    data: str


class Heartbeat:
    """Keep an event stream busy so intermediaries do not time it out.

    :meth:`run` writes a ``: heartbeat`` comment every ``interval`` seconds through the
    event source response and returns when :meth:`stop` is called or when a write fails
    because the client is gone.
    """

    __slots__ = ("_interval", "_message", "_response", "_scope", "_stopped", "beats")

    def __init__(self, response: EventSourceResponse, interval: float) -> None:
        self._response = response
        self._interval = interval
        sep = EventSourceResponse.DEFAULT_SEPARATOR
        self._message = f": heartbeat{sep}{sep}".encode("utf-8")
        self._scope: anyio.CancelScope | None = None
        self._stopped = False
        self.beats = 0

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def run(self) -> None:
        with anyio.CancelScope() as scope:
            self._scope = scope
            if self._stopped:
                scope.cancel()
            while True:
                await anyio.sleep(self._interval)
                try:
                    await self._response.write(self._message)
                except (ConnectionResetError, RuntimeError) as err:
                    # RuntimeError is raised when writing after EOF
                    logger.debug("Heartbeat write failed, stream is closed: %s", err)
                    self._stopped = True
                    return
                self.beats += 1

    def stop(self) -> None:
        self._stopped = True
        if self._scope is not None:
            self._scope.cancel()


T = TypeVar("T")


class Stream(Generic[T]):
    """A pair of connected streams for bidirectional communication."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: MemoryObjectReceiveStream[T], writer: MemoryObjectSendStream[T]):
        self._reader = reader
        self._writer = writer

    @property
    def reader(self) -> MemoryObjectReceiveStream[T]:
        """Return the reader stream."""
        return self._reader

    @property
    def writer(self) -> MemoryObjectSendStream[T]:
        """Return the writer stream."""
        return self._writer

    @classmethod
    def create(cls, max_buffer_size: int = 0) -> "Stream[T]":
        """Create a new Stream instance.

        Parameters:
            max_buffer_size: Number of items held in the buffer until ``send()`` starts blocking

        Returns:
            A new Stream instance
        """
        writer, reader = anyio.create_memory_object_stream[T](max_buffer_size)
        return cls(reader=reader, writer=writer)

    async def close(self) -> None:
        """Close both streams."""
        await self._reader.aclose()
        await self._writer.aclose()


class MessageConverter:
    """Converts between different message formats."""

    @staticmethod
    def to_string(session_message: SessionMessage | Exception) -> str:
        """Convert session_message to string."""
        if isinstance(session_message, SessionMessage):
            return session_message.message.model_dump_json(by_alias=True, exclude_none=True)
        return str(session_message)

    @staticmethod
    def to_event(session_message: SessionMessage | Exception, event_type: EventType = EventType.MESSAGE) -> Event:
        """Convert session_message to SSE event."""
        data = MessageConverter.to_string(session_message)
        return Event(event_type=event_type, data=data)


class SSEServerTransport:
    """Transport of a single SSE session.

    Messages posted by the client are queued to the protocol server through the read
    stream; whatever the server writes is streamed back as ``message`` events.
    """

    __slots__ = ("_connection_id", "_message_path", "_read_stream", "_send_timeout", "_write_stream")

    def __init__(self, connection_id: str, message_path: str, send_timeout: float | None = None) -> None:
        self._connection_id = connection_id
        self._message_path = message_path
        self._send_timeout = send_timeout
        # client -> server
        self._read_stream = Stream[SessionMessage | Exception].create()
        # server -> client
        self._write_stream = Stream[SessionMessage].create()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def endpoint(self) -> str:
        """URI the client posts its messages to, sent as the first event."""
        return f"{quote(self._message_path)}?{CONNECTION_ID_PARAM}={quote(self._connection_id)}"

    @asynccontextmanager
    async def connect(self, response: EventSourceResponse) -> AsyncIterator[tuple[ReadStream, WriteStream]]:
        """Stream server output to ``response`` and yield the server's read/write streams."""
        logger.debug("[%s] Connecting transport", self._connection_id)
        async with anyio.create_task_group() as tg:
            # https://trio.readthedocs.io/en/latest/reference-core.html#custom-supervisors
            async def cancel_on_finish(coro: Callable[[], Awaitable[None]]) -> None:
                await coro()
                tg.cancel_scope.cancel()

            tg.start_soon(cancel_on_finish, partial(self._forward_to_client, response))
            try:
                yield self._read_stream.reader, self._write_stream.writer
            finally:
                await self._read_stream.close()
                tg.cancel_scope.cancel()
        logger.debug("[%s] Transport disconnected", self._connection_id)

    async def _forward_to_client(self, response: EventSourceResponse) -> None:
        """Send the endpoint event, then every server message, to the client."""
        try:
            async with self._write_stream.reader:
                await response.send(self.endpoint, event=EventType.ENDPOINT)
                logger.debug("[%s] Sent endpoint event: %s", self._connection_id, self.endpoint)

                async for message in self._write_stream.reader:
                    event = MessageConverter.to_event(message)
                    with anyio.move_on_after(self._send_timeout) as cancel_scope:
                        await response.send(event.data, event=event.event_type)
                        logger.debug("[%s] Sent event: %s", self._connection_id, event)

                    if cancel_scope.cancel_called:
                        raise TimeoutError(f"Timed out sending event to {self._connection_id}")
        except (ConnectionResetError, RuntimeError) as err:
            logger.debug("[%s] Client stream closed: %s", self._connection_id, err)

    async def handle_post_message(self, request: web.Request, payload: Any) -> web.Response:
        """Validate a decoded JSON-RPC envelope and queue it for the protocol server."""
        try:
            message = JSONRPCMessage.model_validate(payload)
            logger.debug("[%s] Validated client message: %s", self._connection_id, message)
        except ValidationError as err:
            logger.error("[%s] Failed to parse message: %s", self._connection_id, err)
            await self._send(err)
            return json_error(HTTPStatus.BAD_REQUEST, "Could not parse message")

        metadata = ServerMessageMetadata(request_context=request)
        await self._send(SessionMessage(message, metadata=metadata))
        return web.Response(text="Accepted", status=HTTPStatus.ACCEPTED.value)

    async def _send(self, item: SessionMessage | Exception) -> None:
        try:
            await self._read_stream.writer.send(item)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as err:
            raise SessionNotFound(self._connection_id) from err
