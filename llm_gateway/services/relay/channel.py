"""
Duplex channels between the gateway and a requesting context.

A channel only knows how to deliver channel messages and how to report that
its remote end went away; session bookkeeping lives in SessionRelay.
"""
import asyncio
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from ...core.error_handling import ErrorType
from ...core.exceptions import ChannelDisconnected
from ...core.logging import logger

CloseCallback = Callable[["Channel"], Awaitable[None]]

_CLOSED = object()


class Channel:
    """Transport agnostic session channel."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._closed = False
        self._close_callbacks: List[CloseCallback] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_close(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    async def send(self, message: BaseModel) -> None:
        raise NotImplementedError

    async def acknowledge(self, message: BaseModel) -> None:
        """
        Deliver the stream acknowledgment in-band.

        Transports that get the acknowledgment as a return value do nothing.
        """

    async def close(self) -> None:
        """Idempotent. Runs the close callbacks exactly once."""
        if self._closed:
            return
        self._closed = True
        await self._close_transport()
        await self._notify_closed()

    async def _close_transport(self) -> None:
        pass

    async def _notify_closed(self) -> None:
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            await callback(self)

    def _disconnected(self) -> ChannelDisconnected:
        return ChannelDisconnected(
            message=ErrorType.CHANNEL_DISCONNECTED.format_message(session_id=self.session_id)
        )


class QueueChannel(Channel):
    """
    In-process channel backed by an asyncio.Queue.

    The consumer iterates the channel; iteration ends once the channel is
    closed and every queued message has been read.
    """

    def __init__(self, session_id: Optional[str] = None, maxsize: int = 0):
        super().__init__(session_id)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def send(self, message: BaseModel) -> None:
        if self._closed:
            raise self._disconnected()
        await self._queue.put(message)

    async def _close_transport(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[BaseModel]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BaseModel]:
        while True:
            message = await self._queue.get()
            if message is _CLOSED:
                return
            yield message


class WebSocketChannel(Channel):
    """Channel over an accepted FastAPI/Starlette WebSocket."""

    def __init__(self, websocket: WebSocket, session_id: Optional[str] = None):
        super().__init__(session_id)
        self.websocket = websocket

    async def send(self, message: BaseModel) -> None:
        if self._closed:
            raise self._disconnected()
        try:
            await self.websocket.send_json(message.model_dump())
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("WebSocket send failed, treating channel as disconnected", extra={
                "session_id": self.session_id,
                "error": str(e)
            })
            self._closed = True
            await self._notify_closed()
            raise self._disconnected() from e

    async def acknowledge(self, message: BaseModel) -> None:
        await self.send(message)

    async def _close_transport(self) -> None:
        if WebSocketState.DISCONNECTED in (self.websocket.application_state, self.websocket.client_state):
            return
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError) as e:
            # Клиент уже закрыл соединение
            logger.debug(f"WebSocket already closed: {e}", session_id=self.session_id)
