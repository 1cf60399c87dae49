"""
Session relay: multiplexes concurrent streaming sessions onto their channels.
"""
import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .channel import Channel, QueueChannel
from ...core.error_handling import ErrorHandler, ErrorContext
from ...core.exceptions import ChannelDisconnected, GatewayError
from ...core.logging import logger
from ...models import ChatSession, SessionState, StreamChunk, StreamDelta, StreamDone, StreamError
from ...providers.base import forward_stream

DISCONNECTED_ERROR = "channel disconnected"
FINISHED_SESSIONS_LIMIT = 256


@dataclass
class RelayEntry:
    channel: Channel
    session: Optional[ChatSession] = None
    task: Optional[asyncio.Task] = None


class SessionRelay:
    """
    Forwards adapter output to the channel of each session.

    The registry of open channels is the only state shared between sessions;
    inserts and removals go through ``self._lock``. Each stream is consumed
    by its own task, so chunks of one session arrive in read order while
    sessions progress independently.
    """

    def __init__(self):
        self._entries: Dict[str, RelayEntry] = {}
        self._tasks: Dict[str, Tuple[asyncio.Task, ChatSession]] = {}
        self._finished: "OrderedDict[str, ChatSession]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def open_channel(self, session_id: str, channel: Optional[Channel] = None) -> Channel:
        """Register a channel for ``session_id``; an in-memory QueueChannel if none is given."""
        channel = channel or QueueChannel()
        channel.session_id = session_id

        async with self._lock:
            if session_id in self._entries:
                raise ErrorHandler.handle_session_conflict(session_id, ErrorContext())
            self._entries[session_id] = RelayEntry(channel=channel)

        channel.on_close(partial(self._on_channel_closed, session_id))
        logger.debug(f"Opened channel for session {session_id}", session_id=session_id)
        return channel

    async def close_channel(self, session_id: str) -> bool:
        """
        Remove the session, close its channel and cancel its stream task.

        Returns False when no channel was open for ``session_id``.
        """
        async with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return False

        self._mark_disconnected(entry)
        await entry.channel.close()
        self._cancel_task(entry)
        logger.debug(f"Closed channel for session {session_id}", session_id=session_id)
        return True

    async def _on_channel_closed(self, session_id: str, channel: Channel) -> None:
        async with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.channel is not channel:
                return
            del self._entries[session_id]

        logger.info(f"Channel for session {session_id} disconnected", session_id=session_id)
        self._mark_disconnected(entry)
        self._cancel_task(entry)

    @staticmethod
    def _mark_disconnected(entry: RelayEntry) -> None:
        session = entry.session
        if session is not None and not session.state.is_terminal:
            session.state = SessionState.ERRORED
            session.error = DISCONNECTED_ERROR

    @staticmethod
    def _cancel_task(entry: RelayEntry) -> None:
        task = entry.task
        # Задача может закрывать свой собственный канал (например, после done)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def start(self, session: ChatSession, stream: AsyncIterator[StreamDelta]) -> asyncio.Task:
        """Begin forwarding ``stream`` to the session's channel in a new task."""
        session_id = session.session_id
        task = asyncio.create_task(self._run(session, stream), name=f"session-{session_id}")

        entry = self._entries.get(session_id)
        if entry is not None:
            entry.session = session
            entry.task = task
        else:
            logger.debug(f"Session {session_id} started without an open channel", session_id=session_id)

        self._tasks[session_id] = (task, session)
        task.add_done_callback(partial(self._forget_task, session_id))
        return task

    def _forget_task(self, session_id: str, task: asyncio.Task) -> None:
        current = self._tasks.get(session_id)
        if current is None or current[0] is not task:
            return
        del self._tasks[session_id]

        # Последние завершенные сессии остаются доступны для join
        self._finished[session_id] = current[1]
        self._finished.move_to_end(session_id)
        while len(self._finished) > FINISHED_SESSIONS_LIMIT:
            self._finished.popitem(last=False)

    async def _run(self, session: ChatSession, stream: AsyncIterator[StreamDelta]) -> ChatSession:
        session_id = session.session_id
        context = ErrorContext(session_id=session_id, provider_id=session.provider_id, model=session.model)
        start_time = time.time()
        try:
            await forward_stream(
                stream,
                on_chunk=partial(self.on_chunk, session_id),
                on_error=partial(self.on_error, session_id),
                on_complete=partial(self.on_complete, session_id),
                context=context,
            )
        except asyncio.CancelledError:
            logger.info(f"Stream for session {session_id} cancelled", session_id=session_id)
            raise
        finally:
            logger.performance(
                "session_stream", start_time, request_id=session_id,
                session_id=session_id, provider_id=session.provider_id, state=session.state.value
            )
        return session

    async def join(self, session_id: str) -> ChatSession:
        """Wait until the session's stream task has finished and return the session."""
        running = self._tasks.get(session_id)
        if running is None:
            if session_id in self._finished:
                return self._finished[session_id]
            raise KeyError(session_id)
        task, session = running
        await asyncio.wait({task})
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        entry = self._entries.get(session_id)
        if entry is not None and entry.session is not None:
            return entry.session
        running = self._tasks.get(session_id)
        if running is not None:
            return running[1]
        return self._finished.get(session_id)

    def active_sessions(self) -> List[str]:
        return list(self._entries)

    async def send(self, session_id: str, message: BaseModel) -> bool:
        """
        Deliver ``message`` on the session's channel.

        Returns False when the session has no open channel (the message is
        dropped). Raises ChannelDisconnected if the transport fails mid-send.
        """
        entry = self._entries.get(session_id)
        if entry is None or entry.channel.is_closed:
            logger.debug(f"Dropping {message.__class__.__name__} for session {session_id} without open channel",
                         session_id=session_id)
            return False
        await entry.channel.send(message)
        return True

    # Колбэки адаптера

    async def on_chunk(self, session_id: str, delta: StreamDelta) -> None:
        entry = self._entries.get(session_id)
        if entry is None or entry.session is None:
            logger.debug(f"Discarding chunk for session {session_id} without open channel", session_id=session_id)
            return

        entry.session.accumulated_content += delta.content
        await self.send(session_id, StreamChunk(content=delta.content, role=delta.role))

    async def on_error(self, session_id: str, error: GatewayError) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            logger.debug(f"Discarding error for session {session_id} without open channel", session_id=session_id)
            return

        if entry.session is not None:
            entry.session.state = SessionState.ERRORED
            entry.session.error = error.message

        logger.warning(f"Stream for session {session_id} failed: {error.message}", extra={
            "session_id": session_id,
            "error_code": error.error_code
        })
        await self._finish(session_id, StreamError(message=error.message, code=error.error_code))

    async def on_complete(self, session_id: str) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            logger.debug(f"Discarding completion for session {session_id} without open channel", session_id=session_id)
            return

        if entry.session is not None:
            entry.session.state = SessionState.COMPLETE
            logger.info(f"Stream for session {session_id} complete", extra={
                "session_id": session_id,
                "content_length": len(entry.session.accumulated_content)
            })
        await self._finish(session_id, StreamDone())

    async def _finish(self, session_id: str, message: BaseModel) -> None:
        try:
            await self.send(session_id, message)
        except ChannelDisconnected:
            logger.debug(f"Channel for session {session_id} went away before the final message",
                         session_id=session_id)
        await self.close_channel(session_id)
