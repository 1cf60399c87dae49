"""
Тесты ретранслятора сессий: изоляция, отключение канала, порядок сообщений
"""
import asyncio

import pytest

from llm_gateway.core.exceptions import ChannelDisconnected, SessionConflict, UpstreamHttpError
from llm_gateway.models import ChatSession, SessionState, StreamChunk, StreamDelta, StreamDone, StreamError
from llm_gateway.services.relay import Channel, QueueChannel, session_relay


def make_session(session_id: str) -> ChatSession:
    return ChatSession(session_id=session_id, provider_id="openai", model="gpt-4o-mini", messages=[])


async def scripted_stream(parts, gate: asyncio.Event = None, error: Exception = None):
    for part in parts:
        if gate is not None:
            await gate.wait()
            gate.clear()
        yield StreamDelta(content=part)
    if error is not None:
        raise error


async def drain(channel: QueueChannel):
    return [message async for message in channel]


class FailingChannel(Channel):
    """Channel whose transport breaks after ``fail_after`` messages."""

    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.sent = []

    async def send(self, message):
        if self._closed:
            raise self._disconnected()
        if len(self.sent) >= self.fail_after:
            self._closed = True
            await self._notify_closed()
            raise self._disconnected()
        self.sent.append(message)


class TestSessionRelay:
    @pytest.mark.asyncio
    async def test_stream_is_forwarded_in_order(self, relay):
        channel = await relay.open_channel("s1")
        relay.start(make_session("s1"), scripted_stream(["a", "b", "c"]))

        messages = await drain(channel)
        session = await relay.join("s1")

        assert messages == [StreamChunk(content="a"), StreamChunk(content="b"), StreamChunk(content="c"), StreamDone()]
        assert session.accumulated_content == "abc"
        assert session.state == SessionState.COMPLETE
        assert relay.active_sessions() == []

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, relay):
        gate_a, gate_b = asyncio.Event(), asyncio.Event()
        channel_a = await relay.open_channel("a")
        channel_b = await relay.open_channel("b")
        relay.start(make_session("a"), scripted_stream(["a1", "a2", "a3"], gate_a))
        relay.start(make_session("b"), scripted_stream(["b1", "b2"], gate_b))

        # Чередуем чанки двух сессий
        for gate in (gate_b, gate_a, gate_a, gate_b, gate_a):
            gate.set()
            for _ in range(5):
                await asyncio.sleep(0)

        messages_a = await drain(channel_a)
        messages_b = await drain(channel_b)
        session_a = await relay.join("a")
        session_b = await relay.join("b")

        assert [m.content for m in messages_a if isinstance(m, StreamChunk)] == ["a1", "a2", "a3"]
        assert [m.content for m in messages_b if isinstance(m, StreamChunk)] == ["b1", "b2"]
        assert session_a.accumulated_content == "a1a2a3"
        assert session_b.accumulated_content == "b1b2"

    @pytest.mark.asyncio
    async def test_open_channel_conflict(self, relay):
        await relay.open_channel("dup")
        with pytest.raises(SessionConflict) as exc_info:
            await relay.open_channel("dup")
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_nothing_is_delivered_after_disconnect(self, relay):
        gate = asyncio.Event()
        channel = await relay.open_channel("s1")
        task = relay.start(make_session("s1"), scripted_stream(["first", "second", "third"], gate))

        gate.set()
        first = await channel._queue.get()
        assert first == StreamChunk(content="first")

        assert await relay.close_channel("s1")
        gate.set()
        session = await relay.join("s1")

        assert task.cancelled()
        assert channel.is_closed
        assert await drain(channel) == []
        assert session.state == SessionState.ERRORED
        assert session.error == "channel disconnected"
        assert session.accumulated_content == "first"

    @pytest.mark.asyncio
    async def test_callbacks_for_closed_session_are_discarded(self, relay):
        channel = await relay.open_channel("gone")
        await relay.close_channel("gone")

        await relay.on_chunk("gone", StreamDelta(content="late"))
        await relay.on_complete("gone")
        await relay.on_error("gone", UpstreamHttpError(message="late error", status_code=500))

        assert await relay.send("gone", StreamDone()) is False
        assert await drain(channel) == []

    @pytest.mark.asyncio
    async def test_upstream_error_is_delivered(self, relay):
        channel = await relay.open_channel("err")
        error = UpstreamHttpError(message="Provider error: overloaded", status_code=503,
                                  error_code="upstream_http_error_503")
        relay.start(make_session("err"), scripted_stream(["partial"], error=error))

        messages = await drain(channel)
        session = await relay.join("err")

        assert messages == [
            StreamChunk(content="partial"),
            StreamError(message="Provider error: overloaded", code="upstream_http_error_503"),
        ]
        assert session.state == SessionState.ERRORED
        assert session.error == "Provider error: overloaded"

    @pytest.mark.asyncio
    async def test_transport_failure_stops_forwarding(self, relay):
        channel = FailingChannel(fail_after=2)
        await relay.open_channel("flaky", channel)
        relay.start(make_session("flaky"), scripted_stream(["1", "2", "3", "4"]))

        session = await relay.join("flaky")

        assert [m.content for m in channel.sent] == ["1", "2"]
        assert session.state == SessionState.ERRORED
        assert session.error == "channel disconnected"
        assert relay.active_sessions() == []

    @pytest.mark.asyncio
    async def test_channel_close_from_consumer_cancels_stream(self, relay):
        gate = asyncio.Event()
        channel = await relay.open_channel("c1")
        task = relay.start(make_session("c1"), scripted_stream(["x", "y"], gate))
        await asyncio.sleep(0)

        await channel.close()
        assert relay.active_sessions() == []

        session = await relay.join("c1")
        assert task.cancelled()
        assert session.state == SessionState.ERRORED

    @pytest.mark.asyncio
    async def test_get_session(self, relay):
        channel = await relay.open_channel("g")
        session = make_session("g")
        relay.start(session, scripted_stream(["z"]))

        assert relay.get_session("g") is session
        await drain(channel)
        await relay.join("g")
        assert relay.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_stream_duration_is_logged(self, relay, monkeypatch):
        timings = []
        monkeypatch.setattr(session_relay.logger, "performance",
                            lambda operation, start_time, request_id, **kwargs: timings.append((operation, kwargs)))
        channel = await relay.open_channel("t")
        relay.start(make_session("t"), scripted_stream(["x", "y"]))

        await drain(channel)
        await relay.join("t")

        assert timings == [("session_stream", {"session_id": "t", "provider_id": "openai", "state": "complete"})]

    @pytest.mark.asyncio
    async def test_closed_queue_channel_rejects_send(self):
        channel = QueueChannel("q")
        await channel.close()
        await channel.close()
        with pytest.raises(ChannelDisconnected):
            await channel.send(StreamDone())
