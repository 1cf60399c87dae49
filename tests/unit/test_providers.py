"""
Тесты адаптеров провайдеров на httpx.MockTransport
"""
import asyncio
import json

import httpx
import pytest

from llm_gateway.core.exceptions import (
    InternalError,
    StreamIdleTimeout,
    UpstreamHttpError,
    UpstreamInvalidResponse,
    UpstreamNetworkError,
    UpstreamRateLimitError,
)
from llm_gateway.models import ChatMessage, ProviderConfig, StreamDelta
from llm_gateway.providers import GoogleProvider, OpenAICompatibleProvider, retry_on_rate_limit
from tests.stream_utils import google_chunk, openai_chunk, sse_lines

OPENAI_CONFIG = ProviderConfig(
    provider_id="openai", api_key="sk-test", base_url="https://api.openai.test/v1", model="gpt-4o-mini"
)
GOOGLE_CONFIG = ProviderConfig(
    provider_id="google", api_key="g-test", base_url="https://generativelanguage.test/v1beta", model="gemini-1.5-flash"
)


async def collect(stream):
    return [delta async for delta in stream]


class TestOpenAIProvider:
    @pytest.fixture
    def provider(self, http_client):
        return OpenAICompatibleProvider(
            "openai", http_client, {"options": {"temperature": 0.2}}, retry={"max_retries": 2, "base_delay": 0}
        )

    @pytest.mark.asyncio
    async def test_list_models_normalization(self, provider, transport):
        transport.json("/models", {"object": "list", "data": [
            {"id": "gpt-4o-mini", "object": "model", "created": 1700000000, "owned_by": "openai"},
            {"id": "text-embedding-3-small", "object": "model", "created": 1700000001, "owned_by": "system"},
        ]})

        models = await provider.list_models(OPENAI_CONFIG)

        assert [m.id for m in models] == ["gpt-4o-mini", "text-embedding-3-small"]
        assert models[0].created_at == 1700000000
        assert models[1].owned_by == "system"
        request = transport.requests[-1]
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert str(request.url) == "https://api.openai.test/v1/models"

    @pytest.mark.asyncio
    async def test_chat_request_and_response(self, provider, transport, sample_messages):
        transport.json("/chat/completions", {
            "id": "chatcmpl-9",
            "model": "gpt-4o-mini-2024",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "Knock knock."},
                         "finish_reason": "stop"}],
        })

        response = await provider.chat(OPENAI_CONFIG, sample_messages)

        assert response.id == "chatcmpl-9"
        assert response.content == "Knock knock."
        assert response.choices[0].finish_reason == "stop"
        body = transport.last_json()
        assert body["model"] == "gpt-4o-mini"
        assert body["stream"] is False
        assert body["temperature"] == 0.2
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_error_body_json_message(self, provider, transport, sample_messages):
        transport.json("/chat/completions", {"error": {"message": "Invalid API key", "type": "auth"}}, status_code=401)

        with pytest.raises(UpstreamHttpError) as exc_info:
            await provider.chat(OPENAI_CONFIG, sample_messages)

        assert exc_info.value.status_code == 401
        assert "Invalid API key" in exc_info.value.message
        assert exc_info.value.error_code == "upstream_http_error_401"

    @pytest.mark.asyncio
    async def test_error_body_raw_text(self, provider, transport, sample_messages):
        transport.text("/chat/completions", "Bad Gateway from proxy", status_code=502)

        with pytest.raises(UpstreamHttpError) as exc_info:
            await provider.chat(OPENAI_CONFIG, sample_messages)

        assert exc_info.value.status_code == 502
        assert "Provider returned 502: Bad Gateway from proxy" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, provider, transport, sample_messages):
        transport.json("/chat/completions", {"error": {"message": "slow down"}}, status_code=429)
        transport.json("/chat/completions", {
            "id": "ok", "choices": [{"message": {"role": "assistant", "content": "done"}}]
        })

        response = await provider.chat(OPENAI_CONFIG, sample_messages)

        assert response.content == "done"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_gives_up(self, provider, transport, sample_messages):
        transport.json("/chat/completions", {"error": {"message": "slow down"}}, status_code=429)

        with pytest.raises(UpstreamRateLimitError) as exc_info:
            await provider.chat(OPENAI_CONFIG, sample_messages)
        assert len(transport.requests) == 3  # 1 начальный вызов + 2 повторные попытки
        assert "slow down" in exc_info.value.message
        assert exc_info.value.error_code == "rate_limit_exceeded"

    @pytest.mark.asyncio
    async def test_network_error(self, sample_messages):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = OpenAICompatibleProvider("openai", client)
            with pytest.raises(UpstreamNetworkError):
                await provider.chat(OPENAI_CONFIG, sample_messages)

    @pytest.mark.asyncio
    async def test_invalid_json_response(self, provider, transport, sample_messages):
        transport.add("/chat/completions", lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(UpstreamInvalidResponse):
            await provider.chat(OPENAI_CONFIG, sample_messages)

    @pytest.mark.asyncio
    async def test_stream_split_mid_line(self, provider, transport, unicode_messages):
        body = sse_lines([openai_chunk("", role="assistant"), openai_chunk("Искусственный "),
                          openai_chunk("интеллект 🤖")])
        # Режем посреди строки и посреди многобайтового символа
        cut = body.index("Искус".encode()) + 3
        transport.stream("/chat/completions", [body[:17], body[17:cut], body[cut:]])

        deltas = await collect(provider.stream_chat(OPENAI_CONFIG, unicode_messages))

        assert "".join(d.content for d in deltas) == "Искусственный интеллект 🤖"
        assert transport.last_json()["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_http_error(self, provider, transport, sample_messages):
        transport.json("/chat/completions", {"error": {"message": "model overloaded"}}, status_code=503)

        with pytest.raises(UpstreamHttpError) as exc_info:
            await collect(provider.stream_chat(OPENAI_CONFIG, sample_messages))
        assert "model overloaded" in exc_info.value.message
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_stream_idle_timeout(self, provider, transport, sample_messages):
        transport.stream("/chat/completions", [sse_lines([openai_chunk("partial")], done=False)],
                         error=httpx.ReadTimeout("no data"))

        received = []
        with pytest.raises(StreamIdleTimeout) as exc_info:
            async for delta in provider.stream_chat(OPENAI_CONFIG, sample_messages):
                received.append(delta)

        assert received == [StreamDelta(content="partial")]
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_stream_is_lazy(self, provider, transport, sample_messages):
        stream = provider.stream_chat(OPENAI_CONFIG, sample_messages)
        await asyncio.sleep(0)
        assert transport.requests == []
        await stream.aclose()


class TestStreamCallbacks:
    @pytest.fixture
    def provider(self, http_client):
        return OpenAICompatibleProvider("openai", http_client)

    @pytest.fixture
    def events(self):
        return []

    @pytest.fixture
    def callbacks(self, events):
        async def on_chunk(delta):
            events.append(("chunk", delta.content))

        async def on_error(error):
            events.append(("error", error.error_code))

        async def on_complete():
            events.append(("complete", None))

        return on_chunk, on_error, on_complete

    @pytest.mark.asyncio
    async def test_success_calls_complete_once(self, provider, transport, sample_messages, callbacks, events):
        transport.stream("/chat/completions", [sse_lines([openai_chunk("a"), openai_chunk("b")])])

        completed = await provider.stream_chat_with_callbacks(OPENAI_CONFIG, sample_messages, *callbacks)

        assert completed
        assert events == [("chunk", "a"), ("chunk", "b"), ("complete", None)]

    @pytest.mark.asyncio
    async def test_failure_calls_error_once(self, provider, transport, sample_messages, callbacks, events):
        transport.stream("/chat/completions", [sse_lines([openai_chunk("a")], done=False)],
                         error=httpx.ReadTimeout("idle"))

        completed = await provider.stream_chat_with_callbacks(OPENAI_CONFIG, sample_messages, *callbacks)

        assert not completed
        assert events == [("chunk", "a"), ("error", "stream_idle_timeout")]

    @pytest.mark.asyncio
    async def test_odd_record_does_not_abort_stream(self, provider, transport, sample_messages, callbacks, events):
        transport.stream("/chat/completions", [sse_lines([openai_chunk("a"), {"choices": [None]}, openai_chunk("b")])])

        completed = await provider.stream_chat_with_callbacks(OPENAI_CONFIG, sample_messages, *callbacks)

        assert completed
        assert events == [("chunk", "a"), ("chunk", "b"), ("complete", None)]

    @pytest.mark.asyncio
    async def test_odd_google_record_does_not_abort_stream(self, http_client, transport, sample_messages,
                                                           callbacks, events):
        provider = GoogleProvider("google", http_client)
        transport.stream(":streamGenerateContent?alt=sse", [
            sse_lines([google_chunk("a"), {"candidates": [{"content": "x"}]}, google_chunk("b")], done=False)
        ])

        completed = await provider.stream_chat_with_callbacks(GOOGLE_CONFIG, sample_messages, *callbacks)

        assert completed
        assert events == [("chunk", "a"), ("chunk", "b"), ("complete", None)]

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_internal_error(self, provider, sample_messages, events):
        async def broken_stream(config, messages):
            yield StreamDelta(content="a")
            raise ValueError("boom")

        errors = []

        async def on_chunk(delta):
            events.append(delta.content)

        async def on_error(error):
            errors.append(error)

        async def on_complete():
            pytest.fail("on_complete must not be called after an error")

        provider.stream_chat = broken_stream
        await provider.stream_chat_with_callbacks(OPENAI_CONFIG, sample_messages, on_chunk, on_error, on_complete)

        assert events == ["a"]
        assert len(errors) == 1
        assert isinstance(errors[0], InternalError)


class TestGoogleProvider:
    @pytest.fixture
    def provider(self, http_client):
        return GoogleProvider("google", http_client, {"options": {"generationConfig": {"maxOutputTokens": 2048}}})

    @pytest.mark.asyncio
    async def test_list_models_normalization(self, provider, transport):
        transport.json("/models", {"models": [
            {"name": "models/gemini-1.5-flash", "displayName": "Gemini 1.5 Flash", "version": "001"},
            {"name": "models/gemini-pro", "displayName": "Gemini Pro"},
        ]})

        models = await provider.list_models(GOOGLE_CONFIG)

        assert [m.id for m in models] == ["models/gemini-1.5-flash", "models/gemini-pro"]
        assert models[0].display_name == "Gemini 1.5 Flash"
        assert all(m.owned_by == "google" for m in models)
        request = transport.requests[-1]
        assert request.headers["x-goog-api-key"] == "g-test"
        assert "key=" not in str(request.url)

    @pytest.mark.asyncio
    async def test_chat_request_mapping(self, provider, transport):
        transport.json(":generateContent", {
            "candidates": [{"content": {"parts": [{"text": "Hi "}, {"text": "there"}]}, "finishReason": "STOP"}],
            "responseId": "resp-1",
        })
        messages = [
            ChatMessage(role="system", content="You are terse."),
            ChatMessage(role="user", content="Hello"),
            ChatMessage(role="assistant", content="Hi"),
            ChatMessage(role="user", content="Again"),
        ]

        response = await provider.chat(GOOGLE_CONFIG, messages)

        assert response.content == "Hi there"
        assert response.choices[0].finish_reason == "stop"
        assert response.id == "resp-1"
        request = transport.requests[-1]
        assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
        body = json.loads(request.content)
        assert body["systemInstruction"] == {"parts": [{"text": "You are terse."}]}
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["generationConfig"] == {
            "temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 2048
        }

    @pytest.mark.asyncio
    async def test_no_candidates_is_invalid_response(self, provider, transport, sample_messages):
        transport.json(":generateContent", {"promptFeedback": {"blockReason": "SAFETY"}})

        with pytest.raises(UpstreamInvalidResponse) as exc_info:
            await provider.chat(GOOGLE_CONFIG, sample_messages)
        assert "SAFETY" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_error_body_list_form(self, provider, transport, sample_messages):
        transport.json(":generateContent", [{"error": {"code": 400, "message": "API key not valid"}}],
                       status_code=400)

        with pytest.raises(UpstreamHttpError) as exc_info:
            await provider.chat(GOOGLE_CONFIG, sample_messages)
        assert exc_info.value.message.endswith("API key not valid")

    @pytest.mark.asyncio
    async def test_stream(self, provider, transport, sample_messages):
        body = sse_lines([google_chunk("Why did "), google_chunk("the chicken..."),
                          {"usageMetadata": {"totalTokenCount": 9}}], done=False)
        transport.stream(":streamGenerateContent?alt=sse", [body[:25], body[25:]])

        deltas = await collect(provider.stream_chat(GOOGLE_CONFIG, sample_messages))

        assert "".join(d.content for d in deltas) == "Why did the chicken..."
        assert transport.requests[-1].url.params["alt"] == "sse"

    def test_default_model_and_prefix(self, provider):
        assert provider.get_default_model() == "models/gemini-pro"
        assert GoogleProvider.model_path("gemini-pro") == "models/gemini-pro"
        assert GoogleProvider.model_path("models/gemini-pro") == "models/gemini-pro"

    def test_default_endpoint(self, http_client):
        assert GoogleProvider("google", http_client).get_default_endpoint() == \
            "https://generativelanguage.googleapis.com/v1beta"


class TestRetryDecorator:
    @pytest.mark.asyncio
    async def test_non_rate_limit_error_is_not_retried(self):
        class Dummy:
            provider_id = "dummy"
            retry = {}
            calls = 0

            @retry_on_rate_limit(max_retries=2, base_delay=0)
            async def call(self):
                self.calls += 1
                raise UpstreamHttpError(message="server error", status_code=500)

        dummy = Dummy()
        with pytest.raises(UpstreamHttpError):
            await dummy.call()
        assert dummy.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_header_is_respected(self, http_client, transport, sample_messages, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr("llm_gateway.providers.base.asyncio.sleep", fake_sleep)
        transport.json("/chat/completions", {"error": {"message": "later"}}, status_code=429,
                       headers={"Retry-After": "7"})
        transport.json("/chat/completions", {"id": "x", "choices": [{"message": {"content": "ok"}}]})

        provider = OpenAICompatibleProvider("openai", http_client, retry={"max_retries": 1, "base_delay": 0})
        response = await provider.chat(OPENAI_CONFIG, sample_messages)

        assert response.content == "ok"
        assert delays == [7.0]
