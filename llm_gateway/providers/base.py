import asyncio
from functools import wraps
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx

from ..core import exceptions
from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.logging import logger
from ..models import ChatMessage, ChatResponse, ModelInfo, ProviderConfig, StreamDelta
from ..services.chat.stream_decoder import StreamDecoder
from ..utils.deep_merge import merged

DEFAULT_TIMEOUTS = {
    "connect": 10.0,
    "read": 120.0,
    "write": 30.0,
    "stream_read_idle": 60.0,
}

ChunkCallback = Callable[[StreamDelta], Awaitable[None]]
ErrorCallback = Callable[[exceptions.GatewayError], Awaitable[None]]
CompleteCallback = Callable[[], Awaitable[None]]


def retry_on_rate_limit(max_retries: Optional[int] = None, base_delay: Optional[float] = None, max_delay: float = 30.0):
    """
    Декоратор для повторных попыток при ошибках 429 (Too Many Requests)

    Args:
        max_retries: Максимальное количество повторных попыток
            (по умолчанию берется из настроек провайдера)
        base_delay: Базовая задержка между попытками (секунды)
        max_delay: Максимальная задержка (секунды)
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            retries = max_retries if max_retries is not None else self.retry.get("max_retries", 3)
            delay_base = base_delay if base_delay is not None else self.retry.get("base_delay", 1.0)

            for attempt in range(retries + 1):
                try:
                    return await func(self, *args, **kwargs)
                except exceptions.UpstreamRateLimitError as e:
                    if attempt >= retries:
                        raise

                    # Экспоненциальное увеличение задержки
                    delay = min(delay_base * (2 ** attempt), max_delay)

                    # Извлекаем время ожидания из заголовка Retry-After, если есть
                    response = getattr(e.original_exception, "response", None)
                    retry_after_header = response.headers.get("Retry-After") if response is not None else None
                    if retry_after_header:
                        try:
                            delay = min(float(retry_after_header), max_delay)
                        except ValueError:
                            # Если не число (HTTP-дата), оставляем экспоненциальную задержку
                            pass

                    logger.warning(f"Rate limit exceeded, retrying in {delay}s (attempt {attempt + 1}/{retries})", extra={
                        "delay_seconds": delay,
                        "attempt": attempt + 1,
                        "max_retries": retries,
                        "provider_id": self.provider_id,
                        "component": "base_provider"
                    })
                    await asyncio.sleep(delay)
        return wrapper
    return decorator


async def forward_stream(
    stream: AsyncIterator[StreamDelta],
    on_chunk: ChunkCallback,
    on_error: ErrorCallback,
    on_complete: CompleteCallback,
    context: Optional[ErrorContext] = None,
) -> bool:
    """
    Drive ``stream`` and report its outcome through callbacks.

    Exactly one of ``on_error``/``on_complete`` is called, once, and no
    ``on_chunk`` follows it. A ChannelDisconnected raised by a callback stops
    forwarding without either terminal callback. Returns True when the
    stream completed.
    """
    try:
        async for delta in stream:
            await on_chunk(delta)
    except exceptions.ChannelDisconnected:
        logger.debug("Channel disconnected, stream forwarding stopped")
        return False
    except exceptions.GatewayError as e:
        await on_error(e)
        return False
    except Exception as e:
        await on_error(ErrorHandler.handle_internal_error(
            error_details=str(e) or type(e).__name__,
            context=context or ErrorContext(),
            original_exception=e
        ))
        return False
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

    await on_complete()
    return True


class BaseProvider:
    """
    Common HTTP plumbing for provider adapters.

    Subclasses translate between ChatMessage/ChatResponse and the backend's
    wire format; this class owns timeouts, error mapping, retries on 429 and
    incremental decoding of streamed responses.
    """

    provider_type = "base"
    default_endpoint = ""
    default_model: Optional[str] = None
    stream_sentinel: Optional[str] = None

    def __init__(
        self,
        provider_id: str,
        client: httpx.AsyncClient,
        config: Optional[Dict[str, Any]] = None,
        timeouts: Optional[Dict[str, float]] = None,
        retry: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.provider_id = provider_id
        self.client = client
        self.base_url = (config.get("base_url") or self.default_endpoint).rstrip("/")
        self.options = config.get("options") or {}
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.retry = retry or {}

    def get_provider_id(self) -> str:
        return self.provider_id

    def get_default_endpoint(self) -> str:
        return self.base_url

    def get_default_model(self) -> Optional[str]:
        return self.default_model

    # Переопределяется в адаптерах

    def _headers(self, config: ProviderConfig) -> Dict[str, str]:
        raise NotImplementedError

    def _models_url(self, config: ProviderConfig) -> str:
        raise NotImplementedError

    def _parse_models(self, data: Any) -> List[ModelInfo]:
        raise NotImplementedError

    def _chat_url(self, config: ProviderConfig) -> str:
        raise NotImplementedError

    def _stream_url(self, config: ProviderConfig) -> str:
        raise NotImplementedError

    def _build_request(self, config: ProviderConfig, messages: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse_chat_response(self, config: ProviderConfig, data: Any, context: ErrorContext) -> ChatResponse:
        raise NotImplementedError

    def extract_delta(self, record: Any) -> Optional[StreamDelta]:
        raise NotImplementedError

    # Общая логика

    def _context(self, config: ProviderConfig, **additional) -> ErrorContext:
        return ErrorContext(provider_id=self.provider_id, model=config.model, **additional)

    def _with_options(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.options:
            return body
        return merged(body, self.options)

    def _timeout(self, stream: bool = False) -> httpx.Timeout:
        # read: для стрима это максимальная пауза между чанками, а не общее время
        return httpx.Timeout(
            connect=self.timeouts["connect"],
            read=self.timeouts["stream_read_idle"] if stream else self.timeouts["read"],
            write=self.timeouts["write"],
            pool=self.timeouts["connect"],
        )

    def _raise_for_status(self, response: httpx.Response, context: ErrorContext) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ErrorHandler.handle_upstream_http_error(
                status_code=response.status_code,
                response_text=response.text,
                context=context,
                original_exception=e
            ) from e

    def _decode_json(self, response: httpx.Response, context: ErrorContext) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ErrorHandler.handle_upstream_invalid_response(
                error_details=f"response body is not JSON: {response.text[:200]}",
                context=context
            ) from e

    @retry_on_rate_limit()
    async def _request_json(
        self,
        method: str,
        url: str,
        config: ProviderConfig,
        context: ErrorContext,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        logger.debug_data(
            title=f"{self.provider_type} request",
            data={"url": url, "headers": self._headers(config), "request_body": body},
            request_id=context.request_id or "unknown",
            component=f"{self.provider_type}_provider",
            data_flow="to_provider"
        )

        try:
            response = await self.client.request(
                method,
                url,
                headers=self._headers(config),
                json=body,
                timeout=self._timeout()
            )
        except httpx.RequestError as e:
            raise ErrorHandler.handle_upstream_network_error(e, context) from e

        self._raise_for_status(response, context)
        data = self._decode_json(response, context)

        logger.debug_data(
            title=f"{self.provider_type} response",
            data=data,
            request_id=context.request_id or "unknown",
            component=f"{self.provider_type}_provider",
            data_flow="from_provider"
        )
        return data

    async def list_models(self, config: ProviderConfig) -> List[ModelInfo]:
        context = self._context(config, endpoint_path="models")
        data = await self._request_json("GET", self._models_url(config), config, context)
        models = self._parse_models(data)
        logger.info(f"Fetched {len(models)} models", extra={
            "provider_id": self.provider_id,
            "models_count": len(models)
        })
        return models

    async def chat(self, config: ProviderConfig, messages: List[ChatMessage]) -> ChatResponse:
        context = self._context(config, endpoint_path="chat")
        body = self._build_request(config, messages, stream=False)
        data = await self._request_json("POST", self._chat_url(config), config, context, body=body)
        return self._parse_chat_response(config, data, context)

    async def stream_chat(self, config: ProviderConfig, messages: List[ChatMessage]) -> AsyncIterator[StreamDelta]:
        """
        Lazily stream content deltas from the backend.

        Nothing is sent until iteration starts. Cancelling the consuming task
        or closing the generator closes the underlying HTTP response.
        """
        context = self._context(config, endpoint_path="stream")
        body = self._build_request(config, messages, stream=True)
        url = self._stream_url(config)
        decoder = StreamDecoder(self.extract_delta, sentinel=self.stream_sentinel)
        idle_timeout = self.timeouts["stream_read_idle"]

        logger.debug_data(
            title=f"{self.provider_type} stream request",
            data={"url": url, "headers": self._headers(config), "request_body": body},
            request_id=context.request_id or "unknown",
            component=f"{self.provider_type}_provider",
            data_flow="to_provider"
        )

        try:
            async with self.client.stream(
                "POST",
                url,
                headers=self._headers(config),
                json=body,
                timeout=self._timeout(stream=True)
            ) as response:
                if response.status_code >= 400:
                    # Сначала читаем тело, чтобы избежать ResponseNotRead
                    await response.aread()
                    self._raise_for_status(response, context)

                async for chunk in response.aiter_bytes():
                    for delta in decoder.feed(chunk):
                        yield delta
                for delta in decoder.finish():
                    yield delta
        except httpx.ReadTimeout as e:
            raise ErrorHandler.handle_stream_idle_timeout(idle_timeout, context, e) from e
        except httpx.RequestError as e:
            raise ErrorHandler.handle_upstream_network_error(e, context) from e

        if decoder.errors:
            logger.warning(f"Stream finished with {len(decoder.errors)} malformed lines skipped", extra={
                "provider_id": self.provider_id,
                "decode_errors": len(decoder.errors)
            })

    async def stream_chat_with_callbacks(
        self,
        config: ProviderConfig,
        messages: List[ChatMessage],
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
        on_complete: CompleteCallback,
    ) -> bool:
        return await forward_stream(
            self.stream_chat(config, messages),
            on_chunk,
            on_error,
            on_complete,
            context=self._context(config)
        )
