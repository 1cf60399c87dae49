import uuid
from typing import List, Optional, Tuple, Union
from urllib.parse import urlparse

from .credential_service import CredentialService
from .relay import Channel, SessionRelay
from ..core.config_manager import ConfigManager
from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.exceptions import GatewayError
from ..core.logging import logger
from ..models import (
    ChatMessage,
    ChatMessagesRequest,
    ChatResponse,
    ChatSession,
    CredentialCheck,
    ModelInfo,
    ProviderConfig,
    SessionState,
    StreamStarted,
    SummaryRequest,
)
from ..prompts import build_summary_messages
from ..providers import BaseProvider, ProviderRegistry


class ChatGateway:
    """
    Entry point for chat and summary requests.

    Resolves stored credentials into a validated provider config, builds the
    message list and either returns the adapter's response or hands the
    stream over to the session relay.
    """

    def __init__(
        self,
        credentials: CredentialService,
        registry: ProviderRegistry,
        relay: SessionRelay,
        config_manager: ConfigManager,
    ):
        self.credentials = credentials
        self.registry = registry
        self.relay = relay
        self.config_manager = config_manager

    @staticmethod
    def _transition(state: SessionState, context: ErrorContext) -> SessionState:
        logger.debug(f"Request state -> {state.value}", extra={
            "request_id": context.request_id,
            "session_id": context.session_id,
            "state": state.value
        })
        return state

    async def handle(
        self,
        request: Union[SummaryRequest, ChatMessagesRequest],
        channel: Optional[Channel] = None,
        request_id: Optional[str] = None,
    ) -> Union[ChatResponse, StreamStarted]:
        context = ErrorContext(request_id=request_id, session_id=request.session_id)
        state = self._transition(SessionState.PENDING, context)

        try:
            state = self._transition(SessionState.VALIDATING_CONFIG, context)
            adapter, config = await self._resolve_config(context)

            state = self._transition(SessionState.DISPATCHING, context)
            messages = self._build_messages(request)

            if request.stream:
                state = self._transition(SessionState.STREAMING, context)
                return await self._start_stream(request, adapter, config, messages, channel, context)

            state = self._transition(SessionState.RESPONDING, context)
            response = await adapter.chat(config, messages)
            state = self._transition(SessionState.COMPLETE, context)
            return response
        except GatewayError:
            self._transition(SessionState.ERRORED, context)
            raise
        except Exception as e:
            self._transition(SessionState.ERRORED, context)
            raise ErrorHandler.handle_internal_error(
                error_details=f"unexpected failure while {state.value}: {e}",
                context=context,
                original_exception=e
            ) from e

    async def _resolve_config(
        self,
        context: ErrorContext,
        provider_id: Optional[str] = None,
    ) -> Tuple[BaseProvider, ProviderConfig]:
        stored = await self.credentials.load(provider_id)
        if stored is None or not stored.provider_id:
            raise ErrorHandler.handle_invalid_config("no provider is configured", context)

        context.provider_id = stored.provider_id
        if not stored.api_key:
            raise ErrorHandler.handle_invalid_config("api_key is required", context)

        adapter = self.registry.resolve(stored.provider_id)

        base_url = stored.base_url or adapter.get_default_endpoint()
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ErrorHandler.handle_invalid_config(f"base_url '{base_url}' is not an absolute http(s) URL", context)

        model = stored.model or adapter.get_default_model()
        if not model:
            raise ErrorHandler.handle_invalid_config("model is required for this provider", context)
        context.model = model

        return adapter, ProviderConfig(
            provider_id=stored.provider_id,
            api_key=stored.api_key,
            base_url=base_url.rstrip("/"),
            model=model,
        )

    def _build_messages(self, request: Union[SummaryRequest, ChatMessagesRequest]) -> List[ChatMessage]:
        if isinstance(request, SummaryRequest):
            return build_summary_messages(request, self.config_manager.language)
        return list(request.messages)

    async def _start_stream(
        self,
        request: Union[SummaryRequest, ChatMessagesRequest],
        adapter: BaseProvider,
        config: ProviderConfig,
        messages: List[ChatMessage],
        channel: Optional[Channel],
        context: ErrorContext,
    ) -> StreamStarted:
        session_id = request.session_id or uuid.uuid4().hex
        context.session_id = session_id

        channel = await self.relay.open_channel(session_id, channel)
        session = ChatSession(
            session_id=session_id,
            provider_id=config.provider_id,
            model=config.model,
            messages=messages,
            streaming=True,
            state=SessionState.STREAMING,
        )

        ack = StreamStarted(session_id=session_id)
        try:
            await channel.acknowledge(ack)
        except GatewayError:
            await self.relay.close_channel(session_id)
            raise

        self.relay.start(session, adapter.stream_chat(config, messages))
        logger.info(f"Streaming session {session_id} started", extra={
            "request_id": context.request_id,
            "session_id": session_id,
            "provider_id": config.provider_id,
            "model_name": config.model
        })
        return ack

    async def check_credentials(self, provider_id: Optional[str] = None) -> CredentialCheck:
        return await self.credentials.check(provider_id)

    async def list_models(self, provider_id: Optional[str] = None, request_id: Optional[str] = None) -> List[ModelInfo]:
        context = ErrorContext(request_id=request_id, provider_id=provider_id)
        with logger.request_context("list_models", request_id=request_id or "", provider_id=provider_id):
            try:
                adapter, config = await self._resolve_config(context, provider_id)
                return await adapter.list_models(config)
            except GatewayError:
                raise
            except Exception as e:
                raise ErrorHandler.handle_internal_error(
                    error_details=f"unexpected failure while listing models: {e}",
                    context=context,
                    original_exception=e
                ) from e
