import asyncio
import os
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from pydantic import TypeAdapter, ValidationError

from ..core.config_manager import ConfigManager
from ..core.error_handling import ErrorHandler, ErrorContext
from ..core.exceptions import ChannelDisconnected, GatewayError
from ..core.logging import logger
from ..core.storage import KeyValueStore, YamlFileStore
from ..core.vault import CredentialVault
from ..models import ChatRequest, CredentialUpdate, StreamError
from ..providers import build_provider_registry
from ..services.chat_gateway import ChatGateway
from ..services.credential_service import CredentialService
from ..services.relay import QueueChannel, SessionRelay, WebSocketChannel
from .middleware import RequestLoggerMiddleware

chat_request_adapter = TypeAdapter(ChatRequest)


def parse_chat_request(payload, context: ErrorContext):
    try:
        return chat_request_adapter.validate_python(payload)
    except ValidationError as e:
        raise ErrorHandler.handle_invalid_request(
            "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()),
            context
        ) from e


def sse_event(message) -> str:
    return f"data: {message.model_dump_json()}\n\n"


def create_app(
    config_manager: Optional[ConfigManager] = None,
    store: Optional[KeyValueStore] = None,
    httpx_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    app = FastAPI(title="LLM Stream Gateway")
    app.state.config_manager = config_manager or ConfigManager()
    app.state.store = store
    app.state.httpx_client = httpx_client

    @app.on_event("startup")
    async def startup_event():
        config_manager = app.state.config_manager

        # Initialize httpx client
        app.state.owns_httpx_client = app.state.httpx_client is None
        if app.state.owns_httpx_client:
            app.state.httpx_client = httpx.AsyncClient()

        if app.state.store is None:
            app.state.store = YamlFileStore(config_manager.credential_store_path)

        app.state.vault = CredentialVault(app.state.store)
        await app.state.vault.initialize()

        app.state.credentials = CredentialService(app.state.store, app.state.vault)
        app.state.registry = build_provider_registry(app.state.httpx_client, config_manager)
        app.state.relay = SessionRelay()
        app.state.gateway = ChatGateway(
            app.state.credentials,
            app.state.registry,
            app.state.relay,
            config_manager
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        for session_id in app.state.relay.active_sessions():
            await app.state.relay.close_channel(session_id)

        # Close httpx client
        if app.state.owns_httpx_client:
            await app.state.httpx_client.aclose()

    app.add_middleware(RequestLoggerMiddleware)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post("/v1/chat")
    async def chat(request: Request):
        request_id = getattr(request.state, 'request_id', 'unknown')
        context = ErrorContext(request_id=request_id, endpoint_path="/v1/chat")

        try:
            payload = await request.json()
        except ValueError as e:
            raise ErrorHandler.handle_invalid_request("request body is not valid JSON", context) from e
        chat_request = parse_chat_request(payload, context)

        gateway: ChatGateway = app.state.gateway
        if not chat_request.stream:
            return await gateway.handle(chat_request, request_id=request_id)

        channel = QueueChannel()
        ack = await gateway.handle(chat_request, channel=channel, request_id=request_id)

        async def event_stream():
            try:
                yield sse_event(ack)
                async for message in channel:
                    yield sse_event(message)
            finally:
                # Клиент отключился или стрим завершен: закрываем канал и отменяем чтение
                await app.state.relay.close_channel(ack.session_id)

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Session-ID": ack.session_id}
        )

    @app.websocket("/v1/sessions/{session_id}")
    async def session_socket(websocket: WebSocket, session_id: str):
        await websocket.accept()
        request_id = os.urandom(8).hex()
        context = ErrorContext(request_id=request_id, session_id=session_id, endpoint_path="/v1/sessions")
        channel = WebSocketChannel(websocket, session_id=session_id)

        closed = asyncio.Event()

        async def mark_closed(_channel):
            closed.set()

        channel.on_close(mark_closed)

        try:
            payload = await websocket.receive_json()
            chat_request = parse_chat_request(payload, context)
            chat_request = chat_request.model_copy(update={"session_id": session_id, "stream": True})
            await app.state.gateway.handle(chat_request, channel=channel, request_id=request_id)
        except WebSocketDisconnect:
            logger.info(f"WebSocket client for session {session_id} left before the stream started",
                        session_id=session_id)
            return
        except GatewayError as e:
            if not channel.is_closed:
                try:
                    await channel.send(StreamError(message=e.message, code=e.error_code))
                except ChannelDisconnected:
                    logger.debug(f"Could not report error to session {session_id}, client is gone",
                                 session_id=session_id)
                await channel.close()
            return

        receiver = asyncio.create_task(websocket.receive())
        waiter = asyncio.create_task(closed.wait())
        done, pending = await asyncio.wait({receiver, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        if receiver in done:
            if receiver.exception() is not None:
                logger.warning(f"WebSocket receive failed for session {session_id}: {receiver.exception()}",
                               session_id=session_id)
            elif receiver.result().get("type") == "websocket.disconnect":
                logger.info(f"WebSocket client for session {session_id} disconnected", session_id=session_id)
        # Любое сообщение клиента после запроса или его отключение завершают сессию
        await app.state.relay.close_channel(session_id)

    @app.get("/v1/models")
    async def list_models(request: Request, provider_id: Optional[str] = None):
        request_id = getattr(request.state, 'request_id', 'unknown')
        models = await app.state.gateway.list_models(provider_id, request_id=request_id)
        return {"object": "list", "data": [model.model_dump() for model in models]}

    @app.get("/v1/providers")
    async def list_providers():
        registry = app.state.registry
        providers = []
        for provider_id in registry.provider_ids():
            adapter = registry.resolve(provider_id)
            providers.append({
                "id": provider_id,
                "type": adapter.provider_type,
                "default_endpoint": adapter.get_default_endpoint(),
                "default_model": adapter.get_default_model(),
            })
        return {"data": providers}

    @app.get("/v1/credentials")
    async def check_credentials(provider_id: Optional[str] = None):
        return await app.state.gateway.check_credentials(provider_id)

    @app.put("/v1/credentials/{provider_id}")
    async def save_credentials(provider_id: str, update: CredentialUpdate):
        # Проверяем, что провайдер зарегистрирован
        app.state.registry.resolve(provider_id)
        await app.state.credentials.save(
            provider_id,
            update.api_key,
            base_url=update.base_url,
            model=update.model,
            activate=update.activate
        )
        return await app.state.credentials.check(provider_id)

    @app.delete("/v1/credentials/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_credentials(provider_id: str):
        if not await app.state.credentials.delete(provider_id):
            raise ErrorHandler.handle_invalid_request(
                f"no credentials stored for provider '{provider_id}'",
                ErrorContext(provider_id=provider_id)
            )
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/v1/credentials/rotate")
    async def rotate_key():
        key_version = await app.state.credentials.rotate_key()
        return {"key_version": key_version}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
