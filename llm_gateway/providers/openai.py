import uuid
from typing import Any, Dict, List, Optional

from .base import BaseProvider
from ..core.error_handling import ErrorHandler, ErrorContext
from ..models import ChatMessage, ChatResponse, Choice, ModelInfo, ProviderConfig, ResponseMessage, StreamDelta


class OpenAICompatibleProvider(BaseProvider):
    """Chat-completions wire format (OpenAI and compatible backends)."""

    provider_type = "openai"
    default_endpoint = "https://api.openai.com/v1"
    default_model = None
    stream_sentinel = "[DONE]"

    def _headers(self, config: ProviderConfig) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }

    def _models_url(self, config: ProviderConfig) -> str:
        return f"{config.base_url}/models"

    def _chat_url(self, config: ProviderConfig) -> str:
        return f"{config.base_url}/chat/completions"

    def _stream_url(self, config: ProviderConfig) -> str:
        return self._chat_url(config)

    def _parse_models(self, data: Any) -> List[ModelInfo]:
        items = data.get("data", []) if isinstance(data, dict) else []
        return [
            ModelInfo(
                id=item["id"],
                display_name=item.get("id"),
                created_at=item.get("created"),
                owned_by=item.get("owned_by"),
            )
            for item in items
            if isinstance(item, dict) and item.get("id")
        ]

    def _build_request(self, config: ProviderConfig, messages: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        request_body = {
            "model": config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": stream,
        }
        # Merge options from provider config into the request_body
        request_body = self._with_options(request_body)
        request_body["stream"] = stream
        return request_body

    def _parse_chat_response(self, config: ProviderConfig, data: Any, context: ErrorContext) -> ChatResponse:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise ErrorHandler.handle_upstream_invalid_response("response has no choices", context)

        parsed = []
        for index, choice in enumerate(choices):
            if not isinstance(choice, dict):
                raise ErrorHandler.handle_upstream_invalid_response(f"choice {index} is not an object", context)
            message = choice.get("message")
            if not isinstance(message, dict):
                message = {}
            parsed.append(Choice(
                index=choice.get("index", index),
                message=ResponseMessage(
                    role=message.get("role") or "assistant",
                    content=message.get("content") or ""
                ),
                finish_reason=choice.get("finish_reason"),
            ))

        return ChatResponse(
            id=data.get("id") or uuid.uuid4().hex,
            model=data.get("model") or config.model,
            choices=parsed,
        )

    def extract_delta(self, record: Any) -> Optional[StreamDelta]:
        if not isinstance(record, dict):
            return None
        choices = record.get("choices")
        if not isinstance(choices, list) or not choices:
            # usage-only chunk
            return None
        choice = choices[0]
        delta = choice.get("delta") if isinstance(choice, dict) else None
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if not isinstance(content, str) or not content:
            return None
        role = delta.get("role")
        return StreamDelta(content=content, role=role if isinstance(role, str) and role else "assistant")
