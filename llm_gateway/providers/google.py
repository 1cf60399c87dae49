import uuid
from typing import Any, Dict, List, Optional

from .base import BaseProvider
from ..core.error_handling import ErrorHandler, ErrorContext
from ..models import ChatMessage, ChatResponse, Choice, ModelInfo, ProviderConfig, ResponseMessage, StreamDelta

DEFAULT_GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1024,
}

# assistant -> model, остальные роли в contents идут как user
ROLE_MAPPING = {"assistant": "model", "user": "user"}


class GoogleProvider(BaseProvider):
    """Generative-content wire format (Gemini API)."""

    provider_type = "google"
    default_endpoint = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "models/gemini-pro"

    @staticmethod
    def model_path(model: str) -> str:
        """Bare model names get the ``models/`` prefix the API expects."""
        return model if model.startswith(("models/", "tunedModels/")) else f"models/{model}"

    def _headers(self, config: ProviderConfig) -> Dict[str, str]:
        return {
            "x-goog-api-key": config.api_key,
            "Content-Type": "application/json",
        }

    def _models_url(self, config: ProviderConfig) -> str:
        return f"{config.base_url}/models"

    def _chat_url(self, config: ProviderConfig) -> str:
        return f"{config.base_url}/{self.model_path(config.model)}:generateContent"

    def _stream_url(self, config: ProviderConfig) -> str:
        return f"{config.base_url}/{self.model_path(config.model)}:streamGenerateContent?alt=sse"

    def _parse_models(self, data: Any) -> List[ModelInfo]:
        items = data.get("models", []) if isinstance(data, dict) else []
        return [
            ModelInfo(
                id=item["name"],
                display_name=item.get("displayName"),
                owned_by=self.provider_id,
            )
            for item in items
            if isinstance(item, dict) and item.get("name")
        ]

    def _build_request(self, config: ProviderConfig, messages: List[ChatMessage], stream: bool) -> Dict[str, Any]:
        system_parts = [{"text": m.content} for m in messages if m.role == "system"]
        contents = [
            {"role": ROLE_MAPPING[m.role], "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ]

        request_body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": dict(DEFAULT_GENERATION_CONFIG),
        }
        if system_parts:
            request_body["systemInstruction"] = {"parts": system_parts}

        return self._with_options(request_body)

    @staticmethod
    def _candidate_text(candidate: Any) -> str:
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        texts = [part.get("text") for part in parts if isinstance(part, dict)]
        return "".join(text for text in texts if isinstance(text, str))

    @staticmethod
    def _finish_reason(candidate: Any) -> Optional[str]:
        reason = candidate.get("finishReason") if isinstance(candidate, dict) else None
        return reason.lower() if isinstance(reason, str) and reason else None

    def _parse_chat_response(self, config: ProviderConfig, data: Any, context: ErrorContext) -> ChatResponse:
        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not isinstance(candidates, list) or not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason") if isinstance(data, dict) else None
            details = f"response has no candidates (blockReason: {block_reason})" if block_reason \
                else "response has no candidates"
            raise ErrorHandler.handle_upstream_invalid_response(details, context)

        choices = [
            Choice(
                index=candidate.get("index", index) if isinstance(candidate, dict) else index,
                message=ResponseMessage(role="assistant", content=self._candidate_text(candidate)),
                finish_reason=self._finish_reason(candidate),
            )
            for index, candidate in enumerate(candidates)
        ]

        return ChatResponse(
            id=data.get("responseId") or uuid.uuid4().hex,
            model=config.model,
            choices=choices,
        )

    def extract_delta(self, record: Any) -> Optional[StreamDelta]:
        if not isinstance(record, dict):
            return None
        candidates = record.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return None
        text = self._candidate_text(candidates[0])
        if not text:
            return None
        return StreamDelta(content=text, role="assistant")
