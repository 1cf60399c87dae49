"""
Data model shared by the gateway components.

Pydantic models cross the HTTP/WebSocket boundary or get persisted;
dataclasses are in-process value objects.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    PENDING = "pending"
    VALIDATING_CONFIG = "validating_config"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    RESPONDING = "responding"
    COMPLETE = "complete"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.ERRORED)


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class ProviderConfig:
    """Decrypted provider settings. Lives only for the duration of a request."""
    provider_id: str
    api_key: str
    base_url: str
    model: str

    def __repr__(self) -> str:
        return (f"ProviderConfig(provider_id={self.provider_id!r}, base_url={self.base_url!r}, "
                f"model={self.model!r}, api_key='***')")


class ModelInfo(BaseModel):
    id: str
    display_name: Optional[str] = None
    created_at: Optional[int] = None
    owned_by: Optional[str] = None


@dataclass(frozen=True)
class StreamDelta:
    content: str
    role: str = "assistant"


@dataclass
class ChatSession:
    session_id: str
    provider_id: str
    model: str
    messages: List[ChatMessage]
    streaming: bool = True
    state: SessionState = SessionState.STREAMING
    accumulated_content: str = ""
    error: Optional[str] = None


class EncryptedCredential(BaseModel):
    """The only form in which provider credentials are persisted."""
    provider_id: str
    encrypted_api_key: str
    encrypted_base_url: Optional[str] = None
    key_version: str
    model: Optional[str] = None


@dataclass(frozen=True)
class EncryptionKey:
    device_component: str
    random_component: str
    version: str

    def __str__(self) -> str:
        return f"{self.device_component}.{self.random_component}.{self.version}"

    def __repr__(self) -> str:
        return f"EncryptionKey(version={self.version!r})"


# Запросы от клиента

class SummaryRequest(BaseModel):
    kind: Literal["summary"] = "summary"
    title: str
    content: str
    session_id: Optional[str] = None
    stream: bool = False


class ChatMessagesRequest(BaseModel):
    kind: Literal["chat"] = "chat"
    messages: List[ChatMessage] = Field(min_length=1)
    session_id: Optional[str] = None
    stream: bool = False


ChatRequest = Annotated[Union[SummaryRequest, ChatMessagesRequest], Field(discriminator="kind")]


# Сообщения канала сессии

class StreamStarted(BaseModel):
    kind: Literal["stream_started"] = "stream_started"
    session_id: str


class StreamChunk(BaseModel):
    kind: Literal["chunk"] = "chunk"
    content: str
    role: str = "assistant"


class StreamError(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    code: str


class StreamDone(BaseModel):
    kind: Literal["done"] = "done"


ChannelMessage = Annotated[
    Union[StreamStarted, StreamChunk, StreamError, StreamDone],
    Field(discriminator="kind")
]


class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str


class Choice(BaseModel):
    index: int = 0
    message: ResponseMessage
    finish_reason: Optional[str] = "stop"


class ChatResponse(BaseModel):
    id: str
    model: str
    choices: List[Choice] = Field(default_factory=list)

    @property
    def content(self) -> str:
        return self.choices[0].message.content if self.choices else ""


class CredentialSummary(BaseModel):
    provider_id: str
    base_url: Optional[str] = None
    api_key_present: bool
    model: Optional[str] = None


class CredentialCheck(BaseModel):
    """Never carries the api key itself."""
    is_configured: bool
    config: Optional[CredentialSummary] = None
    reentry_required: bool = False


class CredentialUpdate(BaseModel):
    api_key: str = Field(min_length=1)
    base_url: Optional[str] = None
    model: Optional[str] = None
    activate: bool = True

