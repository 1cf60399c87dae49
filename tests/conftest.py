"""
Pytest configuration and fixtures for the LLM stream gateway test suite.
"""

import os
import tempfile

# Логи тестов не должны попадать в рабочий каталог
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="llm-gateway-logs-"))

from typing import List

import httpx
import pytest
import pytest_asyncio

from llm_gateway.core.config_manager import ConfigManager
from llm_gateway.core.storage import MemoryStore
from llm_gateway.core.vault import CredentialVault
from llm_gateway.models import ChatMessage
from llm_gateway.providers import build_provider_registry
from llm_gateway.services.credential_service import CredentialService
from llm_gateway.services.relay import SessionRelay
from tests.stream_utils import RecordingTransport

PROVIDERS_YAML = """
providers:
  openai:
    type: openai
    base_url: https://api.openai.test/v1
  google:
    type: google
    base_url: https://generativelanguage.test/v1beta
"""

GATEWAY_YAML = """
gateway:
  language:
  timeouts:
    connect: 5
    read: 10
    write: 5
    stream_read_idle: 2
  retry:
    max_retries: 2
    base_delay: 0
"""


@pytest.fixture
def config_dir(tmp_path, monkeypatch) -> str:
    """Config directory with two providers and fast retries."""
    for name in ("STREAM_READ_IDLE_TIMEOUT", "CREDENTIAL_STORE_PATH", "SUMMARY_LANGUAGE", "GATEWAY_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "providers.yaml").write_text(PROVIDERS_YAML)
    (tmp_path / "gateway.yaml").write_text(GATEWAY_YAML)
    return str(tmp_path)


@pytest.fixture
def config_manager(config_dir) -> ConfigManager:
    return ConfigManager(config_dir)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest_asyncio.fixture
async def vault(memory_store) -> CredentialVault:
    vault = CredentialVault(memory_store)
    await vault.initialize()
    return vault


@pytest_asyncio.fixture
async def credentials(memory_store, vault) -> CredentialService:
    return CredentialService(memory_store, vault)


@pytest.fixture
def relay() -> SessionRelay:
    return SessionRelay()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def http_client(transport) -> httpx.AsyncClient:
    """HTTP client whose requests never leave the process."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(transport)) as client:
        yield client


@pytest.fixture
def registry(http_client, config_manager):
    return build_provider_registry(http_client, config_manager)


@pytest.fixture
def sample_messages() -> List[ChatMessage]:
    """Sample chat messages for testing."""
    return [
        ChatMessage(role="system", content="Be brief."),
        ChatMessage(role="user", content="Hello! Tell me a short joke."),
    ]


@pytest.fixture
def unicode_messages() -> List[ChatMessage]:
    """Unicode and emoji messages for testing."""
    return [
        ChatMessage(role="user", content="Что такое искусственный интеллект? 🤖🚀")
    ]
