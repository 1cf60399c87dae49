"""
Key-value storage used for the encryption key and encrypted credentials.

Storage itself is an external concern; these two implementations exist so the
gateway runs standalone (YAML file) and in tests (memory).
"""

import os
import threading
from typing import Any, Dict, List, Optional

import yaml

from .logging import logger


class KeyValueStore:
    """Minimal interface the vault and credential service depend on."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class YamlFileStore(KeyValueStore):
    """Persists the whole mapping to a single YAML file on every write."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info("Credential store not found, starting empty", extra={
                "storage": {"path": self.path}
            })
            return {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing credential store: {e}", extra={
                "storage": {"path": self.path, "error_type": "yaml_parse_error"}
            })
            return {}

        if not isinstance(data, dict):
            logger.warning("Credential store has unexpected layout, ignoring it", extra={
                "storage": {"path": self.path}
            })
            return {}
        return data

    def _flush(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            yaml.safe_dump(self._data, f, default_flow_style=False, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._flush()

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]
