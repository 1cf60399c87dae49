import os
from typing import Any, Dict, Optional

import yaml

from .logging import logger
from ..utils.deep_merge import merged

DEFAULT_PROVIDERS: Dict[str, Any] = {
    "openai": {"type": "openai"},
    "google": {"type": "google"},
}

DEFAULT_GATEWAY: Dict[str, Any] = {
    "language": None,
    "credential_store": "data/credentials.yaml",
    "timeouts": {
        "connect": 10.0,
        "read": 120.0,
        "write": 30.0,
        "stream_read_idle": 60.0,
    },
    "retry": {
        "max_retries": 3,
        "base_delay": 1.0,
    },
}


class ConfigManager:
    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = config_dir or os.getenv("GATEWAY_CONFIG_DIR", "config")
        self.providers_path = os.path.join(self.config_dir, "providers.yaml")
        self.gateway_path = os.path.join(self.config_dir, "gateway.yaml")
        self.config = self._load_config()

        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        logger.info("Configuration manager initialized", extra={
            "config": {
                "config_dir": self.config_dir,
                "log_level": self.log_level,
                "providers_config_exists": os.path.exists(self.providers_path),
                "gateway_config_exists": os.path.exists(self.gateway_path),
                "providers_count": len(self.config["providers"]),
            }
        })

    def _read_section(self, path: str, section: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {path}, using defaults", extra={
                "config": {
                    "error_type": "file_not_found",
                    "file_path": path
                }
            })
            return None
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file: {e}", extra={
                "config": {
                    "error_type": "yaml_parse_error",
                    "file_path": path,
                    "error_message": str(e)
                }
            })
            return None

        value = data.get(section) if isinstance(data, dict) else None
        if value is not None and not isinstance(value, dict):
            logger.warning(f"Section '{section}' in {path} is not a mapping, ignoring it")
            return None
        return value

    def _load_config(self) -> Dict[str, Any]:
        config = {}

        providers = self._read_section(self.providers_path, "providers")
        config['providers'] = providers if providers else dict(DEFAULT_PROVIDERS)

        gateway = self._read_section(self.gateway_path, "gateway") or {}
        config['gateway'] = self._apply_env_overrides(merged(DEFAULT_GATEWAY, gateway))
        return config

    @staticmethod
    def _apply_env_overrides(gateway: Dict[str, Any]) -> Dict[str, Any]:
        idle_timeout = os.getenv("STREAM_READ_IDLE_TIMEOUT")
        if idle_timeout:
            try:
                gateway["timeouts"]["stream_read_idle"] = float(idle_timeout)
            except ValueError:
                logger.warning(f"Ignoring invalid STREAM_READ_IDLE_TIMEOUT value: {idle_timeout!r}")

        store_path = os.getenv("CREDENTIAL_STORE_PATH")
        if store_path:
            gateway["credential_store"] = store_path

        language = os.getenv("SUMMARY_LANGUAGE")
        if language:
            gateway["language"] = language
        return gateway

    @property
    def providers(self) -> Dict[str, Any]:
        return self.config['providers']

    @property
    def gateway(self) -> Dict[str, Any]:
        return self.config['gateway']

    @property
    def language(self) -> Optional[str]:
        """Язык ответа для суммаризации, None если не задан"""
        return self.gateway.get("language") or None

    @property
    def credential_store_path(self) -> str:
        return self.gateway["credential_store"]

    @property
    def timeouts(self) -> Dict[str, float]:
        return self.gateway["timeouts"]

    @property
    def retry(self) -> Dict[str, Any]:
        return self.gateway["retry"]

    def reload_config(self):
        """
        Re-read gateway settings from disk.

        Provider definitions are read too, but the registry built from them
        at startup is frozen and does not change until restart.
        """
        logger.info("Reloading configuration", extra={
            "config": {
                "operation": "reload_config",
                "config_dir": self.config_dir
            }
        })
        self.config = self._load_config()
        logger.info("Configuration reloaded", extra={
            "config": {
                "operation": "reload_complete",
                "providers_count": len(self.config['providers']),
                "language": self.language,
            }
        })
