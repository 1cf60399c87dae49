"""
Universal Logger for debugging and diagnostics.

A thin wrapper over the stdlib logger configured in config.py. Keyword
arguments become ``extra`` fields on the record.
"""

import logging
import json
import time
from contextlib import contextmanager
from typing import Any, Dict
from .config import setup_logging

# Header names whose values must never reach the log files
SENSITIVE_KEYS = {"authorization", "x-goog-api-key", "api_key", "apikey", "encryption_key"}


def mask_secrets(data: Any) -> Any:
    """Return a copy of ``data`` with credential-bearing values masked."""
    if isinstance(data, dict):
        masked: Dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
                masked[key] = "***"
            else:
                masked[key] = mask_secrets(value)
        return masked
    if isinstance(data, list):
        return [mask_secrets(item) for item in data]
    return data


class Logger:
    """
    Simple Logger for effective debugging and diagnostics.

    Full payload dumps are only produced when LOG_LEVEL=DEBUG is enabled.
    """

    def __init__(self):
        self._logger = setup_logging()

    def is_debug_enabled(self) -> bool:
        """Check if debug logging is enabled."""
        return self._logger.isEnabledFor(logging.DEBUG)

    def info(self, message: str, **kwargs):
        if kwargs:
            self._logger.info(message, extra=kwargs)
        else:
            self._logger.info(message)

    def debug(self, message: str, **kwargs):
        if kwargs:
            self._logger.debug(message, extra=kwargs)
        else:
            self._logger.debug(message)

    def warning(self, message: str, **kwargs):
        if kwargs:
            self._logger.warning(message, extra=kwargs)
        else:
            self._logger.warning(message)

    def error(self, message: str, **kwargs):
        """Log an error message together with the active exception, if any."""
        if kwargs:
            self._logger.error(message, extra=kwargs, exc_info=True)
        else:
            self._logger.error(message, exc_info=True)

    def request(self, operation: str, request_id: str, **kwargs):
        """Log a request with context."""
        message_parts = [f"Request: {operation}"]
        if 'provider_id' in kwargs:
            message_parts.append(f"provider={kwargs['provider_id']}")
        if 'session_id' in kwargs:
            message_parts.append(f"session={kwargs['session_id']}")

        message = " | ".join(message_parts)
        self.info(message, request_id=request_id, **kwargs)

    def response(self, operation: str, request_id: str, status_code: int = 200, **kwargs):
        """Log a response with context."""
        message_parts = [f"Response: {operation}", f"status={status_code}"]
        if 'processing_time_ms' in kwargs:
            message_parts.append(f"time={kwargs['processing_time_ms']}ms")

        message = " | ".join(message_parts)
        self.info(message, request_id=request_id, **kwargs)

    def debug_data(self, title: str, data: Any, request_id: str, **kwargs):
        """Log debug data with full details when LOG_LEVEL=DEBUG."""
        if not self.is_debug_enabled():
            return

        if isinstance(data, (dict, list)):
            data_str = json.dumps(mask_secrets(data), indent=2, ensure_ascii=False, default=str)
        else:
            data_str = str(data)

        message = f"DEBUG: {title}"
        if 'component' in kwargs:
            message += f" | component={kwargs['component']}"
        if 'data_flow' in kwargs:
            message += f" | flow={kwargs['data_flow']}"

        self.debug(f"{message}\n{data_str}", request_id=request_id, **kwargs)

    def performance(self, operation: str, start_time: float, request_id: str, **kwargs):
        """Log performance metrics."""
        duration_ms = int((time.time() - start_time) * 1000)
        message = " | ".join([f"Performance: {operation}", f"duration={duration_ms}ms"])
        self.info(message, request_id=request_id, duration_ms=duration_ms, **kwargs)

    @contextmanager
    def request_context(self, operation: str, request_id: str, **kwargs):
        """
        Context manager for request-scoped logging.

        Logs the start, the failure (re-raised) and the completion with duration.
        """
        start_time = time.time()
        self.request(operation=operation, request_id=request_id, **kwargs)

        try:
            yield
        except Exception as e:
            self.error(f"{operation} failed: {str(e)}", request_id=request_id, **kwargs)
            raise
        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            self.info(f"Completed: {operation} | duration={duration_ms}ms", request_id=request_id, **kwargs)
