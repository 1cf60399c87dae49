"""
Error Types and Context Definitions

This module defines standardized error types and context information for
consistent error handling across the gateway.
"""

from enum import Enum
from typing import Dict, Any, Optional
from fastapi import status


class ErrorType(Enum):
    """Enumeration of standard error types in the system."""

    # Validation Errors (400)
    INVALID_REQUEST = ("invalid_request", status.HTTP_400_BAD_REQUEST, "Invalid request: {error_details}")
    INVALID_CONFIG = ("invalid_config", status.HTTP_400_BAD_REQUEST, "Invalid provider configuration: {error_details}")

    # Not Found Errors (404)
    PROVIDER_NOT_FOUND = ("provider_not_found", status.HTTP_404_NOT_FOUND, "Provider '{provider_id}' is not registered")

    # Session Errors (409)
    SESSION_CONFLICT = ("session_conflict", status.HTTP_409_CONFLICT, "Session '{session_id}' already has an open channel")

    # Credential Errors
    DECRYPTION_ERROR = ("decryption_error", status.HTTP_412_PRECONDITION_FAILED, "Stored credentials could not be decrypted: {error_details}")
    KEY_GENERATION_ERROR = ("key_generation_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Encryption key generation failed: {error_details}")

    # Server Errors (500)
    INTERNAL_ERROR = ("internal_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal gateway error: {error_details}")

    # Upstream Errors (dynamic status codes)
    UPSTREAM_HTTP_ERROR = ("upstream_http_error", None, "Provider error: {error_details}")
    UPSTREAM_RATE_LIMIT = ("rate_limit_exceeded", status.HTTP_429_TOO_MANY_REQUESTS, "Provider rate limit exceeded (429 Too Many Requests): {error_details}. Please retry after a delay.")
    UPSTREAM_NETWORK_ERROR = ("upstream_network_error", status.HTTP_502_BAD_GATEWAY, "Network error communicating with provider: {error_details}")
    UPSTREAM_INVALID_RESPONSE = ("upstream_invalid_response", status.HTTP_502_BAD_GATEWAY, "Provider returned an unexpected response: {error_details}")
    STREAM_IDLE_TIMEOUT = ("stream_idle_timeout", status.HTTP_504_GATEWAY_TIMEOUT, "Provider stream was idle for more than {timeout_seconds}s")

    # Stream-local conditions, never returned to an HTTP caller directly
    DECODE_ERROR = ("decode_error", None, "Malformed stream line skipped: {error_details}")
    CHANNEL_DISCONNECTED = ("channel_disconnected", None, "Channel for session '{session_id}' is disconnected")

    def __init__(self, code: str, status_code: Optional[int], message_template: str):
        self.code = code
        self.status_code = status_code
        self.message_template = message_template

    def format_message(self, **kwargs) -> str:
        """Format the error message with provided parameters."""
        try:
            return self.message_template.format(**kwargs)
        except KeyError:
            return self.message_template

    def create_error_detail(self, **kwargs) -> Dict[str, Any]:
        """Create standardized error detail dictionary."""
        return {
            "error": {
                "message": self.format_message(**kwargs),
                "code": self.code
            }
        }


class ErrorContext:
    """Context information for error handling."""

    def __init__(
        self,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        endpoint_path: Optional[str] = None,
        **additional_context
    ):
        self.request_id = request_id
        self.session_id = session_id
        self.provider_id = provider_id
        self.model = model
        self.endpoint_path = endpoint_path
        self.additional_context = additional_context

    def to_log_extra(self) -> Dict[str, Any]:
        """Convert context to logging extra dictionary."""
        extra = {
            "log_type": "error"
        }

        if self.request_id:
            extra["request_id"] = self.request_id
        if self.session_id:
            extra["session_id"] = self.session_id
        if self.provider_id:
            extra["provider_id"] = self.provider_id
        if self.model:
            extra["model_name"] = self.model
        if self.endpoint_path:
            extra["endpoint_path"] = self.endpoint_path

        extra.update(self.additional_context)
        return extra

    def format_kwargs(self) -> Dict[str, Any]:
        """Values available to error message templates."""
        values = {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "provider_id": self.provider_id,
            "model": self.model,
            "endpoint_path": self.endpoint_path,
        }
        values.update(self.additional_context)
        return values
