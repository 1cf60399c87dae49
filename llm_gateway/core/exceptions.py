"""
Typed gateway exceptions.

Every error kind the gateway surfaces is an ``HTTPException`` subclass, so the
FastAPI layer renders it without extra handlers while in-process callers can
still catch the specific kind.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

from .error_handling.error_types import ErrorType


class GatewayError(HTTPException):
    """Base class for all errors raised by the gateway."""

    error_type: ErrorType = ErrorType.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        self.message = message
        self.error_code = error_code or self.error_type.code
        self.original_exception = original_exception
        if detail is None:
            detail = {"error": {"message": message, "code": self.error_code}}
        super().__init__(
            status_code=status_code or self.error_type.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
        )

    def __str__(self) -> str:
        return self.message


class InvalidRequest(GatewayError):
    error_type = ErrorType.INVALID_REQUEST


class InvalidConfig(GatewayError):
    """Missing or malformed api key, provider id, model or base URL."""
    error_type = ErrorType.INVALID_CONFIG


class ProviderNotFound(GatewayError):
    error_type = ErrorType.PROVIDER_NOT_FOUND


class SessionConflict(GatewayError):
    error_type = ErrorType.SESSION_CONFLICT


class DecryptionError(GatewayError):
    """Ciphertext is malformed or fails authentication; secrets must be re-entered."""
    error_type = ErrorType.DECRYPTION_ERROR


class KeyGenerationError(GatewayError):
    error_type = ErrorType.KEY_GENERATION_ERROR


class InternalError(GatewayError):
    error_type = ErrorType.INTERNAL_ERROR


class UpstreamHttpError(GatewayError):
    """Non-2xx response from a provider backend."""
    error_type = ErrorType.UPSTREAM_HTTP_ERROR


class UpstreamRateLimitError(UpstreamHttpError):
    error_type = ErrorType.UPSTREAM_RATE_LIMIT


class UpstreamNetworkError(GatewayError):
    error_type = ErrorType.UPSTREAM_NETWORK_ERROR


class UpstreamInvalidResponse(GatewayError):
    error_type = ErrorType.UPSTREAM_INVALID_RESPONSE


class StreamIdleTimeout(GatewayError):
    error_type = ErrorType.STREAM_IDLE_TIMEOUT


class DecodeError(GatewayError):
    """A single streamed line could not be parsed. Recovered locally."""
    error_type = ErrorType.DECODE_ERROR


class ChannelDisconnected(GatewayError):
    """The remote end of a session channel went away."""
    error_type = ErrorType.CHANNEL_DISCONNECTED


EXCEPTION_CLASSES = {
    ErrorType.INVALID_REQUEST: InvalidRequest,
    ErrorType.INVALID_CONFIG: InvalidConfig,
    ErrorType.PROVIDER_NOT_FOUND: ProviderNotFound,
    ErrorType.SESSION_CONFLICT: SessionConflict,
    ErrorType.DECRYPTION_ERROR: DecryptionError,
    ErrorType.KEY_GENERATION_ERROR: KeyGenerationError,
    ErrorType.INTERNAL_ERROR: InternalError,
    ErrorType.UPSTREAM_HTTP_ERROR: UpstreamHttpError,
    ErrorType.UPSTREAM_RATE_LIMIT: UpstreamRateLimitError,
    ErrorType.UPSTREAM_NETWORK_ERROR: UpstreamNetworkError,
    ErrorType.UPSTREAM_INVALID_RESPONSE: UpstreamInvalidResponse,
    ErrorType.STREAM_IDLE_TIMEOUT: StreamIdleTimeout,
    ErrorType.DECODE_ERROR: DecodeError,
    ErrorType.CHANNEL_DISCONNECTED: ChannelDisconnected,
}
