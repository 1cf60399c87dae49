"""
Main Error Handler

This module provides the main error handling utility for creating the typed
gateway exceptions with proper logging.
"""

import json
from typing import Optional

import httpx

from .error_types import ErrorType, ErrorContext
from .error_logger import ErrorLogger
from .. import exceptions


class ErrorHandler:
    """Centralized error handling utility."""

    @staticmethod
    def create_http_exception(
        error_type: ErrorType,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
        log_error: bool = True,
        status_code: Optional[int] = None,
        **format_kwargs
    ) -> "exceptions.GatewayError":
        """
        Create a typed gateway exception with proper logging.

        Args:
            error_type: The type of error to create
            context: Error context information
            original_exception: Original exception that caused this error
            log_error: Whether to log the error
            status_code: Overrides the status of error types without a fixed one
            **format_kwargs: Additional kwargs for message formatting

        Returns:
            GatewayError subclass matching ``error_type``
        """
        if context is None:
            context = ErrorContext()

        format_dict = {**context.format_kwargs(), **format_kwargs}
        error_detail = error_type.create_error_detail(**format_dict)

        resolved_status = status_code or error_type.status_code
        if error_type == ErrorType.UPSTREAM_HTTP_ERROR and resolved_status:
            error_detail["error"]["code"] = f"upstream_http_error_{resolved_status}"

        if log_error:
            ErrorLogger.log_error(
                error_type=error_type,
                context=context,
                original_exception=original_exception,
                additional_data={"error_detail": error_detail}
            )

        exception_class = exceptions.EXCEPTION_CLASSES.get(error_type, exceptions.GatewayError)
        return exception_class(
            message=error_detail["error"]["message"],
            status_code=resolved_status,
            error_code=error_detail["error"]["code"],
            detail=error_detail,
            original_exception=original_exception,
        )

    @staticmethod
    def handle_invalid_request(error_details: str, context: ErrorContext) -> "exceptions.InvalidRequest":
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.INVALID_REQUEST,
            context=context,
            error_details=error_details
        )

    @staticmethod
    def handle_invalid_config(error_details: str, context: ErrorContext) -> "exceptions.InvalidConfig":
        """Handle missing or malformed provider configuration."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.INVALID_CONFIG,
            context=context,
            error_details=error_details
        )

    @staticmethod
    def handle_provider_not_found(provider_id: str, context: ErrorContext) -> "exceptions.ProviderNotFound":
        """Handle provider not found error."""
        context.provider_id = provider_id
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.PROVIDER_NOT_FOUND,
            context=context
        )

    @staticmethod
    def handle_session_conflict(session_id: str, context: ErrorContext) -> "exceptions.SessionConflict":
        context.session_id = session_id
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.SESSION_CONFLICT,
            context=context
        )

    @staticmethod
    def handle_decryption_error(
        error_details: str,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> "exceptions.DecryptionError":
        """Handle failed credential decryption."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.DECRYPTION_ERROR,
            context=context,
            original_exception=original_exception,
            error_details=error_details
        )

    @staticmethod
    def handle_key_generation_error(error_details: str, context: ErrorContext) -> "exceptions.KeyGenerationError":
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.KEY_GENERATION_ERROR,
            context=context,
            error_details=error_details
        )

    @staticmethod
    def extract_upstream_message(status_code: int, response_text: str) -> str:
        """
        Pull a human readable message out of a provider error body.

        JSON bodies are tried first (``{"error": {"message": ...}}``,
        ``{"message": ...}`` or a list wrapping either); anything else falls
        back to the raw text together with the status code.
        """
        error_message = f"Provider returned {status_code}: {response_text}"
        try:
            error_json = json.loads(response_text)
        except (json.JSONDecodeError, TypeError):
            return error_message

        if isinstance(error_json, list) and error_json:
            error_json = error_json[0]
        if not isinstance(error_json, dict):
            return error_message

        error_obj = error_json.get("error")
        if isinstance(error_obj, dict) and error_obj.get("message"):
            return str(error_obj["message"])
        if isinstance(error_obj, str) and error_obj:
            return error_obj
        if error_json.get("message"):
            return str(error_json["message"])
        return error_message

    @staticmethod
    def handle_upstream_http_error(
        status_code: int,
        response_text: str,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> "exceptions.UpstreamHttpError":
        """Handle a non-2xx provider response."""
        error_details = ErrorHandler.extract_upstream_message(status_code, response_text)
        ErrorLogger.log_provider_error(
            provider_id=context.provider_id or "unknown",
            error_details=response_text,
            status_code=status_code,
            context=context,
            original_exception=original_exception
        )

        if status_code == 429:
            return ErrorHandler.create_http_exception(
                error_type=ErrorType.UPSTREAM_RATE_LIMIT,
                context=context,
                original_exception=original_exception,
                log_error=False,
                error_details=error_details
            )

        return ErrorHandler.create_http_exception(
            error_type=ErrorType.UPSTREAM_HTTP_ERROR,
            context=context,
            original_exception=original_exception,
            log_error=False,  # Already logged above
            status_code=status_code,
            error_details=error_details
        )

    @staticmethod
    def handle_upstream_network_error(
        original_exception: httpx.RequestError,
        context: ErrorContext
    ) -> "exceptions.UpstreamNetworkError":
        """Handle provider network errors."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.UPSTREAM_NETWORK_ERROR,
            context=context,
            original_exception=original_exception,
            error_details=str(original_exception) or type(original_exception).__name__
        )

    @staticmethod
    def handle_upstream_invalid_response(error_details: str, context: ErrorContext) -> "exceptions.UpstreamInvalidResponse":
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.UPSTREAM_INVALID_RESPONSE,
            context=context,
            error_details=error_details
        )

    @staticmethod
    def handle_stream_idle_timeout(
        timeout_seconds: float,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> "exceptions.StreamIdleTimeout":
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.STREAM_IDLE_TIMEOUT,
            context=context,
            original_exception=original_exception,
            timeout_seconds=timeout_seconds
        )

    @staticmethod
    def handle_internal_error(
        error_details: str,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ) -> "exceptions.InternalError":
        """Handle internal server errors."""
        return ErrorHandler.create_http_exception(
            error_type=ErrorType.INTERNAL_ERROR,
            context=context,
            original_exception=original_exception,
            error_details=error_details
        )
