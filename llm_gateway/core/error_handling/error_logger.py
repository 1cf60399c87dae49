"""
Error Logging Utility

This module provides centralized error logging functionality for consistent
error logging across the gateway.
"""

import logging
from typing import Dict, Any, Optional
import json
import re
from .error_types import ErrorType, ErrorContext
from ..logging.config import LOGGER_NAME


class ErrorLogger:
    """Единый логгер ошибок, использующий общую систему."""

    @staticmethod
    def _decode_unicode_escapes(text):
        """
        Decode Unicode escape sequences in error messages.

        Args:
            text (str): Text that may contain Unicode escape sequences

        Returns:
            str: Text with Unicode escape sequences decoded to actual characters
        """
        if not text:
            return text

        try:
            if '\\u' in text and text.startswith('{') and text.endswith('}'):
                decoded = json.loads(text)
                if isinstance(decoded, dict):
                    return json.dumps(decoded, ensure_ascii=False)
        except (json.JSONDecodeError, ValueError):
            pass

        unicode_pattern = re.compile(r'\\u([0-9a-fA-F]{4})')

        def replace_unicode(match):
            try:
                return chr(int(match.group(1), 16))
            except ValueError:
                return match.group(0)

        return unicode_pattern.sub(replace_unicode, text)

    @staticmethod
    def _get_logger():
        """Получить логгер из единой системы."""
        return logging.getLogger(LOGGER_NAME)

    @staticmethod
    def log_error(
        error_type: ErrorType,
        context: ErrorContext,
        original_exception: Optional[Exception] = None,
        additional_data: Optional[Dict[str, Any]] = None
    ):
        """Логировать ошибку с использованием единой системы."""
        logger = ErrorLogger._get_logger()

        log_extra = context.to_log_extra()
        log_extra["error_type"] = error_type.code
        log_extra["http_status_code"] = error_type.status_code

        if additional_data:
            log_extra.update(additional_data)

        log_message = error_type.format_message(**context.format_kwargs())
        if additional_data and "error_detail" in additional_data:
            log_message = additional_data["error_detail"]["error"]["message"]

        if original_exception:
            log_extra["original_exception"] = str(original_exception)
            log_extra["original_exception_type"] = type(original_exception).__name__
            logger.error(log_message, extra=log_extra, exc_info=original_exception)
        elif error_type.status_code and error_type.status_code >= 500:
            logger.error(log_message, extra=log_extra)
        else:
            logger.warning(log_message, extra=log_extra)

    @staticmethod
    def log_provider_error(
        provider_id: str,
        error_details: str,
        status_code: int,
        context: ErrorContext,
        original_exception: Optional[Exception] = None
    ):
        """Log provider-specific errors."""
        logger = ErrorLogger._get_logger()

        decoded_error_details = ErrorLogger._decode_unicode_escapes(error_details)

        log_extra = context.to_log_extra()
        log_extra.update({
            "provider_id": provider_id,
            "provider_error_details": decoded_error_details,
            "provider_status_code": status_code,
            "error_type": "provider_error",
            "log_type": "error"
        })

        if original_exception:
            log_extra["original_exception"] = str(original_exception)
            log_extra["original_exception_type"] = type(original_exception).__name__

        logger.error(
            f"Provider '{provider_id}' returned error {status_code}: {decoded_error_details}",
            extra=log_extra,
            exc_info=original_exception
        )
