"""
Error Handling Module

Centralized error handling utilities for the gateway: standardized error
types, logging and typed exception construction so every component reports
failures the same way.

Components:
- ErrorType: Enumeration of standard error types
- ErrorContext: Context information for error handling
- ErrorHandler: Main error handling utility
- ErrorLogger: Centralized error logging utility
"""

from .error_types import ErrorType, ErrorContext
from .error_logger import ErrorLogger
from .error_handler import ErrorHandler

__all__ = [
    'ErrorType',
    'ErrorContext',
    'ErrorHandler',
    'ErrorLogger'
]
