"""
Logging infrastructure for the LLM gateway.

Provides a single Logger instance shared by every component.
"""

from .config import setup_logging, LOGGER_NAME
from .logger import Logger, mask_secrets

# Создаем единый экземпляр логгера
_logger_instance = None


def get_logger():
    """Получить единый экземпляр логгера."""
    global _logger_instance
    if _logger_instance is None:
        _logger_instance = Logger()
    return _logger_instance


logger = get_logger()

__all__ = ['logger', 'Logger', 'setup_logging', 'mask_secrets', 'LOGGER_NAME']
