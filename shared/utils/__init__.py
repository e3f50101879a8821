"""
Utility modules for the trade stream services.

Provides common utilities for:
- Structured logging
- OpenTelemetry tracing
- Error handling
"""

from .logging import setup_logging
from .tracing import setup_tracing
from .errors import (
    ConfigurationError,
    ConsumerConnectionError,
    DataProcessingError,
    StorageError,
    TimestampConversionError,
    TradeDecodeError,
    ValidationError,
)

__all__ = [
    "setup_logging",
    "setup_tracing",
    "ConfigurationError",
    "ConsumerConnectionError",
    "DataProcessingError",
    "StorageError",
    "TimestampConversionError",
    "TradeDecodeError",
    "ValidationError",
]
