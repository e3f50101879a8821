"""
Error taxonomy for the trade stream services.

Every error carries a stable ``error_code`` and a flat ``details``
mapping so it can be logged as structured key/value pairs:

    logger.error("Flush failed", **exc.to_dict())

Decode and timestamp errors are recovered where they occur, storage
errors are handled by the flush policy, consumer errors drive the
reconnect loop and configuration errors abort startup.
"""

from typing import Any, Dict, Optional


class DataProcessingError(Exception):
    """Base class for all trade stream errors."""

    error_code = "PROCESSING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def _add_detail(self, key: str, value: Any) -> None:
        if value is not None:
            self.details[key] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DataProcessingError):
    """A value failed validation; ``field`` names the offending attribute."""

    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.field = field
        self.value = value
        self._add_detail("field", field)
        self._add_detail("value", None if value is None else str(value))


class TradeDecodeError(ValidationError):
    """A log payload is not a usable ``Trade`` message."""

    error_code = "DECODE_ERROR"


class TimestampConversionError(ValidationError):
    """An epoch-millis trade time has no representable instant."""

    error_code = "TIMESTAMP_ERROR"

    def __init__(self, message: str, value: Optional[Any] = None):
        super().__init__(message, field="timestamp", value=value)


class StorageError(DataProcessingError):
    """The time-series store rejected or could not take a write."""

    error_code = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.operation = operation
        self.table = table
        self._add_detail("operation", operation)
        self._add_detail("table", table)


class ConsumerConnectionError(DataProcessingError):
    """The log consumer could not join the group or lost the cluster."""

    error_code = "KAFKA_ERROR"

    def __init__(
        self,
        message: str,
        topic: Optional[str] = None,
        retriable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.topic = topic
        self.retriable = retriable
        self._add_detail("topic", topic)
        self.details["retriable"] = retriable


class ConfigurationError(DataProcessingError):
    """A setting is missing or invalid; startup cannot continue."""

    error_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.config_key = config_key
        self.config_value = config_value
        self._add_detail("config_key", config_key)
        self._add_detail("config_value", None if config_value is None else str(config_value))
