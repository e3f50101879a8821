"""
structlog configuration shared by every service process.

Records go through the standard library so third-party loggers
(aiohttp, asyncpg, confluent-kafka) end up in the same stream,
rendered as JSON lines or, for local runs, as coloured console output.
"""

import logging
import sys

import structlog

# Access logs and per-connection chatter are not useful at INFO
_NOISY_LOGGERS = ("aiohttp.access", "asyncio")


def _level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    service_name: str,
    log_level: str = "info",
    format_type: str = "json"
) -> None:
    """
    Configure structlog and the root logger for one service.

    Args:
        service_name: Bound to every record as ``service``
        log_level: debug, info, warning or error; unknown names mean info
        format_type: ``json`` or ``console``
    """
    level = _level(log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if format_type == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)
