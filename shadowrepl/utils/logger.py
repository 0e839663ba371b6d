"""
Structured logging for shadowrepl

All output goes through the stdlib root logger so that records emitted by
pymysql and watchdog land in the same stream as the pipeline's own events.
"""

import logging
import sys
from typing import List, Optional, TextIO
import structlog


# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("watchdog", "pymysql")

RENDERERS = {
    "json": structlog.processors.JSONRenderer,
    "console": structlog.dev.ConsoleRenderer,
}


def _processor_chain(format_type: str) -> List:
    renderer = RENDERERS.get(format_type, structlog.dev.ConsoleRenderer)
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer(),
    ]


def _install_root_handler(log_level: int, stream: TextIO) -> None:
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
        existing.close()

    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter('%(message)s'))
    root.addHandler(handler)
    root.setLevel(log_level)


def setup_logging(level: str = "INFO", format_type: str = "json", stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        format_type: "json" for one JSON object per line, "console" for humans
        stream: destination of log lines, stdout when omitted
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    structlog.configure(
        processors=_processor_chain(format_type),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _install_root_handler(log_level, stream or sys.stdout)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)
