"""Logging configuration for mcp-remote-bridge.

stdout carries the relayed protocol, so log output goes to a file or to
stderr, never to stdout.
"""

import logging
import sys
from pathlib import Path

import structlog


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Configure logging for the application.

    Called once on startup. Configures both standard logging and structlog.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Optional path to log file (``~`` is expanded)
        json_output: If True, output JSON format

    Usage:
        Relay mode: configure_logging(level, log_file=get_log_file())
        Verify / install: configure_logging(level) (stderr, human-readable)
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    handler: logging.Handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_path))
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        format="%(message)s",
        force=True,
    )

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
