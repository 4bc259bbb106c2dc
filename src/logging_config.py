"""Logging configuration using Loguru.

Engine modules log through `logger.bind(case_id=...)`; the sinks configured
here render that context next to each message.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def _console_format(record) -> str:
    case_id = record["extra"].get("case_id")
    context = f" | <magenta>{case_id}</magenta>" if case_id else ""
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
        + context
        + " | <level>{message}</level>\n{exception}"
    )


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[str] = None,
    serialize: bool = False,
    rotation: str = "50 MB",
    retention: str = "14 days",
) -> None:
    """Configure Loguru sinks.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for a rotating file sink; console only when None
        serialize: Write the file sink as JSON lines
        rotation: When to rotate log files
        retention: How long to keep old logs
    """
    logger.remove()

    logger.add(sys.stderr, format=_console_format, level=level, colorize=True)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path / "safecase_{time}.log",
            format="{time} | {level} | {name}:{function}:{line} | {extra} | {message}",
            level=level,
            rotation=rotation,
            retention=retention,
            serialize=serialize,
        )
        logger.add(
            log_path / "errors_{time}.log",
            format="{time} | {level} | {name}:{function}:{line} | {extra} | {message}",
            level="ERROR",
            rotation=rotation,
            retention=retention,
        )

    logger.info("Logging initialised at {} (file sink: {})", level, log_dir or "off")
