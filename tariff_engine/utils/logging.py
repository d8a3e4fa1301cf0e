"""
Logging Configuration
Structured logging with loguru
Source: https://github.com/Delgan/loguru

Call ``setup_logging_from_settings()`` once at start-up; it reads the
``TARIFF_LOG_*`` settings. Engine modules log through ``get_logger(__name__)``
so every record carries the emitting module under ``extra["name"]``.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

ENGINE_PACKAGE = "tariff_engine"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{line} - {message}"


def is_engine_record(record: dict) -> bool:
    """Whether a record was emitted through an engine logger."""
    return str(record["extra"].get("name", "")).startswith(ENGINE_PACKAGE)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_logs: bool = False,
    rotation: str = "100 MB",
    retention: str = "30 days",
) -> None:
    """
    Replace loguru's sinks with the engine's.

    The console sink receives every record. The file sink, when given, only
    receives engine records, so a host application's logs stay out of the
    calculation log.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional calculation log path
        json_logs: Serialize records as JSON lines
        rotation: Size or interval at which the file rotates
        retention: How long rotated files are kept
    """
    logger.remove()
    logger.configure(extra={"name": "-"})

    if json_logs:
        logger.add(sys.stderr, format="{message}", level=level, serialize=True)
    else:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation=rotation,
            retention=retention,
            compression="zip",
            format=FILE_FORMAT,
            level=level,
            serialize=json_logs,
            filter=is_engine_record,
        )

    get_logger(__name__).info(
        f"Logging configured: level={level}, json_logs={json_logs}, log_file={log_file}"
    )


def setup_logging_from_settings() -> None:
    """Configure engine logging from EngineSettings."""
    from tariff_engine.core.config import get_settings

    settings = get_settings()
    setup_logging(
        level=settings.LOG_LEVEL,
        log_file=settings.LOG_FILE,
        json_logs=settings.LOG_JSON,
        rotation=settings.LOG_ROTATION,
        retention=settings.LOG_RETENTION,
    )


def get_logger(name: str = __name__):  # type: ignore[no-untyped-def]
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger bound to the module name

    Example:
        >>> from tariff_engine.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Tariff resolved")
    """
    return logger.bind(name=name)
