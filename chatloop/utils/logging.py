"""Logging for chatloop and the applications that embed it.

chatloop never configures logging on import. Modules log through
:func:`get_logger`; applications opt in to output with :func:`setup_logging`.
"""

import logging
import os
import sys

from pydantic import BaseModel

PACKAGE_LOGGER = "chatloop"

# Provider SDK loggers, quieted to WARNING because they log every request at INFO
SDK_LOGGERS = ("anthropic", "openai", "httpx", "httpcore", "langchain")

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())


class LogConfig(BaseModel):
    """Logging output settings."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    # Configure the root logger instead of only the chatloop logger
    root: bool = False

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Read LOG_LEVEL and LOG_FORMAT, keeping defaults for what is unset."""
        values = {"level": os.getenv("LOG_LEVEL"), "format": os.getenv("LOG_FORMAT")}
        return cls(**{key: value for key, value in values.items() if value})


def setup_logging(config: LogConfig | None = None) -> logging.Logger:
    """Send chatloop's log records to stdout.

    With ``config.root`` the root logger is configured instead, so the
    application's own loggers share the same format.

    Returns:
        The logger that received the handler
    """
    if config is None:
        config = LogConfig.from_env()

    level = getattr(logging, config.level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(config.format, datefmt=config.date_format))

    target = logging.getLogger() if config.root else logging.getLogger(PACKAGE_LOGGER)
    for existing in list(target.handlers):
        if not isinstance(existing, logging.NullHandler):
            target.removeHandler(existing)
    target.addHandler(handler)
    target.setLevel(level)

    for name in SDK_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return target


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a chatloop module.

    Without an explicit level the logger inherits from the chatloop logger,
    whose level is set by :func:`setup_logging`.

    Args:
        name: Module name (typically __name__)
        level: Explicit level for this logger only
    """
    logger = logging.getLogger(name)
    if level:
        logger.setLevel(level.upper())
    return logger
