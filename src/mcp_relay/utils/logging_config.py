import logging
import sys

import structlog

from ..config import LoggingConfig


def setup_logging(logging_config: LoggingConfig) -> None:
    """Configures stdlib logging and structlog once per process.

    Log records go to stderr (or the configured file) so that stdout carries
    only command output.
    """
    level = getattr(logging, logging_config.level.upper(), logging.WARNING)
    handler: logging.Handler
    if logging_config.file:
        logging_config.file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(logging_config.file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    logging.basicConfig(format="%(message)s", level=level, handlers=[handler], force=True)

    use_console = logging_config.format.lower() == "console"
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer(colors=use_console and not logging_config.file and sys.stderr.isatty())
            if use_console
            else structlog.processors.JSONRenderer(sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.get_logger(__name__).debug(
        "Logging configured.", logging_level=logging_config.level, logging_format=logging_config.format
    )
