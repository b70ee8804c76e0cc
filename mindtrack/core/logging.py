import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging(json_logs: bool = None, level: str = None):
    """Structured logging setup shared by the API and the evaluators."""
    settings = get_settings()
    if json_logs is None:
        json_logs = settings.log_json
    level = (level or settings.log_level).upper()

    # JSON formatter for stdlib loggers
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger
    logger = logging.getLogger()
    if not any(getattr(h, "_mindtrack", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._mindtrack = True
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level, logging.INFO))

    return structlog.get_logger()
