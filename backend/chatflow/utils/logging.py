# /chatflow/utils/logging.py

import logging
import sys
import structlog
from chatflow.config.settings import settings

# Structured logging (JSON in production, console in development/test).
# Conversation-scoped fields are bound through contextvars so every log line
# emitted while handling a message carries the conversation key.


def setup_logging():
    """
    Configures structlog on top of the standard logging module so that
    `logging.getLogger(__name__)` and `structlog.get_logger(__name__)`
    render through the same pipeline under Uvicorn.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment in ("development", "test"):
        final_processor = structlog.dev.ConsoleRenderer()
    else:
        final_processor = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level.upper())

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def bind_conversation(conversation_key: str, **extra):
    """Binds the conversation key (and any extra fields) to subsequent log lines."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(conversation_key=conversation_key, **extra)


def clear_conversation():
    structlog.contextvars.clear_contextvars()
