import structlog
import logging
import sys
from typing import Any, Dict

def configure_logging(level: str = "INFO", json_logs: bool = True):
    """
    Configures structural logging for the application.
    JSON output for production, a console renderer for local development.
    """

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

def get_logger(name: str = None):
    return structlog.get_logger(name)

def bind_context(context: Dict[str, Any]):
    """
    Binds additional context to all subsequent log calls in the current context.
    Example: bind_context({"execution_id": "123"})
    """
    structlog.contextvars.bind_contextvars(**context)

def unbind_context(*keys: str):
    structlog.contextvars.unbind_contextvars(*keys)
