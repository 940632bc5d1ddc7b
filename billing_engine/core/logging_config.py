"""
Structured logging setup for the Representative Billing Engine.

Every module logs through ``structlog.get_logger(__name__)``; this module wires
the processor chain once per process on top of the stdlib ``logging`` backend.
Per-import context (``batch_id``, ``source``) is carried with
``structlog.contextvars`` so every event emitted during an import is tagged.
"""

import logging
import sys
from typing import Optional

import structlog

_configured = False


def configure_logging(log_level: str = "INFO", json_logs: bool = True, force: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum level name (DEBUG, INFO, ...)
        json_logs: Render JSON lines; otherwise use the console renderer
        force: Reconfigure even if logging was configured before
    """
    global _configured
    if _configured and not force:
        return

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
        force=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
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
    _configured = True


def bind_import_context(batch_id: str, source: str, file_name: Optional[str] = None) -> None:
    """Tag all subsequent log events in this context with the import identifiers"""
    structlog.contextvars.bind_contextvars(batch_id=batch_id, source=source, file_name=file_name)


def clear_import_context() -> None:
    structlog.contextvars.unbind_contextvars("batch_id", "source", "file_name")
