"""
Structured logging for the sandbox entrypoint.

Every component logs dotted event names with key/value context, e.g.::

    log = get_logger("restore", service="sandbox")
    log.info("restore.workspace_start", remote_files=12)

Output is one JSON object per line on stdout so the container log collector
can index it. Set LOG_FORMAT=console for human-readable output.
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def _level_from_env() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _render_exception(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Flatten ``exc=`` values into type and message fields."""
    exc = event_dict.pop("exc", None)
    if isinstance(exc, BaseException):
        event_dict["error_type"] = type(exc).__name__
        event_dict["error"] = str(exc)
    elif exc is not None:
        event_dict["error"] = str(exc)
    return event_dict


def configure_logging(force: bool = False) -> None:
    """Configure structlog once per process."""
    global _configured
    if _configured and not force:
        return

    level = _level_from_env()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer: Any
    if os.environ.get("LOG_FORMAT", "json").lower() == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _render_exception,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    _configured = True


def get_logger(name: str, **context: Any) -> Any:
    """Return a lazily bound logger carrying ``component`` plus any extra context."""
    return structlog.get_logger(name, component=name, **context)
