"""structlog setup for processes that embed the profiling agent.

The agent itself only calls `structlog.get_logger(__name__)`; hosts that do not
configure structlog themselves can call `configure_logging()` once at startup.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, List, Optional

import structlog


AGENT_NAME = "cloud-profiler-agent"


def add_agent_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Tag every event with the emitting component."""
    event_dict.setdefault("component", AGENT_NAME)
    return event_dict


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
    stream: Optional[Any] = None,
) -> None:
    """Configure structlog with a console or JSON renderer on top of stdlib logging."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_agent_context,
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


__all__ = ["AGENT_NAME", "add_agent_context", "configure_logging"]
