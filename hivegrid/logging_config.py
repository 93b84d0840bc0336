"""hivegrid logging configuration.

hivegrid logs through `structlog`. Modules obtain a logger with
`get_logger(__name__)` and may use printf-style arguments as well as
keyword fields:

    logger.info("Created worktree at %s", path)
    logger.debug("Tool call", tool=name, caller=agent_id)

Output goes to stderr so that processes speaking a protocol on stdout
(the agent-side MCP server) stay clean.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog

DEFAULT_LOG_LEVEL = "INFO"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure hivegrid logging.

    Args:
        level: Optional override for `HIVEGRID_LOG_LEVEL`.
    """
    if level:
        os.environ["HIVEGRID_LOG_LEVEL"] = level

    level_name = os.getenv("HIVEGRID_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
