"""
Configures structured logging for crawlstream using structlog.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, List

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars

if TYPE_CHECKING:
    from crawlstream.config.config import MonitoringConfig


def add_crawl_id(logger: logging.Logger, method_name: str, event_dict: Dict[Any, Any]) -> Dict[Any, Any]:
    """Copy the active crawl id onto every record logged inside a crawl."""
    ctx = get_contextvars()
    if "crawl_id" in ctx:
        event_dict.setdefault("crawl_id", ctx["crawl_id"])
    return event_dict


@contextmanager
def bind_crawl_context(crawl_id: str, mode: str) -> Iterator[None]:
    with bound_contextvars(crawl_id=crawl_id, mode=mode):
        yield


def configure_logging(config: MonitoringConfig) -> None:
    """
    Route structlog through the standard library.

    JSON lines go to ``config.log_file`` when set; otherwise a console
    renderer writes to stderr so stdout stays free for stream output.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        add_crawl_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    renderer: Any
    if config.log_file:
        renderer = structlog.processors.JSONRenderer()
        handler: logging.Handler = logging.FileHandler(config.log_file)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.log_level.upper())

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger("crawlstream.logging").info(
        "Logging configured", level=config.log_level, output=config.log_file or "stderr"
    )
