from __future__ import annotations

import logging
import os
import sys
from typing import Any, List, Optional

import structlog

from cryptodash.utils.config import Settings, get_settings

# Access logs from the HTTP server and price-feed client repeat every request
NOISY_LOGGERS = ("uvicorn.access", "aiohttp.access", "aiohttp.client")

_HANDLER_MARK = "_cryptodash_handler"


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _build_handlers(settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        os.makedirs(os.path.dirname(settings.log_file) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(settings.log_file, mode="a"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(message)s"))
        setattr(handler, _HANDLER_MARK, True)
    return handlers


def _replace_handlers(root: logging.Logger, handlers: List[logging.Handler]) -> None:
    """Swap out handlers from an earlier setup_logging call, leaving foreign ones alone."""
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        root.addHandler(handler)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib handlers and structlog. Safe to call more than once."""
    settings = get_settings()
    level_no = _level(level or settings.log_level)

    root = logging.getLogger()
    _replace_handlers(root, _build_handlers(settings))
    root.setLevel(level_no)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level_no, logging.WARNING))

    renderer = (structlog.processors.JSONRenderer() if settings.log_json
                else structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(**values: Any) -> None:
    """Attach key/value pairs to every log line emitted for the current request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)
