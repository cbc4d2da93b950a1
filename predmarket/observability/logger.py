"""structlog setup for the market engine.

Every event goes through the stdlib root logger so third-party records and
our own share one renderer. Secrets (bot tokens, admin credentials) are
masked before rendering, and Decimal amounts are emitted as plain strings
so JSON logs carry exact money values.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_configured = False

_SECRET_KEYS = frozenset({
    "password", "secret", "token", "api_key",
    "bot_token", "telegram_bot_token", "admin_token",
    "init_data", "session_token",
})

_HANDLER_TAG = "_predmarket"


def _redact_processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask secret-looking keys."""
    for key in event_dict:
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _decimal_processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
        elif isinstance(value, dict):
            event_dict[key] = {
                k: str(v) if isinstance(v, Decimal) else v for k, v in value.items()
            }
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        _decimal_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _tagged(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    setattr(handler, _HANDLER_TAG, True)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Install handlers and the structlog pipeline.

    Only the first call takes effect unless ``force`` is set; the CLI
    forces so values from config.yaml win over the LOG_* env defaults
    applied on first import.
    """
    global _configured
    if _configured and not force:
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Replace only handlers we installed earlier
    for old in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(old)

    handlers = [_tagged(logging.StreamHandler(sys.stderr), numeric_level)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_tagged(logging.FileHandler(str(path)), numeric_level))

    pre_chain = _pre_chain()
    if fmt == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=not force,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _configured:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)


@contextmanager
def market_context(**fields: Any) -> Iterator[None]:
    """Bind fields (prediction_id, user_id, operation) to every log line in scope."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield
