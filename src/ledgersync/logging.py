"""Structured logging for ledgersync.

Every module logs through ``logging.getLogger(__name__)``; structlog only
formats. Console output is colored text for interactive use or JSON lines for
cron and log shipping. Each line carries the calendar under reconciliation and
the current OpenTelemetry trace and span ids.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Calendar context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_calendar_context: ContextVar[str | None] = ContextVar("calendar", default=None)


def get_calendar_context() -> str | None:
    return _calendar_context.get()


@contextmanager
def calendar_context(name: str | None) -> Iterator[None]:
    """Tag every log line emitted inside the block with ``calendar=name``."""
    token = _calendar_context.set(name)
    try:
        yield
    finally:
        _calendar_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_calendar_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``calendar`` key from the ContextVar into the event dict."""
    event_dict["calendar"] = _calendar_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach the active span ids, zero-filled outside any span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


_NOISE_LOGGERS = ("httpx", "httpcore")

LOG_FILE_NAME = "ledgersync.log"


def _pre_chain(timestamp_format: str) -> list[structlog.types.Processor]:
    """Processors applied to every record before it reaches a renderer."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_format),
        add_calendar_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Route stdlib and structlog output through one formatter pipeline.

    ``fmt`` selects console rendering: ``"text"`` (colored) or ``"json"``.
    With *log_root* set, JSON lines also go to ``{log_root}/ledgersync.log``
    regardless of the console format.
    """
    as_json = fmt == "json"
    console_chain = _pre_chain("iso" if as_json else "%H:%M:%S")
    console_renderer = (
        structlog.processors.JSONRenderer() if as_json else structlog.dev.ConsoleRenderer()
    )

    root = logging.getLogger()
    # Reconfiguring replaces, never stacks, handlers.
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_renderer, console_chain))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(
            logging.FileHandler(directory / LOG_FILE_NAME),
            structlog.processors.JSONRenderer(),
            _pre_chain("iso"),
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
