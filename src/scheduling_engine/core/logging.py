"""Structured logging for the scheduling engine.

Every module logs through ``logging.getLogger(__name__)``; this module puts a
structlog ``ProcessorFormatter`` behind the root logger so those records come
out either as console lines (``text``) or JSON lines (``json``).  Each record
is tagged with the engine name, the negotiation currently being driven and
the active OpenTelemetry trace/span ids.

With ``log_root`` set, a JSON copy of everything goes to
``{log_root}/engine/{engine_name}.log``.
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

_engine_context: ContextVar[str | None] = ContextVar("engine_name", default=None)
_negotiation_context: ContextVar[str | None] = ContextVar("negotiation_id", default=None)

# HTTP client chatter from the store and webhook adapters.
_NOISE_LOGGERS = ("httpx", "httpcore")

_ENGINE_LOG_DIR = "engine"
_DEFAULT_LOG_NAME = "scheduling-engine"


def set_engine_context(name: str) -> None:
    _engine_context.set(name)


def get_engine_context() -> str | None:
    return _engine_context.get()


def get_negotiation_context() -> str | None:
    return _negotiation_context.get()


@contextmanager
def negotiation_context(negotiation_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with *negotiation_id*."""
    token = _negotiation_context.set(negotiation_id)
    try:
        yield
    finally:
        _negotiation_context.reset(token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_engine_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``engine``, plus ``negotiation_id`` while a negotiation is bound."""
    event_dict["engine"] = _engine_context.get()
    negotiation_id = _negotiation_context.get()
    if negotiation_id is not None:
        event_dict["negotiation_id"] = negotiation_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id``/``span_id`` hex strings; all zeros outside a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    else:
        event_dict["trace_id"] = trace.format_trace_id(trace.INVALID_TRACE_ID)
        event_dict["span_id"] = trace.format_span_id(trace.INVALID_SPAN_ID)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_engine_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    engine_name: str | None = None,
) -> None:
    """Install the console (and optional file) handlers on the root logger.

    Safe to call more than once; previous root handlers are replaced.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive.
    fmt:
        ``"text"`` for the colored console renderer, ``"json"`` for JSON lines.
    log_root:
        When set, also write JSON lines to ``{log_root}/engine/{engine_name}.log``.
    engine_name:
        Stored in the engine ContextVar and used as the log file name.
    """
    if engine_name:
        set_engine_context(engine_name)

    if fmt == "json":
        console_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, console_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root) / _ENGINE_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{engine_name or _DEFAULT_LOG_NAME}.log")
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
