"""Logging setup for memoria.

Every module logs through ``logging.getLogger(__name__)``; this module routes
those stdlib records through structlog's ProcessorFormatter so they come out
either as coloured console lines (``text``) or as JSON objects (``json``).

Each record is stamped with the owning agent (from a ContextVar, so
concurrent tasks serving different agents stay separate) and with the ids of
the active OTel span, which ties retrieval log lines to their traces.  A
``log_root`` adds a JSON file per agent next to the console output.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_agent_context: ContextVar[str | None] = ContextVar("memoria_agent", default=None)

_NO_TRACE = "0" * 32
_NO_SPAN = "0" * 16

# Libraries that log per query or per batch at INFO.
_NOISE_LOGGERS = (
    "asyncpg",
    "sentence_transformers",
    "urllib3",
    "filelock",
)


def set_agent_context(name: str) -> None:
    """Attribute subsequent log records in this context to agent *name*."""
    _agent_context.set(name)


def get_agent_context() -> str | None:
    return _agent_context.get()


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_agent_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add the ``agent`` key (None outside any agent context)."""
    event_dict["agent"] = _agent_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id``/``span_id`` as hex; all zeros when no span is recording."""
    span_context = trace.get_current_span().get_span_context()
    if span_context and span_context.trace_id:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    else:
        event_dict["trace_id"] = _NO_TRACE
        event_dict["span_id"] = _NO_SPAN
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        add_agent_context,
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
# Entry point
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    agent_name: str | None = None,
) -> None:
    """Install memoria's handlers on the root logger.

    Calling it again replaces the previous handlers.

    Args:
        level: Root level name, e.g. ``"DEBUG"``; unknown names mean INFO.
        fmt: ``"text"`` for a coloured console or ``"json"`` for JSON lines.
        log_root: Directory receiving ``<agent_name>.log`` in JSON (all levels).
        agent_name: Agent the process serves; stamped on every record.
    """
    if agent_name:
        set_agent_context(agent_name)

    if fmt == "json":
        console_chain = _pre_chain("iso")
        console_renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        console_renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(console_renderer, console_chain))

    root = logging.getLogger()
    for previous in root.handlers:
        previous.close()
    root.handlers.clear()
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    root.addHandler(console)

    if log_root is not None:
        directory = Path(log_root)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / f"{agent_name or 'memoria'}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        root.addHandler(file_handler)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
