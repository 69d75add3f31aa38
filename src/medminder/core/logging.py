"""Structured logging for medminder.

Modules log through ``logging.getLogger(__name__)``; :func:`configure_logging`
puts structlog's ProcessorFormatter on the root logger so those records come
out as readable key/value lines (``text``) or JSON lines (``json``).

Every record emitted inside :func:`medication_operation` carries the
``operation`` and ``medication_id`` it belongs to, plus the OpenTelemetry
trace and span ids, so one dose write can be followed through the ledger
append, the supply update, and any reminder it triggers.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
from opentelemetry import trace

_QUIET_LOGGERS = ("asyncpg",)


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


@contextmanager
def medication_operation(operation: str, medication_id: str) -> Iterator[trace.Span]:
    """Run a block as one traced engine operation on *medication_id*.

    Opens a ``medminder.<operation>`` span and binds ``operation`` and
    ``medication_id`` into the log context until the block exits.
    """
    tracer = trace.get_tracer("medminder")
    with tracer.start_as_current_span(f"medminder.{operation}") as span:
        span.set_attribute("medication_id", medication_id)
        with structlog.contextvars.bound_contextvars(
            operation=operation, medication_id=medication_id
        ):
            yield span


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt, utc=True),
        add_otel_context,
    ]


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_pre_chain(time_fmt),
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
    profile: str | None = None,
) -> None:
    """Route all stdlib logging through structlog.

    ``fmt`` picks the stderr renderer: ``"text"`` or ``"json"``. When
    ``log_file`` is set, JSON lines are also appended there (parent
    directories are created). ``profile`` names whose medications this
    process manages; it is bound into every record until reconfigured.
    """
    structlog.contextvars.clear_contextvars()
    if profile:
        structlog.contextvars.bind_contextvars(profile=profile)

    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(console)
    root.addHandler(stderr_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*_pre_chain("iso"), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
