"""structlog setup shared by the runtime entrypoint and library consumers."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog

from genflow.config import settings
from genflow.errors import GenflowError

SERVICE_NAME = "genflow"


def resolve_level(name: str) -> int:
    """Numeric level for a name such as ``"warning"``. Unknown names fall back to INFO."""
    return logging.getLevelNamesMapping().get(name.upper(), logging.INFO)


# --- Processors ---


def add_service_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("environment", settings.environment)
    return event_dict


def _logged_exception(event_dict: dict[str, Any]) -> BaseException | None:
    exc_info = event_dict.get("exc_info")
    if isinstance(exc_info, BaseException):
        return exc_info
    if isinstance(exc_info, tuple):
        return exc_info[1]
    if exc_info:
        return sys.exc_info()[1]
    error = event_dict.get("error")
    return error if isinstance(error, BaseException) else None


def add_error_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag lines carrying a ``GenflowError`` with its category and retryable flag.

    Must run before ``format_exc_info``, which replaces ``exc_info`` with text.
    """
    exc = _logged_exception(event_dict)
    if isinstance(exc, GenflowError):
        event_dict.setdefault("error_category", exc.category)
        event_dict.setdefault("retryable", exc.retryable)
    if isinstance(event_dict.get("error"), BaseException):
        event_dict["error"] = str(event_dict["error"])
    return event_dict


# --- Output ---


class _LogSinks:
    """Write every line to stdout and to each extra sink.

    A sink that fails to write or flush is dropped with a warning on stderr;
    stdout always keeps working.
    """

    def __init__(self, sinks: dict[str, IO[str]] | None = None) -> None:
        self.sinks: dict[str, IO[str]] = dict(sinks or {})

    @classmethod
    def with_file(cls, file_path: str) -> _LogSinks:
        try:
            stream = open(file_path, "a")  # noqa: SIM115
        except OSError as exc:
            # structlog is not configured yet
            print(
                f"WARNING: cannot open log file {file_path!r} ({exc}); logging to stdout only.",
                file=sys.stderr,
            )
            return cls()
        return cls({file_path: stream})

    def _drop(self, name: str, op: str) -> None:
        self.sinks.pop(name, None)
        print(f"WARNING: log sink {name!r} {op} failed; sink disabled.", file=sys.stderr)

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        for name, stream in list(self.sinks.items()):
            try:
                stream.write(data)
                stream.flush()
            except (OSError, ValueError):
                self._drop(name, "write")

    def flush(self) -> None:
        sys.stdout.flush()
        for name, stream in list(self.sinks.items()):
            try:
                stream.flush()
            except (OSError, ValueError):
                self._drop(name, "flush")


def configure_logging() -> None:
    """Console output while developing, JSON lines everywhere else.

    Setting ``GENFLOW_LOG_FILE`` also appends every line to that file.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.environment == "development"
        else structlog.processors.JSONRenderer()
    )

    logger_factory: structlog.types.WrappedLogger
    if settings.log_file:
        logger_factory = structlog.PrintLoggerFactory(file=_LogSinks.with_file(settings.log_file))  # type: ignore[arg-type]
    else:
        logger_factory = structlog.PrintLoggerFactory()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_fields,
            add_error_fields,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolve_level(settings.log_level)),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )


@contextmanager
def job_context(job_id: str, **extra: object) -> Iterator[None]:
    """Bind ``job_id`` (and any extras) to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(job_id=job_id, **extra):
        yield
